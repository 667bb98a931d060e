"""Thin async REST client for a PocketBase instance.

This is the opaque *handle* held by the Session Holder.  Creating one is
local and cheap (no network I/O); authentication is an explicit call.  Every
request carries a timeout, and any non-2xx response is raised as a
``ServiceError`` so the executor can classify it.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from pocketbase_mcp.errors import ServiceError

logger = logging.getLogger(__name__)

ADMIN_COLLECTION = "_superusers"
DEFAULT_TIMEOUT = 10.0


def quote_filter(value: str) -> str:
    """Quote *value* as a string literal for a PocketBase filter expression."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class PocketBaseClient:
    """Async wrapper over the PocketBase REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )
        self.token: str | None = None
        self.auth_record: dict[str, Any] | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    @property
    def is_closed(self) -> bool:
        return self._http.is_closed

    def clear_auth(self) -> None:
        self.token = None
        self.auth_record = None

    async def aclose(self) -> None:
        self.clear_auth()
        await self._http.aclose()

    async def send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: Any = None,
        auth: bool = True,
    ) -> Any:
        """Send a request and return the decoded JSON body (``None`` for 204)."""
        headers = {}
        if auth and self.token:
            headers["Authorization"] = self.token
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        response = await self._http.request(
            method,
            path,
            params=params or None,
            json=json,
            data=data,
            files=files,
            headers=headers,
        )
        logger.debug("%s %s -> %d", method, path, response.status_code)
        if response.is_error:
            raise ServiceError.from_response(response, service="pocketbase")
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # -- auth ----------------------------------------------------------------

    async def auth_with_password(
        self,
        collection: str,
        identity: str,
        password: str,
        *,
        store: bool = True,
    ) -> dict[str, Any]:
        """Authenticate against an auth collection.

        With ``store=True`` the returned token is used for subsequent
        requests made through this client.
        """
        result = await self.send(
            "POST",
            f"/api/collections/{collection}/auth-with-password",
            json={"identity": identity, "password": password},
            auth=False,
        )
        if store:
            self.token = result.get("token")
            self.auth_record = result.get("record")
        return result

    async def auth_with_oauth2(
        self,
        collection: str,
        provider: str,
        code: str,
        code_verifier: str | None = None,
        redirect_url: str | None = None,
    ) -> dict[str, Any]:
        return await self.send(
            "POST",
            f"/api/collections/{collection}/auth-with-oauth2",
            json={
                "provider": provider,
                "code": code,
                "codeVerifier": code_verifier or "",
                "redirectURL": redirect_url or "",
            },
            auth=False,
        )

    async def auth_refresh(self, collection: str = ADMIN_COLLECTION) -> dict[str, Any]:
        result = await self.send("POST", f"/api/collections/{collection}/auth-refresh")
        self.token = result.get("token", self.token)
        self.auth_record = result.get("record", self.auth_record)
        return result

    async def request_password_reset(self, collection: str, email: str) -> None:
        await self.send(
            "POST",
            f"/api/collections/{collection}/request-password-reset",
            json={"email": email},
            auth=False,
        )

    async def confirm_password_reset(
        self,
        collection: str,
        token: str,
        password: str,
        password_confirm: str,
    ) -> None:
        await self.send(
            "POST",
            f"/api/collections/{collection}/confirm-password-reset",
            json={"token": token, "password": password, "passwordConfirm": password_confirm},
            auth=False,
        )

    # -- health --------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        return await self.send("GET", "/api/health", auth=False)

    # -- collections ---------------------------------------------------------

    async def list_collections(self, page: int = 1, per_page: int = 200) -> dict[str, Any]:
        return await self.send(
            "GET", "/api/collections", params={"page": page, "perPage": per_page}
        )

    async def get_collection(self, id_or_name: str) -> dict[str, Any]:
        return await self.send("GET", f"/api/collections/{id_or_name}")

    async def create_collection(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self.send("POST", "/api/collections", json=body)

    async def update_collection(self, id_or_name: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self.send("PATCH", f"/api/collections/{id_or_name}", json=body)

    async def delete_collection(self, id_or_name: str) -> None:
        await self.send("DELETE", f"/api/collections/{id_or_name}")

    # -- records -------------------------------------------------------------

    async def list_records(
        self,
        collection: str,
        page: int = 1,
        per_page: int = 30,
        filter: str | None = None,
        sort: str | None = None,
        expand: str | None = None,
    ) -> dict[str, Any]:
        return await self.send(
            "GET",
            f"/api/collections/{collection}/records",
            params={
                "page": page,
                "perPage": per_page,
                "filter": filter,
                "sort": sort,
                "expand": expand,
            },
        )

    async def get_full_list(
        self,
        collection: str,
        batch: int = 200,
        filter: str | None = None,
        sort: str | None = None,
    ) -> list[dict[str, Any]]:
        """Page through *collection* and return every matching record."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            result = await self.list_records(
                collection, page=page, per_page=batch, filter=filter, sort=sort
            )
            items.extend(result.get("items", []))
            if page >= result.get("totalPages", 1) or not result.get("items"):
                return items
            page += 1

    async def get_first_list_item(self, collection: str, filter: str) -> dict[str, Any]:
        result = await self.list_records(collection, page=1, per_page=1, filter=filter)
        items = result.get("items", [])
        if not items:
            raise ServiceError(404, "The requested resource wasn't found.", service="pocketbase")
        return items[0]

    async def get_record(
        self, collection: str, record_id: str, expand: str | None = None
    ) -> dict[str, Any]:
        return await self.send(
            "GET",
            f"/api/collections/{collection}/records/{record_id}",
            params={"expand": expand},
        )

    async def create_record(
        self, collection: str, body: dict[str, Any], files: Any = None
    ) -> dict[str, Any]:
        path = f"/api/collections/{collection}/records"
        if files:
            return await self.send("POST", path, data=body, files=files)
        return await self.send("POST", path, json=body)

    async def update_record(
        self,
        collection: str,
        record_id: str,
        body: dict[str, Any],
        files: Any = None,
    ) -> dict[str, Any]:
        path = f"/api/collections/{collection}/records/{record_id}"
        if files:
            return await self.send("PATCH", path, data=body, files=files)
        return await self.send("PATCH", path, json=body)

    async def delete_record(self, collection: str, record_id: str) -> None:
        await self.send("DELETE", f"/api/collections/{collection}/records/{record_id}")

    def file_url(self, record: dict[str, Any], filename: str) -> str:
        collection = record.get("collectionId") or record.get("collectionName")
        return f"{self.base_url}/api/files/{collection}/{record.get('id')}/{filename}"
