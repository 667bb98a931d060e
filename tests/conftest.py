"""Shared fixtures for tests."""

from __future__ import annotations

import datetime
import itertools
import json
import re
from typing import Any, Callable

import httpx
import pytest

from pocketbase_mcp.config import load_settings
from pocketbase_mcp.mcp.server import PocketBaseMCPServer
from pocketbase_mcp.pocketbase.client import ADMIN_COLLECTION, PocketBaseClient
from pocketbase_mcp.pocketbase.credentials import ConnectionConfig
from pocketbase_mcp.pocketbase.executor import ActivityClock, OperationExecutor
from pocketbase_mcp.pocketbase.session import SessionHolder

BASE_URL = "https://pb.example.com"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "s3cret-password"

_RECORDS_PATH = re.compile(r"^/api/collections/([^/]+)/records(?:/([^/]+))?$")
_COLLECTION_PATH = re.compile(r"^/api/collections/([^/]+)$")
_EQUALS_FILTER = re.compile(r'^(\w+)="((?:[^"\\]|\\.)*)"$')


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime.datetime | None = None) -> None:
        self.now = start or datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.UTC)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakePocketBase:
    """In-memory stand-in for the PocketBase REST API.

    Record and collection endpoints answer 403 unless the request carries a
    token issued by the superuser auth endpoint (``require_auth``).  Queued
    entries in ``auth_statuses`` and ``failures`` are consumed one per call.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.auth_statuses: list[int] = []
        self.failures: list[httpx.Response | Exception] = []
        self.require_auth = True
        self.valid_tokens: set[str] = set()
        self.collections: dict[str, dict[str, Any]] = {}
        self.records: dict[str, list[dict[str, Any]]] = {}
        self.other_hosts: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self._ids = itertools.count(1)

    # -- helpers for tests ---------------------------------------------------

    @property
    def auth_calls(self) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/auth-with-password"))

    def calls_to(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def add_collection(self, name: str, fields: list[dict[str, Any]] | None = None) -> None:
        self.collections[name] = {
            "id": f"col_{name}",
            "name": name,
            "type": "base",
            "system": False,
            "fields": fields or [{"name": "title", "type": "text"}],
        }
        self.records.setdefault(name, [])

    def add_record(self, collection: str, **fields: Any) -> dict[str, Any]:
        record = {"id": fields.pop("id", f"rec{next(self._ids)}"), "collectionName": collection, **fields}
        self.records[collection].append(record)
        return record

    def revoke_tokens(self) -> None:
        self.valid_tokens.clear()

    # -- transport -----------------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        host_handler = self.other_hosts.get(request.url.host)
        if host_handler is not None:
            return host_handler(request)
        self.requests.append(request)
        path = request.url.path

        if path == f"/api/collections/{ADMIN_COLLECTION}/auth-with-password":
            return self._auth(request)
        if path == "/api/health":
            return httpx.Response(200, json={"code": 200, "message": "API is healthy."})

        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        if path.startswith("/api/collections") and self.require_auth:
            if request.headers.get("Authorization") not in self.valid_tokens:
                return _error(403, "Only superusers can perform this action.")

        if path == f"/api/collections/{ADMIN_COLLECTION}/auth-refresh":
            token = self._issue_token()
            return httpx.Response(200, json={"token": token, "record": {"id": "admin1"}})
        if path == "/api/collections" and request.method == "GET":
            items = list(self.collections.values())
            return httpx.Response(200, json=_page(items, 1, len(items) or 1))
        match = _RECORDS_PATH.match(path)
        if match:
            return self._records(request, match.group(1), match.group(2))
        match = _COLLECTION_PATH.match(path)
        if match:
            collection = self.collections.get(match.group(1))
            if collection is None:
                return _error(404, "The requested resource wasn't found.")
            if request.method == "DELETE":
                del self.collections[match.group(1)]
                return httpx.Response(204)
            return httpx.Response(200, json=collection)
        if path == "/api/collections" and request.method == "POST":
            body = json.loads(request.content)
            self.add_collection(body["name"], body.get("fields"))
            return httpx.Response(200, json=self.collections[body["name"]])
        return _error(404, "The requested resource wasn't found.")

    def _issue_token(self) -> str:
        token = f"token-{next(self._ids)}"
        self.valid_tokens.add(token)
        return token

    def _auth(self, request: httpx.Request) -> httpx.Response:
        status = self.auth_statuses.pop(0) if self.auth_statuses else 200
        if status != 200:
            return _error(status, "Failed to authenticate.")
        body = json.loads(request.content)
        if body.get("password") != ADMIN_PASSWORD:
            return _error(400, "Failed to authenticate.")
        return httpx.Response(
            200,
            json={"token": self._issue_token(), "record": {"id": "admin1", "email": body["identity"]}},
        )

    def _records(self, request: httpx.Request, collection: str, record_id: str | None) -> httpx.Response:
        if collection not in self.records:
            return _error(404, "Missing collection context.")
        records = self.records[collection]
        if record_id is None and request.method == "GET":
            items = _apply_filter(records, request.url.params.get("filter"))
            page = int(request.url.params.get("page", 1))
            per_page = int(request.url.params.get("perPage", 30))
            return httpx.Response(200, json=_page(items, page, per_page))
        if record_id is None and request.method == "POST":
            body = json.loads(request.content)
            if body.get("title") == "":
                return _error(400, "Failed to create record.", {"title": {"code": "validation_required"}})
            return httpx.Response(200, json=self.add_record(collection, **body))

        record = next((r for r in records if r["id"] == record_id), None)
        if record is None:
            return _error(404, "The requested resource wasn't found.")
        if request.method == "GET":
            return httpx.Response(200, json=record)
        if request.method == "PATCH":
            if request.headers.get("content-type", "").startswith("application/json"):
                record.update(json.loads(request.content))
            return httpx.Response(200, json=record)
        if request.method == "DELETE":
            records.remove(record)
            return httpx.Response(204)
        return _error(405, "Method not allowed.")


def _error(status: int, message: str, data: dict[str, Any] | None = None) -> httpx.Response:
    return httpx.Response(status, json={"code": status, "message": message, "data": data or {}})


def _page(items: list[dict[str, Any]], page: int, per_page: int) -> dict[str, Any]:
    start = (page - 1) * per_page
    total_pages = max(1, -(-len(items) // per_page))
    return {
        "page": page,
        "perPage": per_page,
        "totalItems": len(items),
        "totalPages": total_pages,
        "items": items[start:start + per_page],
    }


def _apply_filter(records: list[dict[str, Any]], expr: str | None) -> list[dict[str, Any]]:
    """Understands ``field="value"`` clauses joined by ``&&``; anything else matches all."""
    clauses = []
    for part in (expr or "").split(" && "):
        match = _EQUALS_FILTER.match(part.strip())
        if not match:
            return list(records)
        clauses.append((match.group(1), match.group(2).replace('\\"', '"')))
    return [r for r in records if all(str(r.get(field)) == value for field, value in clauses)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def pb() -> FakePocketBase:
    backend = FakePocketBase()
    backend.add_collection("posts")
    return backend


@pytest.fixture
def admin_config() -> ConnectionConfig:
    return ConnectionConfig(BASE_URL, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def make_holder(pb: FakePocketBase, clock: FakeClock) -> Callable[..., SessionHolder]:
    def _make(config: ConnectionConfig | None, **kwargs: Any) -> SessionHolder:
        transport = pb.transport
        return SessionHolder(
            config,
            clock=clock,
            client_factory=lambda url: PocketBaseClient(url, transport=transport),
            **kwargs,
        )

    return _make


@pytest.fixture
def holder(make_holder: Callable[..., SessionHolder], admin_config: ConnectionConfig) -> SessionHolder:
    return make_holder(admin_config)


@pytest.fixture
def activity(clock: FakeClock) -> ActivityClock:
    return ActivityClock(clock)


@pytest.fixture
def executor(holder: SessionHolder, activity: ActivityClock, sleep: RecordingSleep) -> OperationExecutor:
    return OperationExecutor(holder, activity, sleep=sleep)


PB_ENVIRON = {
    "POCKETBASE_URL": BASE_URL,
    "POCKETBASE_ADMIN_EMAIL": ADMIN_EMAIL,
    "POCKETBASE_ADMIN_PASSWORD": ADMIN_PASSWORD,
}


@pytest.fixture
def make_server(pb: FakePocketBase, clock: FakeClock, sleep: RecordingSleep) -> Callable[..., PocketBaseMCPServer]:
    """Build a server whose HTTP traffic (PocketBase, Stripe, SendGrid) goes to ``pb``."""

    def _make(**environ: str) -> PocketBaseMCPServer:
        return PocketBaseMCPServer(
            load_settings(environ=environ),
            transport=pb.transport,
            clock=clock,
            sleep=sleep,
        )

    return _make


@pytest.fixture
def server(make_server: Callable[..., PocketBaseMCPServer]) -> PocketBaseMCPServer:
    return make_server(**PB_ENVIRON)
