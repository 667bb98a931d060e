"""Connectivity probes that bypass the Session Holder.

Used by the ``debug_pocketbase_auth`` tool and ``pocketbase-mcp status
--check``.  Each probe uses its own short-lived client so that a failing
diagnostic never disturbs the held session.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from pocketbase_mcp.errors import ServiceError
from pocketbase_mcp.pocketbase.client import ADMIN_COLLECTION, DEFAULT_TIMEOUT, PocketBaseClient
from pocketbase_mcp.pocketbase.credentials import ConnectionConfig

logger = logging.getLogger(__name__)


def _failure(exc: Exception) -> dict[str, Any]:
    result: dict[str, Any] = {"success": False, "error": str(exc)}
    if isinstance(exc, ServiceError):
        result["status"] = exc.status
        result["needsAuth"] = exc.status in (401, 403)
    return result


async def probe(
    config: ConnectionConfig,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Run health, anonymous listing and admin-auth checks against *config*."""
    tests: dict[str, Any] = {"healthCheck": None, "collectionsTest": None, "authTest": None}
    client = PocketBaseClient(config.base_url, timeout=timeout, transport=transport)
    try:
        try:
            await client.health()
        except (ServiceError, httpx.HTTPError) as exc:
            tests["healthCheck"] = _failure(exc)
            return tests
        tests["healthCheck"] = {"success": True, "message": "Health check passed"}

        try:
            result = await client.list_collections(per_page=5)
            items = result.get("items", [])
            tests["collectionsTest"] = {
                "success": True,
                "message": f"Found {len(items)} collections without auth",
                "collections": [
                    {"id": c.get("id"), "name": c.get("name"), "type": c.get("type")} for c in items
                ],
            }
        except (ServiceError, httpx.HTTPError) as exc:
            tests["collectionsTest"] = _failure(exc)

        if not config.has_admin_credentials:
            tests["authTest"] = {"success": False, "skipped": True, "error": "No admin credentials configured"}
            return tests

        try:
            auth = await client.auth_with_password(
                ADMIN_COLLECTION, config.admin_identity, config.admin_secret
            )
        except (ServiceError, httpx.HTTPError) as exc:
            tests["authTest"] = _failure(exc)
            return tests
        record = auth.get("record") or {}
        tests["authTest"] = {
            "success": True,
            "message": "Authentication successful",
            "user": {"id": record.get("id"), "email": record.get("email")},
            "token": "PRESENT" if auth.get("token") else "MISSING",
        }
        try:
            result = await client.list_collections(per_page=5)
            tests["collectionsTest"]["withAuth"] = {
                "success": True,
                "count": len(result.get("items", [])),
            }
        except (ServiceError, httpx.HTTPError) as exc:
            tests["collectionsTest"]["withAuth"] = _failure(exc)
        return tests
    finally:
        await client.aclose()
        logger.debug("PocketBase probe finished: %s", {k: bool(v and v.get("success")) for k, v in tests.items()})
