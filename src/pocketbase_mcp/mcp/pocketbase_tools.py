"""PocketBase tools: collections, records, auth flows, files and subscriptions.

Every handler runs its remote call through the ``OperationExecutor`` so the
session renewal and retry policy apply uniformly.  Handlers return plain
payload dicts; the server wraps them in the success envelope.
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import json
import logging
from typing import Any

from pocketbase_mcp.errors import InputRejected, error_envelope
from pocketbase_mcp.mcp.base_server import BaseMCPServer
from pocketbase_mcp.pocketbase.client import quote_filter
from pocketbase_mcp.pocketbase.executor import OperationExecutor
from pocketbase_mcp.pocketbase.session import Session

logger = logging.getLogger(__name__)

_COLLECTION = {"type": "string", "description": "Collection name"}
_RECORD_ID = {"type": "string", "description": "Record ID"}
_AUTH_COLLECTION = {"type": "string", "description": 'User collection (e.g., "users")'}
_TEXT_FIELD_TYPES = {"text", "email", "url", "editor"}
_SYSTEM_FIELDS = frozenset({"id", "created", "updated", "collectionId", "collectionName", "expand"})


def _summarise_collection(col: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": col.get("id"),
        "name": col.get("name"),
        "type": col.get("type"),
        "system": col.get("system", False),
        "fields": col.get("fields", col.get("schema", [])),
        "listRule": col.get("listRule"),
        "viewRule": col.get("viewRule"),
        "createRule": col.get("createRule"),
        "updateRule": col.get("updateRule"),
        "deleteRule": col.get("deleteRule"),
    }


def _csv_cell(value: Any) -> Any:
    # JSON, relation and multi-select fields stay machine readable.
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return value


def _records_to_csv(records: list[dict[str, Any]]) -> str:
    columns: list[str] = []
    for record in records:
        for key in record:
            if key not in columns and key != "expand":
                columns.append(key)
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for record in records:
        writer.writerow({k: _csv_cell(v) for k, v in record.items() if k in columns})
    return buffer.getvalue()


class PocketBaseTools:
    """Registers and implements the ``pocketbase_*`` tools."""

    def __init__(self, executor: OperationExecutor) -> None:
        self._executor = executor
        self._holder = executor.holder

    async def _run(self, name: str, operation: Any) -> Any:
        return await self._executor.execute(operation, name=name)

    def register(self, server: BaseMCPServer) -> None:
        def tool(name: str, description: str, properties: dict[str, Any], required: list[str], handler: Any) -> None:
            schema: dict[str, Any] = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            server.register_tool(name, description, schema, handler, service="pocketbase")

        tool(
            "pocketbase_list_collections",
            "List all available PocketBase collections",
            {},
            [],
            self._list_collections,
        )
        tool(
            "pocketbase_get_collection",
            "Get detailed information about a specific collection",
            {"name": {"type": "string", "description": "Collection name or ID"}},
            ["name"],
            self._get_collection,
        )
        tool(
            "pocketbase_create_collection",
            "Create a new collection (admin only)",
            {
                "name": {"type": "string", "description": "Collection name"},
                "type": {
                    "type": "string",
                    "description": "Collection type (base, auth, view)",
                    "enum": ["base", "auth", "view"],
                },
                "schema": {
                    "type": "array",
                    "items": {"type": "object"},
                    "description": "Collection schema fields",
                },
                "options": {"type": "object", "description": "Collection options"},
            },
            ["name", "type"],
            self._create_collection,
        )
        tool(
            "pocketbase_update_collection",
            "Update collection schema (admin only)",
            {
                "id": {"type": "string", "description": "Collection ID"},
                "name": {"type": "string", "description": "Collection name"},
                "schema": {
                    "type": "array",
                    "items": {"type": "object"},
                    "description": "Updated schema fields",
                },
                "options": {"type": "object", "description": "Collection options"},
            },
            ["id"],
            self._update_collection,
        )
        tool(
            "pocketbase_delete_collection",
            "Delete a collection (admin only)",
            {"id": {"type": "string", "description": "Collection ID"}},
            ["id"],
            self._delete_collection,
        )
        tool(
            "pocketbase_create_record",
            "Create a new record in a collection",
            {"collection": _COLLECTION, "data": {"type": "object", "description": "Record data"}},
            ["collection", "data"],
            self._create_record,
        )
        tool(
            "pocketbase_get_record",
            "Get a specific record by ID",
            {
                "collection": _COLLECTION,
                "id": _RECORD_ID,
                "expand": {"type": "string", "description": "Relations to expand"},
            },
            ["collection", "id"],
            self._get_record,
        )
        tool(
            "pocketbase_update_record",
            "Update an existing record",
            {
                "collection": _COLLECTION,
                "id": _RECORD_ID,
                "data": {"type": "object", "description": "Updated data"},
            },
            ["collection", "id", "data"],
            self._update_record,
        )
        tool(
            "pocketbase_delete_record",
            "Delete a record by ID",
            {"collection": _COLLECTION, "id": _RECORD_ID},
            ["collection", "id"],
            self._delete_record,
        )
        tool(
            "pocketbase_list_records",
            "List records with filtering and pagination",
            {
                "collection": _COLLECTION,
                "page": {"type": "number", "description": "Page number (default: 1)"},
                "perPage": {"type": "number", "description": "Records per page (default: 30)"},
                "filter": {"type": "string", "description": "Filter query"},
                "sort": {"type": "string", "description": "Sort criteria"},
                "expand": {"type": "string", "description": "Relations to expand"},
            },
            ["collection"],
            self._list_records,
        )
        tool(
            "pocketbase_search_records",
            "Search records with full-text search",
            {
                "collection": _COLLECTION,
                "query": {"type": "string", "description": "Search query"},
                "fields": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Fields to search in",
                },
                "limit": {"type": "number", "description": "Maximum results"},
            },
            ["collection", "query"],
            self._search_records,
        )
        tool(
            "pocketbase_batch_create",
            "Create multiple records in batch",
            {
                "collection": _COLLECTION,
                "records": {
                    "type": "array",
                    "items": {"type": "object"},
                    "description": "Array of record data objects",
                },
            },
            ["collection", "records"],
            self._batch_create,
        )
        tool(
            "pocketbase_batch_update",
            "Update multiple records in batch",
            {
                "collection": _COLLECTION,
                "updates": {
                    "type": "array",
                    "items": {"type": "object"},
                    "description": "Array of {id, data} objects",
                },
            },
            ["collection", "updates"],
            self._batch_update,
        )
        tool(
            "pocketbase_export_collection",
            "Export collection data as JSON",
            {
                "collection": _COLLECTION,
                "format": {
                    "type": "string",
                    "description": "Export format (json, csv)",
                    "enum": ["json", "csv"],
                },
            },
            ["collection"],
            self._export_collection,
        )
        tool(
            "pocketbase_get_stats",
            "Get collection statistics",
            {"collection": _COLLECTION},
            ["collection"],
            self._get_stats,
        )
        tool(
            "pocketbase_count_records",
            "Count records in a collection with optional filtering",
            {"collection": _COLLECTION, "filter": {"type": "string", "description": "Filter query"}},
            ["collection"],
            self._count_records,
        )
        tool(
            "pocketbase_get_unique_values",
            "Get unique values for a field in a collection",
            {
                "collection": _COLLECTION,
                "field": {"type": "string", "description": "Field name"},
                "limit": {"type": "number", "description": "Max unique values to return"},
            },
            ["collection", "field"],
            self._get_unique_values,
        )
        tool(
            "pocketbase_bulk_delete",
            "Delete multiple records by filter",
            {
                "collection": _COLLECTION,
                "filter": {"type": "string", "description": "Filter to select records to delete"},
                "confirmDeletion": {
                    "type": "boolean",
                    "description": "Confirm you want to delete (safety check)",
                },
            },
            ["collection", "filter", "confirmDeletion"],
            self._bulk_delete,
        )
        tool(
            "pocketbase_duplicate_record",
            "Duplicate an existing record",
            {
                "collection": _COLLECTION,
                "recordId": {"type": "string", "description": "ID of record to duplicate"},
                "overrides": {"type": "object", "description": "Fields to override in the duplicate"},
            },
            ["collection", "recordId"],
            self._duplicate_record,
        )
        tool(
            "pocketbase_auth_with_password",
            "Authenticate with email and password",
            {
                "collection": _AUTH_COLLECTION,
                "email": {"type": "string", "description": "User email"},
                "password": {"type": "string", "description": "User password"},
            },
            ["collection", "email", "password"],
            self._auth_with_password,
        )
        tool(
            "pocketbase_auth_with_oauth2",
            "Authenticate with OAuth2 provider",
            {
                "collection": {"type": "string", "description": "User collection"},
                "provider": {"type": "string", "description": "OAuth2 provider (google, github, etc.)"},
                "code": {"type": "string", "description": "OAuth2 authorization code"},
                "codeVerifier": {"type": "string", "description": "PKCE code verifier"},
                "redirectUrl": {"type": "string", "description": "OAuth2 redirect URL"},
            },
            ["collection", "provider", "code"],
            self._auth_with_oauth2,
        )
        tool(
            "pocketbase_auth_refresh",
            "Refresh authentication token",
            {},
            [],
            self._auth_refresh,
        )
        tool(
            "pocketbase_request_password_reset",
            "Request password reset email",
            {
                "collection": {"type": "string", "description": "User collection"},
                "email": {"type": "string", "description": "User email"},
            },
            ["collection", "email"],
            self._request_password_reset,
        )
        tool(
            "pocketbase_confirm_password_reset",
            "Confirm password reset with token",
            {
                "collection": {"type": "string", "description": "User collection"},
                "token": {"type": "string", "description": "Reset token"},
                "password": {"type": "string", "description": "New password"},
                "passwordConfirm": {"type": "string", "description": "Confirm new password"},
            },
            ["collection", "token", "password", "passwordConfirm"],
            self._confirm_password_reset,
        )
        tool(
            "pocketbase_upload_file",
            "Upload a file to a record",
            {
                "collection": _COLLECTION,
                "recordId": _RECORD_ID,
                "field": {"type": "string", "description": "File field name"},
                "file": {"type": "string", "description": "File content (base64 encoded)"},
                "filename": {"type": "string", "description": "Original filename"},
            },
            ["collection", "recordId", "field", "file", "filename"],
            self._upload_file,
        )
        tool(
            "pocketbase_delete_file",
            "Delete a file from a record",
            {
                "collection": _COLLECTION,
                "recordId": _RECORD_ID,
                "field": {"type": "string", "description": "File field name"},
                "filename": {"type": "string", "description": "Filename to delete"},
            },
            ["collection", "recordId", "field", "filename"],
            self._delete_file,
        )
        tool(
            "pocketbase_subscribe_record",
            "Subscribe to record changes (returns subscription info)",
            {"collection": _COLLECTION, "recordId": _RECORD_ID},
            ["collection"],
            self._subscribe_record,
        )
        tool(
            "pocketbase_unsubscribe",
            "Remove a realtime subscription, or all of them when no topic is given",
            {"topic": {"type": "string", "description": "Subscription topic (collection/recordId)"}},
            [],
            self._unsubscribe,
        )

    # -- collections ----------------------------------------------------------

    async def _list_collections(self, args: dict[str, Any]) -> dict[str, Any]:
        result = await self._run(
            "pocketbase_list_collections",
            lambda s: s.handle.list_collections(),
        )
        collections = [_summarise_collection(col) for col in result.get("items", [])]
        return {"count": len(collections), "collections": collections}

    async def _get_collection(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = await self._run(
            "pocketbase_get_collection",
            lambda s: s.handle.get_collection(args["name"]),
        )
        return {"collection": collection}

    async def _create_collection(self, args: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {"name": args["name"], "type": args["type"]}
        if "schema" in args:
            body["fields"] = args["schema"]
        body.update(args.get("options", {}))
        collection = await self._run(
            "pocketbase_create_collection",
            lambda s: s.handle.create_collection(body),
        )
        return {
            "collection": collection,
            "message": f"Collection '{args['name']}' created successfully",
        }

    async def _update_collection(self, args: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if "name" in args:
            body["name"] = args["name"]
        if "schema" in args:
            body["fields"] = args["schema"]
        body.update(args.get("options", {}))
        collection = await self._run(
            "pocketbase_update_collection",
            lambda s: s.handle.update_collection(args["id"], body),
        )
        return {"collection": collection}

    async def _delete_collection(self, args: dict[str, Any]) -> dict[str, Any]:
        await self._run(
            "pocketbase_delete_collection",
            lambda s: s.handle.delete_collection(args["id"]),
        )
        return {"deleted": args["id"]}

    # -- records --------------------------------------------------------------

    async def _create_record(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        record = await self._run(
            f"pocketbase_create_record:{collection}",
            lambda s: s.handle.create_record(collection, args["data"]),
        )
        return {
            "record": record,
            "message": f"Record created successfully in collection '{collection}'",
        }

    async def _get_record(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        record = await self._run(
            f"pocketbase_get_record:{collection}:{args['id']}",
            lambda s: s.handle.get_record(collection, args["id"], expand=args.get("expand")),
        )
        return {"record": record, "collection": collection}

    async def _update_record(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        record = await self._run(
            f"pocketbase_update_record:{collection}:{args['id']}",
            lambda s: s.handle.update_record(collection, args["id"], args["data"]),
        )
        return {"record": record, "message": "Record updated successfully"}

    async def _delete_record(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        await self._run(
            f"pocketbase_delete_record:{collection}:{args['id']}",
            lambda s: s.handle.delete_record(collection, args["id"]),
        )
        return {"deleted": args["id"], "collection": collection}

    async def _list_records(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        page = int(args.get("page") or 1)
        per_page = int(args.get("perPage") or 30)
        result = await self._run(
            f"pocketbase_list_records:{collection}",
            lambda s: s.handle.list_records(
                collection,
                page=page,
                per_page=per_page,
                filter=args.get("filter"),
                sort=args.get("sort"),
                expand=args.get("expand"),
            ),
        )
        return {
            "collection": collection,
            "page": result.get("page", page),
            "perPage": result.get("perPage", per_page),
            "totalItems": result.get("totalItems", 0),
            "totalPages": result.get("totalPages", 0),
            "items": result.get("items", []),
        }

    async def _search_records(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        query = args["query"]
        fields = list(args.get("fields") or [])
        limit = int(args.get("limit") or 30)

        async def _search(session: Session) -> dict[str, Any]:
            search_fields = fields
            if not search_fields:
                schema = await session.handle.get_collection(collection)
                search_fields = [
                    f["name"]
                    for f in schema.get("fields", schema.get("schema", []))
                    if f.get("type") in _TEXT_FIELD_TYPES and not f.get("hidden")
                ]
            if not search_fields:
                raise InputRejected(f"Collection '{collection}' has no text fields to search")
            filter_expr = " || ".join(f"{name} ~ {quote_filter(query)}" for name in search_fields)
            result = await session.handle.list_records(
                collection, page=1, per_page=limit, filter=f"({filter_expr})"
            )
            result["searchedFields"] = search_fields
            return result

        result = await self._run(f"pocketbase_search_records:{collection}", _search)
        return {
            "collection": collection,
            "query": query,
            "fields": result["searchedFields"],
            "totalItems": result.get("totalItems", 0),
            "items": result.get("items", []),
        }

    async def _batch_create(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        created: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        for index, data in enumerate(args["records"]):
            try:
                record = await self._run(
                    f"pocketbase_batch_create:{collection}[{index}]",
                    lambda s, data=data: s.handle.create_record(collection, data),
                )
            except Exception as exc:
                failed.append({"index": index, **error_envelope(exc)})
                continue
            created.append(record)
        logger.info("Batch create in %s: %d created, %d failed", collection, len(created), len(failed))
        return {
            "collection": collection,
            "created": created,
            "failed": failed,
            "summary": {"total": len(args["records"]), "created": len(created), "failed": len(failed)},
        }

    async def _batch_update(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        updated: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        for index, update in enumerate(args["updates"]):
            record_id = update.get("id")
            if not record_id or not isinstance(update.get("data"), dict):
                failed.append({
                    "index": index,
                    "success": False,
                    "error": "Each update needs an 'id' and a 'data' object",
                    "code": "INVALID_ARGUMENTS",
                })
                continue
            try:
                record = await self._run(
                    f"pocketbase_batch_update:{collection}:{record_id}",
                    lambda s, rid=record_id, data=update["data"]: s.handle.update_record(
                        collection, rid, data
                    ),
                )
            except Exception as exc:
                failed.append({"index": index, "id": record_id, **error_envelope(exc)})
                continue
            updated.append(record)
        return {
            "collection": collection,
            "updated": updated,
            "failed": failed,
            "summary": {"total": len(args["updates"]), "updated": len(updated), "failed": len(failed)},
        }

    async def _export_collection(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        fmt = args.get("format") or "json"
        records = await self._run(
            f"pocketbase_export_collection:{collection}",
            lambda s: s.handle.get_full_list(collection),
        )
        payload: dict[str, Any] = {"collection": collection, "format": fmt, "count": len(records)}
        if fmt == "csv":
            payload["data"] = _records_to_csv(records)
        else:
            payload["data"] = records
        return payload

    async def _get_stats(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]

        async def _stats(session: Session) -> dict[str, Any]:
            schema = await session.handle.get_collection(collection)
            sample = await session.handle.list_records(collection, page=1, per_page=1, sort="-created")
            return {
                "collection": collection,
                "type": schema.get("type"),
                "fieldCount": len(schema.get("fields", schema.get("schema", []))),
                "totalRecords": sample.get("totalItems", 0),
                "lastRecord": (sample.get("items") or [None])[0],
            }

        return {"stats": await self._run(f"pocketbase_get_stats:{collection}", _stats)}

    async def _count_records(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        result = await self._run(
            f"pocketbase_count_records:{collection}",
            lambda s: s.handle.list_records(collection, page=1, per_page=1, filter=args.get("filter")),
        )
        return {
            "collection": collection,
            "totalCount": result.get("totalItems", 0),
            "filter": args.get("filter") or "none",
        }

    async def _get_unique_values(self, args: dict[str, Any]) -> dict[str, Any]:
        collection, field = args["collection"], args["field"]
        limit = max(1, int(args.get("limit") or 100))
        records = await self._run(
            f"pocketbase_get_unique_values:{collection}",
            lambda s: s.handle.get_full_list(collection),
        )
        # Keyed by JSON text so list and object values can be compared too.
        unique: dict[str, Any] = {}
        for record in records:
            value = record.get(field)
            if value is None:
                continue
            unique.setdefault(json.dumps(value, sort_keys=True), value)
            if len(unique) >= limit:
                break
        return {
            "collection": collection,
            "field": field,
            "uniqueValues": list(unique.values()),
            "totalUnique": len(unique),
        }

    async def _bulk_delete(self, args: dict[str, Any]) -> dict[str, Any]:
        if args.get("confirmDeletion") is not True:
            raise InputRejected("Deletion not confirmed. Set confirmDeletion to true.")
        collection, filter_expr = args["collection"], args["filter"]
        if not filter_expr.strip():
            raise InputRejected("filter must select records; refusing to delete a whole collection")
        targets = await self._run(
            f"pocketbase_bulk_delete:{collection}",
            lambda s: s.handle.get_full_list(collection, filter=filter_expr),
        )
        deleted: list[str] = []
        failed: list[dict[str, Any]] = []
        for record in targets:
            try:
                await self._run(
                    f"pocketbase_bulk_delete:{collection}:{record['id']}",
                    lambda s, rid=record["id"]: s.handle.delete_record(collection, rid),
                )
            except Exception as exc:
                failed.append({"recordId": record["id"], **error_envelope(exc)})
                continue
            deleted.append(record["id"])
        logger.info("Bulk delete in %s: %d deleted, %d failed", collection, len(deleted), len(failed))
        return {
            "collection": collection,
            "filter": filter_expr,
            "deleted": deleted,
            "failed": failed,
            "summary": {"matched": len(targets), "deleted": len(deleted), "failed": len(failed)},
        }

    async def _duplicate_record(self, args: dict[str, Any]) -> dict[str, Any]:
        collection, record_id = args["collection"], args["recordId"]

        async def _duplicate(session: Session) -> dict[str, Any]:
            original = await session.handle.get_record(collection, record_id)
            data = {k: v for k, v in original.items() if k not in _SYSTEM_FIELDS}
            data.update(args.get("overrides") or {})
            duplicate = await session.handle.create_record(collection, data)
            return {"original": original, "duplicate": duplicate}

        return await self._run(f"pocketbase_duplicate_record:{collection}:{record_id}", _duplicate)

    # -- auth flows -----------------------------------------------------------

    async def _auth_with_password(self, args: dict[str, Any]) -> dict[str, Any]:
        result = await self._run(
            "pocketbase_auth_with_password",
            lambda s: s.handle.auth_with_password(
                args["collection"], args["email"], args["password"], store=False
            ),
        )
        return {"token": result.get("token"), "record": result.get("record")}

    async def _auth_with_oauth2(self, args: dict[str, Any]) -> dict[str, Any]:
        result = await self._run(
            "pocketbase_auth_with_oauth2",
            lambda s: s.handle.auth_with_oauth2(
                args["collection"],
                args["provider"],
                args["code"],
                code_verifier=args.get("codeVerifier"),
                redirect_url=args.get("redirectUrl"),
            ),
        )
        return {"token": result.get("token"), "record": result.get("record"), "meta": result.get("meta")}

    async def _auth_refresh(self, args: dict[str, Any]) -> dict[str, Any]:
        session = await self._holder.refresh()
        if not session.is_valid:
            raise InputRejected("No authenticated admin session to refresh; configure admin credentials")
        return {
            "message": "Authentication token refreshed",
            "session": session.describe(session.authenticated_at),
        }

    async def _request_password_reset(self, args: dict[str, Any]) -> dict[str, Any]:
        await self._run(
            "pocketbase_request_password_reset",
            lambda s: s.handle.request_password_reset(args["collection"], args["email"]),
        )
        return {"message": f"Password reset email requested for {args['email']}"}

    async def _confirm_password_reset(self, args: dict[str, Any]) -> dict[str, Any]:
        if args["password"] != args["passwordConfirm"]:
            raise InputRejected("password and passwordConfirm do not match")
        await self._run(
            "pocketbase_confirm_password_reset",
            lambda s: s.handle.confirm_password_reset(
                args["collection"], args["token"], args["password"], args["passwordConfirm"]
            ),
        )
        return {"message": "Password reset confirmed"}

    # -- files ----------------------------------------------------------------

    async def _upload_file(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            content = base64.b64decode(args["file"], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InputRejected(f"file is not valid base64: {exc}") from exc
        collection, record_id, field = args["collection"], args["recordId"], args["field"]
        files = {field: (args["filename"], content)}
        record = await self._run(
            f"pocketbase_upload_file:{collection}:{record_id}",
            lambda s: s.handle.update_record(collection, record_id, {}, files=files),
        )
        return {"record": record, "field": field, "size": len(content)}

    async def _delete_file(self, args: dict[str, Any]) -> dict[str, Any]:
        collection, record_id, field = args["collection"], args["recordId"], args["field"]
        record = await self._run(
            f"pocketbase_delete_file:{collection}:{record_id}",
            lambda s: s.handle.update_record(collection, record_id, {f"{field}-": [args["filename"]]}),
        )
        return {"record": record, "deleted": args["filename"]}

    # -- realtime -------------------------------------------------------------

    async def _subscribe_record(self, args: dict[str, Any]) -> dict[str, Any]:
        collection = args["collection"]
        record_id = args.get("recordId")

        async def _probe(session: Session) -> str:
            if record_id:
                await session.handle.get_record(collection, record_id)
            else:
                await session.handle.get_collection(collection)
            return session.handle.base_url

        base_url = await self._run(f"pocketbase_subscribe_record:{collection}", _probe)
        topic = f"{collection}/{record_id}" if record_id else f"{collection}/*"
        info = {
            "topic": topic,
            "collection": collection,
            "recordId": record_id,
            "realtimeUrl": f"{base_url}/api/realtime",
        }
        self._holder.subscribe(topic, info)
        return {"subscription": info, "message": f"Subscribed to {topic}"}

    async def _unsubscribe(self, args: dict[str, Any]) -> dict[str, Any]:
        removed = self._holder.unsubscribe(args.get("topic"))
        return {"removed": removed}
