"""Tests for the PocketBase tool handlers, driven through dispatch."""

from __future__ import annotations

import base64
import csv
import io
import json

import pytest

from pocketbase_mcp.mcp.server import PocketBaseMCPServer
from pocketbase_mcp.pocketbase.client import quote_filter

from conftest import BASE_URL, FakePocketBase


class TestQuoteFilter:
    def test_escapes_quotes_and_backslashes(self) -> None:
        assert quote_filter('say "hi"') == '"say \\"hi\\""'
        assert quote_filter("a\\b") == '"a\\\\b"'


class TestCollections:
    @pytest.mark.asyncio
    async def test_list_collections(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_collection("comments")
        envelope = await server.dispatch("pocketbase_list_collections", {})
        assert envelope["count"] == 2
        assert {c["name"] for c in envelope["collections"]} == {"posts", "comments"}

    @pytest.mark.asyncio
    async def test_create_collection_sends_fields(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        envelope = await server.dispatch(
            "pocketbase_create_collection",
            {"name": "tags", "type": "base", "schema": [{"name": "label", "type": "text"}]},
        )
        assert envelope["success"] is True
        assert pb.collections["tags"]["fields"] == [{"name": "label", "type": "text"}]

    @pytest.mark.asyncio
    async def test_delete_collection(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        envelope = await server.dispatch("pocketbase_delete_collection", {"id": "posts"})
        assert envelope["deleted"] == "posts"
        assert "posts" not in pb.collections


class TestRecords:
    @pytest.mark.asyncio
    async def test_list_records_paging(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        for title in ("a", "b", "c"):
            pb.add_record("posts", title=title)
        envelope = await server.dispatch("pocketbase_list_records", {"collection": "posts", "page": 2, "perPage": 2})
        assert envelope["totalItems"] == 3
        assert envelope["totalPages"] == 2
        assert [r["title"] for r in envelope["items"]] == ["c"]

    @pytest.mark.asyncio
    async def test_list_records_filter(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", title="a")
        pb.add_record("posts", title="b")
        envelope = await server.dispatch("pocketbase_list_records", {"collection": "posts", "filter": 'title="b"'})
        assert [r["title"] for r in envelope["items"]] == ["b"]

    @pytest.mark.asyncio
    async def test_update_and_delete(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        record = pb.add_record("posts", title="draft")
        updated = await server.dispatch(
            "pocketbase_update_record", {"collection": "posts", "id": record["id"], "data": {"title": "final"}}
        )
        assert updated["record"]["title"] == "final"
        deleted = await server.dispatch("pocketbase_delete_record", {"collection": "posts", "id": record["id"]})
        assert deleted["success"] is True
        assert pb.records["posts"] == []


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_uses_text_fields_from_schema(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_collection(
            "articles",
            [
                {"name": "title", "type": "text"},
                {"name": "body", "type": "editor"},
                {"name": "views", "type": "number"},
                {"name": "secret", "type": "text", "hidden": True},
            ],
        )
        envelope = await server.dispatch("pocketbase_search_records", {"collection": "articles", "query": 'say "hi"'})
        assert envelope["fields"] == ["title", "body"]
        request = pb.calls_to("GET", "/api/collections/articles/records")[-1]
        assert request.url.params["filter"] == '(title ~ "say \\"hi\\"" || body ~ "say \\"hi\\"")'
        assert request.url.params["perPage"] == "30"

    @pytest.mark.asyncio
    async def test_search_explicit_fields_and_limit(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        await server.dispatch(
            "pocketbase_search_records", {"collection": "posts", "query": "x", "fields": ["slug"], "limit": 5}
        )
        assert pb.calls_to("GET", "/api/collections/posts") == []
        request = pb.calls_to("GET", "/api/collections/posts/records")[-1]
        assert request.url.params["filter"] == '(slug ~ "x")'
        assert request.url.params["perPage"] == "5"

    @pytest.mark.asyncio
    async def test_search_without_text_fields(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_collection("metrics", [{"name": "value", "type": "number"}])
        envelope = await server.dispatch("pocketbase_search_records", {"collection": "metrics", "query": "x"})
        assert envelope["code"] == "VALIDATION_REJECTED"


class TestBatchAndExport:
    @pytest.mark.asyncio
    async def test_batch_create_reports_partial_failure(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        envelope = await server.dispatch(
            "pocketbase_batch_create", {"collection": "posts", "records": [{"title": "ok"}, {"title": ""}]}
        )
        assert envelope["success"] is True
        assert envelope["summary"] == {"total": 2, "created": 1, "failed": 1}
        failure = envelope["failed"][0]
        assert failure["index"] == 1
        assert failure["code"] == 400
        assert len(pb.records["posts"]) == 1

    @pytest.mark.asyncio
    async def test_batch_update(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        record = pb.add_record("posts", title="a")
        envelope = await server.dispatch(
            "pocketbase_batch_update",
            {
                "collection": "posts",
                "updates": [
                    {"id": record["id"], "data": {"title": "b"}},
                    {"id": "missing", "data": {"title": "c"}},
                    {"data": {"title": "d"}},
                ],
            },
        )
        assert envelope["summary"] == {"total": 3, "updated": 1, "failed": 2}
        assert envelope["failed"][0]["id"] == "missing"
        assert envelope["failed"][0]["code"] == 404
        assert envelope["failed"][1]["code"] == "INVALID_ARGUMENTS"
        assert pb.records["posts"][0]["title"] == "b"

    @pytest.mark.asyncio
    async def test_export_json(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", title="a")
        envelope = await server.dispatch("pocketbase_export_collection", {"collection": "posts"})
        assert envelope["format"] == "json"
        assert envelope["count"] == 1
        assert envelope["data"][0]["title"] == "a"

    @pytest.mark.asyncio
    async def test_export_csv(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", id="r1", title="hello, world")
        pb.add_record("posts", id="r2", title="plain", tag="x")
        envelope = await server.dispatch("pocketbase_export_collection", {"collection": "posts", "format": "csv"})
        lines = envelope["data"].splitlines()
        assert lines[0] == "id,collectionName,title,tag"
        assert lines[1] == 'r1,posts,"hello, world",'
        assert lines[2] == "r2,posts,plain,x"

    @pytest.mark.asyncio
    async def test_export_csv_keeps_json_fields_parseable(
        self, server: PocketBaseMCPServer, pb: FakePocketBase
    ) -> None:
        pb.add_record("posts", id="r1", title="a", meta={"a": True}, tags=["x", None])
        envelope = await server.dispatch("pocketbase_export_collection", {"collection": "posts", "format": "csv"})
        rows = list(csv.DictReader(io.StringIO(envelope["data"])))
        assert json.loads(rows[0]["meta"]) == {"a": True}
        assert json.loads(rows[0]["tags"]) == ["x", None]
        assert rows[0]["title"] == "a"

    @pytest.mark.asyncio
    async def test_stats(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", title="a")
        pb.add_record("posts", title="b")
        stats = (await server.dispatch("pocketbase_get_stats", {"collection": "posts"}))["stats"]
        assert stats["totalRecords"] == 2
        assert stats["fieldCount"] == 1
        assert stats["type"] == "base"


class TestBulkHelpers:
    @pytest.mark.asyncio
    async def test_count_records(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", title="a", tag="x")
        pb.add_record("posts", title="b", tag="y")
        pb.add_record("posts", title="c", tag="x")
        everything = await server.dispatch("pocketbase_count_records", {"collection": "posts"})
        assert everything["totalCount"] == 3
        assert everything["filter"] == "none"
        tagged = await server.dispatch("pocketbase_count_records", {"collection": "posts", "filter": 'tag="x"'})
        assert tagged["totalCount"] == 2
        request = pb.calls_to("GET", "/api/collections/posts/records")[-1]
        assert request.url.params["perPage"] == "1"

    @pytest.mark.asyncio
    async def test_unique_values(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", title="a", tag="x")
        pb.add_record("posts", title="b", tag="y")
        pb.add_record("posts", title="c", tag="x")
        pb.add_record("posts", title="d")
        pb.add_record("posts", title="e", tag=["x", "y"])
        envelope = await server.dispatch("pocketbase_get_unique_values", {"collection": "posts", "field": "tag"})
        assert envelope["uniqueValues"] == ["x", "y", ["x", "y"]]
        assert envelope["totalUnique"] == 3

        limited = await server.dispatch(
            "pocketbase_get_unique_values", {"collection": "posts", "field": "tag", "limit": 1}
        )
        assert limited["uniqueValues"] == ["x"]

    @pytest.mark.asyncio
    async def test_bulk_delete_requires_confirmation(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        pb.add_record("posts", title="a", tag="old")
        envelope = await server.dispatch(
            "pocketbase_bulk_delete", {"collection": "posts", "filter": 'tag="old"', "confirmDeletion": False}
        )
        assert envelope["code"] == "VALIDATION_REJECTED"
        assert pb.requests == []
        assert len(pb.records["posts"]) == 1

    @pytest.mark.asyncio
    async def test_bulk_delete_removes_matching_records(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        old = pb.add_record("posts", title="a", tag="old")
        pb.add_record("posts", title="b", tag="new")
        envelope = await server.dispatch(
            "pocketbase_bulk_delete", {"collection": "posts", "filter": 'tag="old"', "confirmDeletion": True}
        )
        assert envelope["deleted"] == [old["id"]]
        assert envelope["summary"] == {"matched": 1, "deleted": 1, "failed": 0}
        assert [r["title"] for r in pb.records["posts"]] == ["b"]

    @pytest.mark.asyncio
    async def test_duplicate_record_drops_system_fields(
        self, server: PocketBaseMCPServer, pb: FakePocketBase
    ) -> None:
        original = pb.add_record("posts", title="a", body="text", created="2024-01-01", updated="2024-01-02")
        envelope = await server.dispatch(
            "pocketbase_duplicate_record",
            {"collection": "posts", "recordId": original["id"], "overrides": {"title": "a (copy)"}},
        )
        assert envelope["original"]["id"] == original["id"]
        duplicate = envelope["duplicate"]
        assert duplicate["id"] != original["id"]
        assert duplicate["title"] == "a (copy)"
        assert duplicate["body"] == "text"
        sent = json.loads(pb.calls_to("POST", "/api/collections/posts/records")[0].content)
        assert sent == {"title": "a (copy)", "body": "text"}

    @pytest.mark.asyncio
    async def test_duplicate_missing_record(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        envelope = await server.dispatch("pocketbase_duplicate_record", {"collection": "posts", "recordId": "nope"})
        assert envelope["code"] == 404
        assert pb.calls_to("POST", "/api/collections/posts/records") == []


class TestAuthFlows:
    @pytest.mark.asyncio
    async def test_password_mismatch_is_rejected_locally(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        envelope = await server.dispatch(
            "pocketbase_confirm_password_reset",
            {"collection": "users", "token": "t", "password": "one", "passwordConfirm": "two"},
        )
        assert envelope["code"] == "VALIDATION_REJECTED"
        assert pb.requests == []

    @pytest.mark.asyncio
    async def test_auth_refresh(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        await server.dispatch("pocketbase_list_collections", {})
        envelope = await server.dispatch("pocketbase_auth_refresh", {})
        assert envelope["success"] is True
        assert envelope["session"]["authenticated"] is True
        assert len(pb.calls_to("POST", "/api/collections/_superusers/auth-refresh")) == 1

    @pytest.mark.asyncio
    async def test_auth_refresh_without_admin(self, make_server, pb: FakePocketBase) -> None:
        server = make_server(POCKETBASE_URL=BASE_URL)
        envelope = await server.dispatch("pocketbase_auth_refresh", {})
        assert envelope["code"] == "VALIDATION_REJECTED"


class TestFiles:
    @pytest.mark.asyncio
    async def test_upload_sends_multipart(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        record = pb.add_record("posts", title="a")
        content = b"\x89PNG fake image"
        envelope = await server.dispatch(
            "pocketbase_upload_file",
            {
                "collection": "posts",
                "recordId": record["id"],
                "field": "cover",
                "file": base64.b64encode(content).decode(),
                "filename": "cover.png",
            },
        )
        assert envelope["success"] is True
        assert envelope["size"] == len(content)
        request = pb.calls_to("PATCH", f"/api/collections/posts/records/{record['id']}")[0]
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b'filename="cover.png"' in request.content

    @pytest.mark.asyncio
    async def test_upload_rejects_bad_base64(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        envelope = await server.dispatch(
            "pocketbase_upload_file",
            {"collection": "posts", "recordId": "r1", "field": "cover", "file": "not base64!", "filename": "a.png"},
        )
        assert envelope["code"] == "VALIDATION_REJECTED"
        assert envelope["recordId"] == "r1"
        assert pb.requests == []

    @pytest.mark.asyncio
    async def test_delete_file_uses_minus_modifier(self, server: PocketBaseMCPServer, pb: FakePocketBase) -> None:
        record = pb.add_record("posts", title="a", cover=["cover.png"])
        await server.dispatch(
            "pocketbase_delete_file",
            {"collection": "posts", "recordId": record["id"], "field": "cover", "filename": "cover.png"},
        )
        request = pb.calls_to("PATCH", f"/api/collections/posts/records/{record['id']}")[0]
        assert json.loads(request.content) == {"cover-": ["cover.png"]}


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, server: PocketBaseMCPServer) -> None:
        envelope = await server.dispatch("pocketbase_subscribe_record", {"collection": "posts"})
        subscription = envelope["subscription"]
        assert subscription["topic"] == "posts/*"
        assert subscription["realtimeUrl"] == f"{BASE_URL}/api/realtime"
        assert "posts/*" in server.holder.current.subscriptions

        removed = await server.dispatch("pocketbase_unsubscribe", {})
        assert removed["removed"] == ["posts/*"]
        assert server.holder.current.subscriptions == {}

    @pytest.mark.asyncio
    async def test_subscribe_to_missing_record(self, server: PocketBaseMCPServer) -> None:
        envelope = await server.dispatch("pocketbase_subscribe_record", {"collection": "posts", "recordId": "nope"})
        assert envelope["code"] == 404
        assert envelope["recordId"] == "nope"

    @pytest.mark.asyncio
    async def test_hibernation_drops_subscriptions(self, server: PocketBaseMCPServer) -> None:
        await server.dispatch("pocketbase_subscribe_record", {"collection": "posts"})
        session = server.holder.current
        await server.dispatch("hibernate", {})
        assert session.subscriptions == {}
        removed = await server.dispatch("pocketbase_unsubscribe", {})
        assert removed["removed"] == []
