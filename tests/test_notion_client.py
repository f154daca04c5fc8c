"""Tests for notion_client.py."""
import json
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from notion_client import (
    NOTION_VERSION,
    NotionAPIError,
    NotionAuthError,
    NotionClient,
    NotionOAuthClient,
    extract_property_value,
    flatten_block,
    flatten_page,
    normalize_id,
)

DB_ID = "0123456789abcdef0123456789abcdef"


def _transport(handler):
    requests = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(record), requests


def _page(page_id, name):
    return {
        "object": "page",
        "id": page_id,
        "url": f"https://www.notion.so/{page_id}",
        "properties": {
            "Name": {"type": "title", "title": [{"plain_text": name}]},
            "Done": {"type": "checkbox", "checkbox": False},
        },
    }


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

class TestNotionOAuthClient:
    def test_authorize_url(self):
        client = NotionOAuthClient("cid", "csecret")
        url = client.authorize_url("https://mcp.example.com/callback", "S1")
        assert url.startswith("https://api.notion.com/v1/oauth/authorize?")
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        assert params == {
            "client_id": "cid",
            "redirect_uri": "https://mcp.example.com/callback",
            "response_type": "code",
            "owner": "user",
            "state": "S1",
        }

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json={
            "access_token": "secret_x",
            "token_type": "bearer",
            "bot_id": "bot-1",
            "workspace_id": "ws-1",
            "workspace_name": "Acme",
        }))
        client = NotionOAuthClient("cid", "csecret", transport=transport)

        token = await client.exchange_code("N1", "https://mcp.example.com/callback")

        assert token.access_token == "secret_x"
        assert token.workspace_name == "Acme"
        request = requests[0]
        assert request.url == "https://api.notion.com/v1/oauth/token"
        assert request.headers["authorization"].startswith("Basic ")
        assert json.loads(request.content) == {
            "grant_type": "authorization_code",
            "code": "N1",
            "redirect_uri": "https://mcp.example.com/callback",
        }

    @pytest.mark.asyncio
    async def test_exchange_error_status(self):
        transport, _ = _transport(lambda r: httpx.Response(400, json={"error": "invalid_grant"}))
        client = NotionOAuthClient("cid", "csecret", transport=transport)
        with pytest.raises(NotionAuthError, match="400"):
            await client.exchange_code("N1", "https://mcp.example.com/callback")

    @pytest.mark.asyncio
    async def test_exchange_malformed_response(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={"nope": True}))
        client = NotionOAuthClient("cid", "csecret", transport=transport)
        with pytest.raises(NotionAuthError):
            await client.exchange_code("N1", "https://mcp.example.com/callback")

    @pytest.mark.asyncio
    async def test_exchange_network_error(self):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = NotionOAuthClient("cid", "csecret", transport=httpx.MockTransport(fail))
        with pytest.raises(NotionAuthError, match="network error"):
            await client.exchange_code("N1", "https://mcp.example.com/callback")


# ---------------------------------------------------------------------------
# Data API
# ---------------------------------------------------------------------------

class TestNotionClient:
    @pytest.mark.asyncio
    async def test_sends_auth_and_version_headers(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json=_page("p1", "A")))
        async with NotionClient("secret_x", transport=transport) as notion:
            await notion.get_page("p1")
        assert requests[0].headers["authorization"] == "Bearer secret_x"
        assert requests[0].headers["notion-version"] == NOTION_VERSION

    @pytest.mark.asyncio
    async def test_query_follows_cursor(self):
        def handler(request):
            body = json.loads(request.content)
            if "start_cursor" not in body:
                return httpx.Response(200, json={
                    "results": [_page("p1", "A")], "has_more": True, "next_cursor": "c2",
                })
            assert body["start_cursor"] == "c2"
            return httpx.Response(200, json={
                "results": [_page("p2", "B")], "has_more": False, "next_cursor": None,
            })

        transport, requests = _transport(handler)
        async with NotionClient("secret_x", transport=transport) as notion:
            pages = await notion.query_database(DB_ID, filter={"property": "Done",
                                                               "checkbox": {"equals": False}})

        assert [p["properties"]["Name"] for p in pages] == ["A", "B"]
        assert len(requests) == 2
        assert requests[0].url.path == f"/v1/data_sources/{DB_ID}/query"
        assert json.loads(requests[0].content)["filter"]["property"] == "Done"

    @pytest.mark.asyncio
    async def test_api_error_raised(self):
        transport, _ = _transport(lambda r: httpx.Response(404, json={"message": "not found"}))
        async with NotionClient("secret_x", transport=transport) as notion:
            with pytest.raises(NotionAPIError) as exc_info:
                await notion.get_page("missing")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_schema_for_unshared_database(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={
            "results": [], "has_more": False,
        }))
        async with NotionClient("secret_x", transport=transport) as notion:
            with pytest.raises(NotionAPIError, match="shared with the integration"):
                await notion.get_database_schema(DB_ID)

    @pytest.mark.asyncio
    async def test_schema_lists_options(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={
            "results": [{
                "id": "01234567-89ab-cdef-0123-456789abcdef",
                "title": [{"plain_text": "Tasks"}],
                "properties": {
                    "Status": {"type": "select",
                               "select": {"options": [{"name": "Todo"}, {"name": "Done"}]}},
                },
            }],
            "has_more": False,
        }))
        async with NotionClient("secret_x", transport=transport) as notion:
            schema = await notion.get_database_schema(DB_ID)
        assert schema["title"] == "Tasks"
        assert schema["properties"] == [
            {"name": "Status", "type": "select", "options": ["Todo", "Done"]},
        ]

    @pytest.mark.asyncio
    async def test_archive_page(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json={"id": "p1"}))
        async with NotionClient("secret_x", transport=transport) as notion:
            result = await notion.archive_page("p1")
        assert result == {"id": "p1", "archived": True}
        assert requests[0].method == "PATCH"
        assert json.loads(requests[0].content) == {"archived": True}

    @pytest.mark.asyncio
    async def test_create_page_under_database(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json=_page("p9", "New")))
        async with NotionClient("secret_x", transport=transport) as notion:
            await notion.create_page(database_id=DB_ID, properties={"Name": {}})
        assert json.loads(requests[0].content)["parent"] == {"data_source_id": DB_ID}


# ---------------------------------------------------------------------------
# Flattening helpers
# ---------------------------------------------------------------------------

class TestNormalizeId:
    def test_bare_id(self):
        assert normalize_id(DB_ID) == DB_ID

    def test_dashed_uuid(self):
        assert normalize_id("01234567-89ab-cdef-0123-456789abcdef") == DB_ID

    def test_notion_url(self):
        assert normalize_id(f"https://www.notion.so/acme/Tasks-{DB_ID}?v=1") == DB_ID


class TestExtractPropertyValue:
    @pytest.mark.parametrize("prop,expected", [
        ({"type": "title", "title": [{"plain_text": "Hello "}, {"plain_text": "world"}]},
         "Hello world"),
        ({"type": "select", "select": {"name": "High"}}, "High"),
        ({"type": "select", "select": None}, None),
        ({"type": "multi_select", "multi_select": [{"name": "a"}, {"name": "b"}]}, ["a", "b"]),
        ({"type": "number", "number": 42}, 42),
        ({"type": "checkbox", "checkbox": True}, True),
        ({"type": "relation", "relation": [{"id": "r1"}]}, ["r1"]),
        ({"type": "formula", "formula": {"type": "number", "number": 3}}, 3),
        ({"type": "unique_id", "unique_id": {"prefix": "T-", "number": 7}}, "T-7"),
        ({"type": "people", "people": [{"name": "Ada"}]}, ["Ada"]),
    ])
    def test_values(self, prop, expected):
        assert extract_property_value(prop) == expected


class TestFlatten:
    def test_page_without_properties(self):
        assert flatten_page({"id": "p1"}) == {"id": "p1", "properties": {}}

    def test_page(self):
        flat = flatten_page(_page("p1", "A"))
        assert flat["properties"] == {"Name": "A", "Done": False}

    def test_block(self):
        block = {
            "id": "b1",
            "type": "to_do",
            "has_children": False,
            "to_do": {"rich_text": [{"plain_text": "Ship it"}], "checked": True},
        }
        assert flatten_block(block) == {
            "id": "b1", "type": "to_do", "text": "Ship it", "has_children": False,
            "checked": True,
        }

    def test_code_block_keeps_language(self):
        block = {"id": "b2", "type": "code",
                 "code": {"rich_text": [{"plain_text": "print()"}], "language": "python"}}
        assert flatten_block(block)["language"] == "python"
