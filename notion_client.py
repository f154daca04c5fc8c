"""
notion_client.py — thin async client for the Notion API.

Two pieces:
  - NotionOAuthClient: builds the Notion consent URL and exchanges the
    authorization code for a workspace access token (used by the callback).
  - NotionClient: bearer-authenticated data calls behind the MCP tools.

Responses are flattened into plain dicts so tool output stays readable.
"""

import logging
import re
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger("notion-client")

NOTION_API = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"
HTTP_TIMEOUT = 30.0
PAGE_SIZE = 100

_URL_ID_RE = re.compile(r"(?:notion\.so|notion\.site)/(?:.*[-/])?([a-f0-9]{32})")


class NotionAuthError(Exception):
    """Code exchange with Notion failed. Details are for logs only."""


class NotionAPIError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"Notion API error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class NotionToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    bot_id: str
    workspace_id: str
    workspace_name: str | None = None
    workspace_icon: str | None = None
    duplicated_template_id: str | None = None


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

class NotionOAuthClient:
    AUTHORIZE_URL = f"{NOTION_API}/oauth/authorize"
    TOKEN_URL = f"{NOTION_API}/oauth/token"

    def __init__(self, client_id: str, client_secret: str,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self._transport = transport

    def authorize_url(self, redirect_uri: str, state: str) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "owner": "user",
            "state": state,
        })
        return f"{self.AUTHORIZE_URL}?{query}"

    async def exchange_code(self, code: str, redirect_uri: str) -> NotionToken:
        """Trade an authorization code for a workspace token.

        Notion takes a JSON body with HTTP Basic client authentication.
        """
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    self.TOKEN_URL,
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                    json={
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": redirect_uri,
                    },
                )
        except httpx.RequestError as e:
            raise NotionAuthError(f"network error during code exchange: {e}") from e

        if response.is_error:
            raise NotionAuthError(
                f"token endpoint returned {response.status_code}: {response.text}"
            )
        try:
            return NotionToken.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NotionAuthError(f"unexpected token response: {e}") from e


# ---------------------------------------------------------------------------
# Data API
# ---------------------------------------------------------------------------

class NotionClient:
    def __init__(self, access_token: str,
                 transport: httpx.AsyncBaseTransport | None = None):
        self._http = httpx.AsyncClient(
            base_url=NOTION_API,
            timeout=HTTP_TIMEOUT,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Notion-Version": NOTION_VERSION,
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        response = await self._http.request(method, path, **kwargs)
        if response.is_error:
            raise NotionAPIError(response.status_code, response.text)
        return response.json()

    async def _search_data_sources(self) -> list[dict]:
        results: list[dict] = []
        cursor: str | None = None
        while True:
            body: dict[str, Any] = {
                "filter": {"value": "data_source", "property": "object"},
                "page_size": PAGE_SIZE,
            }
            if cursor:
                body["start_cursor"] = cursor
            res = await self._request("POST", "/search", json=body)
            results.extend(res.get("results", []))
            cursor = res.get("next_cursor") if res.get("has_more") else None
            if not cursor:
                return results

    async def list_databases(self) -> list[dict]:
        return [
            {
                "id": db["id"],
                "title": _plain_title(db),
                "url": db.get("url"),
                "created_time": db.get("created_time"),
                "last_edited_time": db.get("last_edited_time"),
            }
            for db in await self._search_data_sources()
        ]

    async def get_database_schema(self, database_id: str) -> dict:
        wanted = database_id.replace("-", "")
        for db in await self._search_data_sources():
            if db["id"].replace("-", "") == wanted:
                break
        else:
            raise NotionAPIError(
                404,
                f"Database {database_id} not found. Make sure it's shared with the integration.",
            )

        properties = []
        for name, prop in (db.get("properties") or {}).items():
            entry: dict[str, Any] = {"name": name, "type": prop.get("type")}
            kind = prop.get("type")
            if kind in ("select", "multi_select", "status"):
                entry["options"] = [o["name"] for o in prop[kind].get("options", [])]
            if kind == "status":
                entry["groups"] = [
                    {"name": g["name"], "option_ids": g.get("option_ids", [])}
                    for g in prop["status"].get("groups", [])
                ]
            properties.append(entry)
        return {"id": db["id"], "title": _plain_title(db), "properties": properties}

    async def query_database(self, database_id: str, filter: dict | None = None,
                             sorts: list[dict] | None = None,
                             page_size: int | None = None) -> list[dict]:
        pages: list[dict] = []
        cursor: str | None = None
        while True:
            body: dict[str, Any] = {"page_size": page_size or PAGE_SIZE}
            if filter:
                body["filter"] = filter
            if sorts:
                body["sorts"] = sorts
            if cursor:
                body["start_cursor"] = cursor
            res = await self._request("POST", f"/data_sources/{database_id}/query", json=body)
            pages.extend(flatten_page(p) for p in res.get("results", []))
            cursor = res.get("next_cursor") if res.get("has_more") else None
            if not cursor:
                return pages

    async def get_page(self, page_id: str) -> dict:
        return flatten_page(await self._request("GET", f"/pages/{page_id}"))

    async def get_page_blocks(self, page_id: str) -> list[dict]:
        blocks: list[dict] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"page_size": PAGE_SIZE}
            if cursor:
                params["start_cursor"] = cursor
            res = await self._request("GET", f"/blocks/{page_id}/children", params=params)
            blocks.extend(res.get("results", []))
            cursor = res.get("next_cursor") if res.get("has_more") else None
            if not cursor:
                return [flatten_block(b) for b in blocks]

    async def update_database(self, database_id: str, title: str | None = None,
                              properties: dict | None = None) -> dict:
        body: dict[str, Any] = {}
        if title is not None:
            body["title"] = [{"type": "text", "text": {"content": title}}]
        if properties:
            body["properties"] = properties
        db = await self._request("PATCH", f"/data_sources/{database_id}", json=body)
        return {
            "id": db["id"],
            "title": _plain_title(db),
            "url": db.get("url"),
            "last_edited_time": db.get("last_edited_time"),
        }

    async def create_page(self, *, database_id: str | None = None,
                          page_id: str | None = None,
                          properties: dict | None = None,
                          children: list[dict] | None = None) -> dict:
        body: dict[str, Any] = {}
        if database_id:
            body["parent"] = {"data_source_id": database_id}
        elif page_id:
            body["parent"] = {"page_id": page_id}
        if properties:
            body["properties"] = properties
        if children:
            body["children"] = children
        return flatten_page(await self._request("POST", "/pages", json=body))

    async def update_page(self, page_id: str, properties: dict) -> dict:
        page = await self._request("PATCH", f"/pages/{page_id}", json={"properties": properties})
        return flatten_page(page)

    async def archive_page(self, page_id: str) -> dict:
        page = await self._request("PATCH", f"/pages/{page_id}", json={"archived": True})
        return {"id": page["id"], "archived": True}


# ---------------------------------------------------------------------------
# Flattening helpers
# ---------------------------------------------------------------------------

def normalize_id(id_or_url: str) -> str:
    """Accept a bare id, a dashed UUID or a notion.so / notion.site URL."""
    match = _URL_ID_RE.search(id_or_url)
    if match:
        return match.group(1)
    return id_or_url.replace("-", "")


def _plain_title(obj: dict) -> str:
    title = obj.get("title") or []
    if title and isinstance(title, list):
        return title[0].get("plain_text", "(untitled)")
    return "(untitled)"


def _plain_text(rich: list[dict] | None) -> str:
    return "".join(t.get("plain_text", "") for t in rich or [])


def extract_property_value(prop: dict) -> Any:
    kind = prop.get("type")
    if kind in ("title", "rich_text"):
        return _plain_text(prop.get(kind))
    if kind in ("select", "status"):
        return (prop.get(kind) or {}).get("name")
    if kind == "multi_select":
        return [s["name"] for s in prop.get(kind) or []]
    if kind == "formula":
        return extract_property_value(prop.get("formula") or {})
    if kind == "relation":
        return [r["id"] for r in prop.get(kind) or []]
    if kind == "rollup":
        rollup = prop.get("rollup") or {}
        if rollup.get("type") == "array":
            return [extract_property_value(item) for item in rollup.get("array", [])]
        return rollup
    if kind == "people":
        return [
            p.get("name") or (p.get("person") or {}).get("email") or p.get("id")
            for p in prop.get(kind) or []
        ]
    if kind == "files":
        return [
            (f.get("file") or {}).get("url") or (f.get("external") or {}).get("url") or f.get("name")
            for f in prop.get(kind) or []
        ]
    if kind in ("created_by", "last_edited_by"):
        user = prop.get(kind) or {}
        return user.get("name") or user.get("id")
    if kind == "unique_id":
        uid = prop.get(kind)
        if not uid:
            return None
        return f"{uid.get('prefix') or ''}{uid.get('number')}"
    return prop.get(kind) if kind else None


def flatten_page(page: dict) -> dict:
    if not page.get("properties"):
        return {"id": page.get("id"), "properties": {}}
    return {
        "id": page["id"],
        "url": page.get("url"),
        "created_time": page.get("created_time"),
        "last_edited_time": page.get("last_edited_time"),
        "properties": {
            name: extract_property_value(value)
            for name, value in page["properties"].items()
        },
    }


def flatten_block(block: dict) -> dict:
    kind = block.get("type")
    content = block.get(kind) or {}
    if content.get("rich_text"):
        text = _plain_text(content["rich_text"])
    else:
        text = content.get("title", "")

    flat: dict[str, Any] = {
        "id": block.get("id"),
        "type": kind,
        "text": text,
        "has_children": block.get("has_children", False),
    }
    for key in ("url", "language"):
        if content.get(key):
            flat[key] = content[key]
    if "checked" in content:
        flat["checked"] = content["checked"]
    return flat
