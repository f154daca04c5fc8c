#!/usr/bin/env python3
"""
Notion MCP — remote MCP server for a Notion workspace.

Runs as an MCP server (stdio or streamable-http) that exposes the Notion
databases and pages shared with the integration as tools. Over HTTP, MCP
clients authenticate with OAuth against this server, which sends the user
through a consent page and Notion's own OAuth screen (see notion_oauth.py).

Configuration comes from environment variables; see Settings.from_env.
"""

import argparse
import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import AnyHttpUrl
from mcp.server.fastmcp import FastMCP
from mcp.server.auth.middleware.auth_context import get_access_token
from mcp.server.auth.settings import AuthSettings, ClientRegistrationOptions, RevocationOptions
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import Response

from kv_store import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from notion_client import NotionClient, NotionOAuthClient, normalize_id
from notion_oauth import NotionOAuthProvider

logger = logging.getLogger("notion-mcp")

SCOPE = "notion"


# ---------------------------------------------------------------------------
# Configuration — env vars
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    issuer_url: str
    cookie_secret: str
    token_secret: str
    notion_client_id: str
    notion_client_secret: str
    redis_url: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            issuer_url=os.environ.get("NOTION_MCP_ISSUER_URL", "https://localhost:8787"),
            cookie_secret=os.environ.get("NOTION_MCP_COOKIE_SECRET", ""),
            token_secret=os.environ.get("NOTION_MCP_TOKEN_SECRET", ""),
            notion_client_id=os.environ.get("NOTION_OAUTH_CLIENT_ID", ""),
            notion_client_secret=os.environ.get("NOTION_OAUTH_CLIENT_SECRET", ""),
            redis_url=os.environ.get("NOTION_MCP_REDIS_URL") or None,
        )

    def missing(self) -> list[str]:
        required = {
            "NOTION_MCP_COOKIE_SECRET": self.cookie_secret,
            "NOTION_MCP_TOKEN_SECRET": self.token_secret,
            "NOTION_OAUTH_CLIENT_ID": self.notion_client_id,
            "NOTION_OAUTH_CLIENT_SECRET": self.notion_client_secret,
        }
        return [name for name, value in required.items() if not value]


def _load_settings() -> Settings:
    settings = Settings.from_env()
    missing = settings.missing()
    if missing:
        raise SystemExit(f"Missing required configuration: {', '.join(missing)}")
    return settings


def _build_store(settings: Settings) -> KeyValueStore:
    if settings.redis_url:
        return RedisKeyValueStore.from_url(settings.redis_url)
    logger.warning("NOTION_MCP_REDIS_URL not set; using in-process store "
                   "(pending authorizations and grants are lost on restart)")
    return MemoryKeyValueStore()


SETTINGS = _load_settings()
_store = _build_store(SETTINGS)

# ---------------------------------------------------------------------------
# OAuth provider (shared instance — must exist before FastMCP constructor)
# ---------------------------------------------------------------------------
_oauth_provider = NotionOAuthProvider(
    issuer_url=SETTINGS.issuer_url,
    store=_store,
    notion=NotionOAuthClient(SETTINGS.notion_client_id, SETTINGS.notion_client_secret),
    cookie_secret=SETTINGS.cookie_secret,
    token_secret=SETTINGS.token_secret,
)

_INSTRUCTIONS = (
    "Notion MCP — read and edit the Notion databases and pages shared with "
    "this integration.\n"
    "\n"
    "Start with list_databases to discover database ids, then call "
    "get_database_schema before query_database, create_database_item or "
    "update_page_properties: property names are case-sensitive.\n"
    "Ids may be given as bare ids, dashed UUIDs or notion.so URLs.\n"
)

mcp = FastMCP(
    "notion-mcp",
    auth_server_provider=_oauth_provider,
    auth=AuthSettings(
        issuer_url=AnyHttpUrl(SETTINGS.issuer_url),
        resource_server_url=AnyHttpUrl(f"{SETTINGS.issuer_url.rstrip('/')}/mcp"),
        client_registration_options=ClientRegistrationOptions(
            enabled=True,
            valid_scopes=[SCOPE],
            default_scopes=[SCOPE],
        ),
        revocation_options=RevocationOptions(enabled=True),
        required_scopes=[SCOPE],
    ),
    # Behind a reverse proxy the Host header is the public domain.
    transport_security=TransportSecuritySettings(
        enable_dns_rebinding_protection=False,
    ),
    instructions=_INSTRUCTIONS,
)


@mcp.custom_route("/consent", methods=["GET", "POST"])
async def _consent_route(request: Request) -> Response:
    """Consent page: skipped for previously approved clients."""
    return await _oauth_provider.handle_consent(request)


@mcp.custom_route("/callback", methods=["GET"])
async def _callback_route(request: Request) -> Response:
    """Notion redirects here after the user authorizes the workspace."""
    return await _oauth_provider.handle_callback(request)


# ---------------------------------------------------------------------------
# Tool helpers
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _notion() -> AsyncIterator[NotionClient]:
    """Notion client for the workspace behind the caller's bearer token."""
    access_token = get_access_token()
    if access_token is None:
        raise ValueError("Not authenticated")
    grant = await _oauth_provider.notion_grant(access_token.token)
    if grant is None:
        raise ValueError("Notion authorization expired; reconnect the server")
    async with NotionClient(grant.access_token) as client:
        yield client


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def list_databases() -> str:
    """List all Notion databases the integration can access.

    Call this first to discover database ids. Returns id, title, url,
    created_time and last_edited_time for each database.
    """
    async with _notion() as notion:
        return _dump(await notion.list_databases())


@mcp.tool()
async def get_database_schema(database_id: str) -> str:
    """Get the properties (columns) of a database with their types and options.

    Always call this before query_database, create_database_item or
    update_page_properties; property names are case-sensitive.

    Args:
        database_id: Database id from list_databases, or a Notion URL.
    """
    async with _notion() as notion:
        return _dump(await notion.get_database_schema(normalize_id(database_id)))


@mcp.tool()
async def query_database(
    database_id: str,
    filter: dict[str, Any] | None = None,
    sorts: list[dict[str, Any]] | None = None,
    page_size: int | None = None,
) -> str:
    """Query rows of a database with optional filtering and sorting.

    Filter examples:
      {"property": "Status", "select": {"equals": "Done"}}
      {"and": [{"property": "Done", "checkbox": {"equals": true}},
               {"property": "Score", "number": {"greater_than": 50}}]}
    Sort example:
      [{"property": "Score", "direction": "descending"}]

    All result pages are fetched; page_size (1-100) only sets the batch size.

    Args:
        database_id: Database id from list_databases, or a Notion URL.
        filter: Notion filter object.
        sorts: List of Notion sort objects.
        page_size: Items per internal request.
    """
    async with _notion() as notion:
        pages = await notion.query_database(normalize_id(database_id), filter, sorts, page_size)
    return _dump({"count": len(pages), "results": pages})


@mcp.tool()
async def get_page(page_id: str) -> str:
    """Get a page's metadata and flattened property values.

    Args:
        page_id: Page id (from query_database results) or a Notion URL.
    """
    async with _notion() as notion:
        return _dump(await notion.get_page(normalize_id(page_id)))


@mcp.tool()
async def get_page_content(page_id: str) -> str:
    """Get the body of a page as a list of blocks (type, text, has_children).

    Args:
        page_id: Page id (from query_database results) or a Notion URL.
    """
    async with _notion() as notion:
        return _dump(await notion.get_page_blocks(normalize_id(page_id)))


@mcp.tool()
async def update_database(
    database_id: str,
    title: str | None = None,
    properties: dict[str, Any] | None = None,
) -> str:
    """Rename a database or add, rename and remove its properties.

    properties examples:
      add:    {"Priority": {"select": {"options": [{"name": "High"}]}}}
      rename: {"Old Name": {"name": "New Name"}}
      remove: {"Obsolete": null}

    Args:
        database_id: Database id from list_databases, or a Notion URL.
        title: New database title; omit to keep the current one.
        properties: Property schema changes.
    """
    async with _notion() as notion:
        return _dump(await notion.update_database(normalize_id(database_id), title, properties))


@mcp.tool()
async def create_database_item(database_id: str, properties: dict[str, Any]) -> str:
    """Create a row in a database.

    properties example:
      {"Name": {"title": [{"text": {"content": "New task"}}]},
       "Status": {"select": {"name": "Todo"}}}

    Args:
        database_id: Database id from list_databases, or a Notion URL.
        properties: Property values keyed by exact property name.
    """
    async with _notion() as notion:
        page = await notion.create_page(database_id=normalize_id(database_id),
                                        properties=properties)
    return _dump(page)


@mcp.tool()
async def update_page_properties(page_id: str, properties: dict[str, Any]) -> str:
    """Update property values of an existing page or database row.

    Only the given properties change. Same value format as create_database_item.

    Args:
        page_id: Page id from query_database, get_page, or a Notion URL.
        properties: Property values keyed by exact property name.
    """
    async with _notion() as notion:
        return _dump(await notion.update_page(normalize_id(page_id), properties))


@mcp.tool()
async def delete_page(page_id: str) -> str:
    """Archive a page or database row. Only reversible from Notion's trash.

    Args:
        page_id: Page id to archive, or a Notion URL.
    """
    async with _notion() as notion:
        return _dump(await notion.archive_page(normalize_id(page_id)))


@mcp.tool()
async def create_page(
    parent_page_id: str,
    title: str,
    children: list[dict[str, Any]] | None = None,
) -> str:
    """Create a page nested under another page, optionally with content blocks.

    Block example:
      {"object": "block", "type": "paragraph",
       "paragraph": {"rich_text": [{"type": "text", "text": {"content": "Hello"}}]}}

    Args:
        parent_page_id: Parent page id or Notion URL.
        title: Title of the new page.
        children: Block objects for the page body; omit for an empty page.
    """
    async with _notion() as notion:
        page = await notion.create_page(
            page_id=normalize_id(parent_page_id),
            properties={"title": {"title": [{"text": {"content": title}}]}},
            children=children,
        )
    return _dump(page)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    # HTTP only: tools resolve Notion credentials from the OAuth bearer token.
    parser = argparse.ArgumentParser(description="Notion MCP server (streamable HTTP)")
    parser.add_argument("--port", type=int, default=8787)
    parser.add_argument("--host", default="127.0.0.1")
    return parser.parse_args(argv)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.notion-mcp/audit.log
    _audit_log_path = Path.home() / ".notion-mcp" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("notion-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    args = _parse_args()

    import uvicorn

    # FastMCP's streamable_http_app() includes the OAuth routes,
    # metadata endpoints, bearer auth middleware and custom routes.
    app = mcp.streamable_http_app()

    from starlette.types import ASGIApp as _ASGIApp, Receive as _Recv, Scope as _Scp, Send as _Snd

    class _RequestLogMiddleware:
        def __init__(self, inner: _ASGIApp):
            self.inner = inner

        async def __call__(self, scope: _Scp, receive: _Recv, send: _Snd) -> None:
            if scope["type"] == "http":
                hdrs = dict(scope.get("headers", []))
                ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
                logger.info("recv: %s %s ua=%s", scope.get("method", "?"),
                            scope.get("path", "?"), ua[:60])
            await self.inner(scope, receive, send)

    app = _RequestLogMiddleware(app)

    logger.info(f"notion-mcp: starting HTTP server on {args.host}:{args.port}")

    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                            proxy_headers=True, forwarded_allow_ips="*")
    server = uvicorn.Server(config)

    async def _serve() -> None:
        try:
            await server.serve()
        finally:
            if isinstance(_store, RedisKeyValueStore):
                await _store.close()

    asyncio.run(_serve())
