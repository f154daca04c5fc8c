"""
notion_oauth.py — OAuthAuthorizationServerProvider for the Notion MCP server.

Implements the MCP SDK auth provider protocol. The SDK serves /authorize,
/token, /register, /revoke and the discovery metadata; this provider puts a
consent step and a Notion OAuth round trip between /authorize and the code
the MCP client finally receives:

  /authorize (SDK) → /consent → Notion consent screen → /callback
      → client redirect_uri?code=...&state=...

Security layers:
  - Consent links are HMAC-signed, so only requests the SDK validated reach
    the consent page.
  - The consent form is CSRF protected (cookie + form double submit).
  - Clients the user approved before are remembered in a signed cookie and
    skip the consent page.
  - The state sent to Notion is a single-use token in the KV store, bound
    to the browser by a cookie holding its SHA-256.
  - Access tokens are HS256 JWTs; the Notion grant behind each one lives in
    the KV store for the token's lifetime. No refresh tokens are issued.
"""

import html as html_mod
import json
import logging
import secrets
import time
from typing import Any
from urllib.parse import urlencode, urlparse

import jwt
from pydantic import AnyUrl, BaseModel
from starlette.datastructures import FormData
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response

from mcp.server.auth.provider import (
    AccessToken,
    AuthorizationCode,
    AuthorizationParams,
    RefreshToken,
    RegistrationError,
    TokenError,
    construct_redirect_uri,
)
from mcp.shared.auth import InvalidRedirectUriError, OAuthClientInformationFull, OAuthToken

from kv_store import KeyValueStore
from notion_client import NotionAuthError, NotionOAuthClient, NotionToken
from oauth_security import (
    AuthorizationRequest,
    OAuthFailure,
    Ok,
    Result,
    StateStore,
    approve_client,
    bind_state,
    decode_consent_state,
    encode_consent_state,
    invalid_request,
    is_client_approved,
    issue_csrf,
    seal_request,
    server_error,
    sign_consent_state,
    unseal_request,
    validate_csrf,
    verify_state_binding,
)

logger = logging.getLogger("notion-oauth")
audit_logger = logging.getLogger("notion-audit")

TOKEN_EXPIRY = 8 * 3600  # 8 hours
AUTH_CODE_TTL = 300  # 5 minutes
JWT_ALGORITHM = "HS256"
MAX_CLIENT_NAME = 256
MAX_CLIENT_URI = 2048
CLIENT_TTL = 90 * 86400  # 90 days

CLIENT_KEY_PREFIX = "oauth:client:"
CODE_KEY_PREFIX = "oauth:code:"
GRANT_KEY_PREFIX = "oauth:grant:"

_SECURITY_HEADERS = {
    "Content-Security-Policy": "frame-ancestors 'none'",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class NotionGrant(BaseModel):
    """Notion credentials bound to one issued access token."""

    client_id: str
    scopes: list[str]
    access_token: str
    workspace_id: str
    workspace_name: str
    bot_id: str


class _PendingCode(BaseModel):
    code: AuthorizationCode
    grant: NotionGrant


class NotionOAuthProvider:
    """OAuth 2.0 provider that fronts Notion for MCP clients.

    Registration rate-limited to 10/min.
    """

    REG_RATE_LIMIT = 10
    REG_RATE_WINDOW = 60  # seconds

    def __init__(
        self,
        issuer_url: str,
        store: KeyValueStore,
        notion: NotionOAuthClient,
        cookie_secret: str,
        token_secret: str,
        server_name: str = "Notion MCP Server",
        server_description: str = "Connect your AI assistant to your Notion workspace.",
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.store = store
        self.states = StateStore(store)
        self.notion = notion
        self.cookie_secret = cookie_secret
        self.token_secret = token_secret
        self.server_name = server_name
        self.server_description = server_description
        self._reg_timestamps: list[float] = []

    @property
    def callback_url(self) -> str:
        return f"{self.issuer_url}/callback"

    # --- OAuthAuthorizationServerProvider protocol ---

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        raw = await self.store.get(CLIENT_KEY_PREFIX + client_id)
        if raw is None:
            return None
        return OAuthClientInformationFull.model_validate_json(raw)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        now = time.time()
        self._reg_timestamps = [t for t in self._reg_timestamps
                                if now - t < self.REG_RATE_WINDOW]
        if len(self._reg_timestamps) >= self.REG_RATE_LIMIT:
            _audit("register_rate_limited")
            raise RegistrationError(
                "invalid_client_metadata",
                "Too many registration requests, try again later",
            )
        self._reg_timestamps.append(now)

        if client_info.client_name and len(client_info.client_name) > MAX_CLIENT_NAME:
            raise RegistrationError(
                "invalid_client_metadata",
                f"client_name exceeds {MAX_CLIENT_NAME} characters",
            )
        if client_info.client_uri and len(str(client_info.client_uri)) > MAX_CLIENT_URI:
            raise RegistrationError(
                "invalid_client_metadata",
                f"client_uri exceeds {MAX_CLIENT_URI} characters",
            )

        await self.store.put(CLIENT_KEY_PREFIX + client_info.client_id,
                             client_info.model_dump_json(), ttl=CLIENT_TTL)
        _audit("client_registered", client_id=client_info.client_id,
               client_name=client_info.client_name)
        logger.info("client_registered: %s", client_info.client_id)

    async def authorize(
        self,
        client: OAuthClientInformationFull,
        params: AuthorizationParams,
    ) -> str:
        auth_request = AuthorizationRequest(
            client_id=client.client_id,
            redirect_uri=str(params.redirect_uri),
            redirect_uri_provided_explicitly=params.redirect_uri_provided_explicitly,
            state=params.state,
            scopes=params.scopes or [],
            code_challenge=params.code_challenge,
            resource=params.resource,
        )
        sealed = seal_request(auth_request, self.cookie_secret)
        logger.info("authorize: client=%s → /consent", client.client_id)
        return f"{self.issuer_url}/consent?{urlencode({'request': sealed})}"

    async def load_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: str,
    ) -> AuthorizationCode | None:
        raw = await self.store.get(CODE_KEY_PREFIX + authorization_code)
        if raw is None:
            return None
        pending = _PendingCode.model_validate_json(raw)
        if pending.code.client_id != client.client_id:
            _audit("code_rejected", reason="client_mismatch", client_id=client.client_id)
            return None
        return pending.code

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: AuthorizationCode,
    ) -> OAuthToken:
        key = CODE_KEY_PREFIX + authorization_code.code
        raw = await self.store.get(key)
        if raw is None:
            raise TokenError("invalid_grant", "authorization code already used")
        await self.store.delete(key)
        pending = _PendingCode.model_validate_json(raw)

        now = int(time.time())
        jti = secrets.token_hex(16)
        scope = " ".join(authorization_code.scopes)
        access_tok = jwt.encode(
            {
                "sub": client.client_id,
                "iss": self.issuer_url,
                "iat": now,
                "exp": now + TOKEN_EXPIRY,
                "jti": jti,
                "scope": scope,
            },
            self.token_secret,
            algorithm=JWT_ALGORITHM,
        )
        await self.store.put(GRANT_KEY_PREFIX + jti, pending.grant.model_dump_json(),
                             ttl=TOKEN_EXPIRY)
        _audit("token_issued", client_id=client.client_id, jti=jti,
               workspace_id=pending.grant.workspace_id, expires_in=TOKEN_EXPIRY)

        return OAuthToken(
            access_token=access_tok,
            token_type="Bearer",
            expires_in=TOKEN_EXPIRY,
            scope=scope or None,
        )

    async def load_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: str,
    ) -> RefreshToken | None:
        return None

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: RefreshToken,
        scopes: list[str],
    ) -> OAuthToken:
        raise TokenError("unsupported_grant_type", "refresh tokens are not issued")

    async def load_access_token(self, token: str) -> AccessToken | None:
        claims = self._decode_token(token)
        if claims is None:
            return None
        grant = await self._load_grant(claims["jti"])
        if grant is None:
            _audit("token_rejected", reason="grant_missing", client_id=claims["sub"])
            return None
        return AccessToken(
            token=token,
            client_id=claims["sub"],
            scopes=grant.scopes,
            expires_at=claims["exp"],
        )

    async def revoke_token(self, token: AccessToken | RefreshToken) -> None:
        if isinstance(token, RefreshToken):
            return
        claims = self._decode_token(token.token, verify_exp=False)
        if claims is None:
            return
        await self.store.delete(GRANT_KEY_PREFIX + claims["jti"])
        _audit("token_revoked", client_id=claims["sub"], jti=claims["jti"])

    # --- Notion credentials for tool calls ---

    async def notion_grant(self, token: str) -> NotionGrant | None:
        claims = self._decode_token(token)
        if claims is None:
            return None
        return await self._load_grant(claims["jti"])

    # --- Internal ---

    def _decode_token(self, token: str, verify_exp: bool = True) -> dict | None:
        try:
            return jwt.decode(
                token,
                self.token_secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self.issuer_url,
                options={"require": ["sub", "exp", "iss", "jti"], "verify_exp": verify_exp},
            )
        except jwt.InvalidTokenError as e:
            _audit("token_rejected", reason=str(e))
            return None

    async def _load_grant(self, jti: str) -> NotionGrant | None:
        raw = await self.store.get(GRANT_KEY_PREFIX + jti)
        if raw is None:
            return None
        return NotionGrant.model_validate_json(raw)

    async def _check_client(
        self, auth_request: AuthorizationRequest,
    ) -> Result[OAuthClientInformationFull]:
        if not auth_request.client_id:
            return invalid_request("Invalid request", "client_id_missing")
        client = await self.get_client(auth_request.client_id)
        if client is None:
            return invalid_request("Invalid request", "unknown_client")
        try:
            client.validate_redirect_uri(AnyUrl(auth_request.redirect_uri))
        except (InvalidRedirectUriError, ValueError):
            return invalid_request("Invalid request", "redirect_uri_mismatch")
        return Ok(client)

    def _fail(self, event: str, failure: OAuthFailure, **kwargs: Any) -> Response:
        _audit(event, reason=failure.reason, status=failure.status_code, **kwargs)
        logger.warning("%s: %s (%s)", event, failure.code, failure.reason)
        return failure.to_response()

    async def _redirect_to_notion(self, auth_request: AuthorizationRequest,
                                  *set_cookies: str) -> Response:
        state_token = await self.states.create(auth_request)
        location = self.notion.authorize_url(self.callback_url, state_token)
        response = RedirectResponse(location, status_code=302)
        for directive in (*set_cookies, bind_state(state_token)):
            response.headers.append("set-cookie", directive)
        return response

    async def _complete_authorization(self, auth_request: AuthorizationRequest,
                                      token: NotionToken) -> str:
        """Mint the code the MCP client redeems at /token; return its redirect."""
        code = secrets.token_urlsafe(32)
        pending = _PendingCode(
            code=AuthorizationCode(
                code=code,
                scopes=auth_request.scopes,
                expires_at=time.time() + AUTH_CODE_TTL,
                client_id=auth_request.client_id,
                code_challenge=auth_request.code_challenge,
                redirect_uri=AnyUrl(auth_request.redirect_uri),
                redirect_uri_provided_explicitly=auth_request.redirect_uri_provided_explicitly,
                resource=auth_request.resource,
            ),
            grant=NotionGrant(
                client_id=auth_request.client_id,
                scopes=auth_request.scopes,
                access_token=token.access_token,
                workspace_id=token.workspace_id,
                workspace_name=token.workspace_name or "",
                bot_id=token.bot_id,
            ),
        )
        await self.store.put(CODE_KEY_PREFIX + code, pending.model_dump_json(),
                             ttl=AUTH_CODE_TTL)
        _audit("authorize_completed", client_id=auth_request.client_id,
               workspace_id=token.workspace_id)
        return construct_redirect_uri(auth_request.redirect_uri, code=code,
                                      state=auth_request.state)

    # --- /consent and /callback ---

    async def handle_consent(self, request: Request) -> Response:
        try:
            if request.method == "GET":
                return await self._consent_get(request)
            return await self._consent_post(request)
        except Exception:
            logger.exception("consent handler failed")
            return self._fail("internal_error", server_error("Internal error", "internal"))

    async def handle_callback(self, request: Request) -> Response:
        try:
            return await self._callback(request)
        except Exception:
            logger.exception("callback handler failed")
            return self._fail("internal_error", server_error("Internal error", "internal"))

    async def _consent_get(self, request: Request) -> Response:
        match unseal_request(request.query_params.get("request"), self.cookie_secret):
            case OAuthFailure() as failure:
                return self._fail("consent_rejected", failure)
            case Ok(auth_request):
                pass

        match await self._check_client(auth_request):
            case OAuthFailure() as failure:
                return self._fail("consent_rejected", failure, client_id=auth_request.client_id)
            case Ok(client):
                pass

        if is_client_approved(request.cookies, client.client_id, self.cookie_secret):
            _audit("consent_skipped", client_id=client.client_id)
            return await self._redirect_to_notion(auth_request)

        csrf = issue_csrf()
        encoded_state = encode_consent_state(auth_request)
        _audit("consent_rendered", client_id=client.client_id)
        response = HTMLResponse(
            _consent_page(
                server_name=self.server_name,
                server_description=self.server_description,
                client_name=client.client_name or "Unknown MCP Client",
                client_uri=str(client.client_uri) if client.client_uri else "",
                encoded_state=encoded_state,
                state_signature=sign_consent_state(encoded_state, self.cookie_secret),
                csrf_token=csrf.token,
            ),
            headers=_SECURITY_HEADERS,
        )
        response.headers.append("set-cookie", csrf.set_cookie)
        return response

    async def _consent_post(self, request: Request) -> Response:
        form = await request.form()

        # CSRF first: nothing is recorded for a forged submission.
        match validate_csrf(_form_value(form, "csrf_token"), request.cookies):
            case OAuthFailure() as failure:
                return self._fail("csrf_rejected", failure)
            case Ok(clear_csrf):
                pass

        match decode_consent_state(_form_value(form, "state"),
                                   _form_value(form, "state_signature"),
                                   self.cookie_secret):
            case OAuthFailure() as failure:
                return self._fail("consent_rejected", failure)
            case Ok(auth_request):
                pass

        match await self._check_client(auth_request):
            case OAuthFailure() as failure:
                return self._fail("consent_rejected", failure, client_id=auth_request.client_id)
            case Ok(client):
                pass

        if _form_value(form, "action") == "deny":
            _audit("consent_denied", client_id=client.client_id)
            response = RedirectResponse(
                construct_redirect_uri(auth_request.redirect_uri,
                                       error="access_denied", state=auth_request.state),
                status_code=302,
            )
            response.headers.append("set-cookie", clear_csrf)
            return response

        approved = approve_client(request.cookies, client.client_id, self.cookie_secret)
        _audit("consent_approved", client_id=client.client_id)
        return await self._redirect_to_notion(auth_request, approved, clear_csrf)

    async def _callback(self, request: Request) -> Response:
        state_token = request.query_params.get("state")
        if not state_token:
            return self._fail("state_rejected",
                              invalid_request("Invalid or expired state", "state_missing"))

        # Binding before consumption, so a foreign browser cannot burn the state.
        match verify_state_binding(state_token, request.cookies):
            case OAuthFailure() as failure:
                return self._fail("state_rejected", failure)
            case Ok(clear_binding):
                pass

        match await self.states.consume(state_token):
            case OAuthFailure() as failure:
                return self._fail("state_rejected", failure)
            case Ok(auth_request):
                pass

        match await self._check_client(auth_request):
            case OAuthFailure() as failure:
                return self._fail("state_rejected", failure, client_id=auth_request.client_id)
            case Ok(client):
                pass

        code = request.query_params.get("code")
        if not code:
            upstream_error = request.query_params.get("error")
            if not upstream_error:
                return self._fail("state_rejected",
                                  invalid_request("Missing authorization code", "code_missing"),
                                  client_id=client.client_id)
            # User cancelled on Notion's side.
            _audit("upstream_denied", client_id=client.client_id, error=upstream_error)
            location = construct_redirect_uri(auth_request.redirect_uri,
                                              error="access_denied", state=auth_request.state)
        else:
            try:
                token = await self.notion.exchange_code(code, self.callback_url)
            except NotionAuthError as e:
                logger.error("notion code exchange failed: %s", e)
                return self._fail(
                    "upstream_exchange_failed",
                    server_error("Failed to exchange code for token", "upstream_exchange_failed"),
                    client_id=client.client_id,
                )
            location = await self._complete_authorization(auth_request, token)

        logger.info("callback_redirect: client=%s", client.client_id)
        response = RedirectResponse(location, status_code=302)
        response.headers.append("set-cookie", clear_binding)
        return response


def _form_value(form: FormData, key: str) -> str | None:
    value = form.get(key)
    return value if isinstance(value, str) else None


def _safe_url(url: str) -> str:
    """Return ``url`` only if it is a plain http(s) URL without control chars."""
    normalized = url.strip()
    if not normalized or any(ord(c) < 0x20 or 0x7F <= ord(c) <= 0x9F for c in normalized):
        return ""
    if urlparse(normalized).scheme.lower() not in ("http", "https"):
        return ""
    return normalized


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

def _consent_page(server_name: str, server_description: str, client_name: str,
                  client_uri: str, encoded_state: str, state_signature: str,
                  csrf_token: str) -> str:
    safe_server = html_mod.escape(server_name)
    safe_description = html_mod.escape(server_description)
    safe_client = html_mod.escape(client_name)
    safe_state = html_mod.escape(encoded_state)
    safe_signature = html_mod.escape(state_signature)
    safe_csrf = html_mod.escape(csrf_token)
    client_link = _safe_url(client_uri)
    client_html = (
        f'<a class="client" href="{html_mod.escape(client_link)}" '
        f'target="_blank" rel="noopener noreferrer">{safe_client}</a>'
        if client_link else f'<span class="client">{safe_client}</span>'
    )
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{safe_client} | Authorization Request</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #f9fafb; color: #333;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }}
        .card {{ background: #fff; border-radius: 12px;
            padding: 2rem; max-width: 480px; width: 90%;
            box-shadow: 0 8px 36px rgba(0, 0, 0, 0.1); }}
        h1 {{ font-size: 1.3rem; font-weight: 500; text-align: center; margin: 0 0 0.5rem 0; }}
        p {{ color: #555; text-align: center; }}
        .client {{ font-weight: 600; color: #111; }}
        .alert {{ font-size: 1.1rem; margin: 1.5rem 0; text-align: center; }}
        .buttons {{ display: flex; gap: 1rem; justify-content: flex-end; margin-top: 2rem; }}
        button {{ padding: 0.75rem 1.5rem; border-radius: 6px; font-size: 1rem;
            cursor: pointer; border: none; }}
        .approve {{ background: #0070f3; color: #fff; }}
        .deny {{ background: transparent; border: 1px solid #e5e7eb; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{safe_server}</h1>
        <p>{safe_description}</p>
        <div class="alert">{client_html} is requesting access</div>
        <p>If you approve, you will be redirected to Notion to authorize access to your workspace.</p>
        <form method="POST" action="/consent">
            <input type="hidden" name="state" value="{safe_state}">
            <input type="hidden" name="state_signature" value="{safe_signature}">
            <input type="hidden" name="csrf_token" value="{safe_csrf}">
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Cancel</button>
                <button type="submit" name="action" value="approve" class="approve">Approve</button>
            </div>
        </form>
    </div>
</body>
</html>"""
