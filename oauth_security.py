"""
oauth_security.py — security primitives for the Notion consent handshake.

Everything here is a plain function or a small value type. Cookie state goes
in as an explicit mapping (``request.cookies``) and new cookie directives come
out as ``Set-Cookie`` strings; nothing reads or writes ambient request state.

  - sign / verify_signature / digest: HMAC-SHA256 and SHA-256 helpers.
  - CSRF double submit: token in a cookie and in the consent form.
  - Approved clients: signed cookie listing client ids the user approved.
  - Session binding: cookie holding SHA-256(state token).
  - StateStore: single-use, TTL-bounded state records in the KV store.

Checks return ``Ok(value)`` or an ``OAuthFailure``. Every client-caused
failure carries the same ``invalid_request`` code; the ``reason`` field is
for the audit log only and never reaches the client.
"""

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Generic, Mapping, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.responses import JSONResponse

from kv_store import KeyValueStore

CSRF_COOKIE = "__Host-CSRF_TOKEN"
BINDING_COOKIE = "__Host-CONSENTED_STATE"
APPROVED_CLIENTS_COOKIE = "__Host-APPROVED_CLIENTS"

CSRF_TTL = 600  # 10 minutes
STATE_TTL = 600  # 10 minutes
APPROVAL_TTL = 30 * 86400  # 30 days
MAX_APPROVED_CLIENTS = 20  # keeps the cookie well under 4 KB

STATE_KEY_PREFIX = "oauth:state:"
_STATE_CREATE_ATTEMPTS = 3

_CSRF_DESCRIPTION = "Invalid CSRF token"
_BINDING_DESCRIPTION = "Authorization session mismatch - restart the authorization flow"
_STATE_DESCRIPTION = "Invalid or expired state"

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class OAuthFailure:
    code: str
    description: str
    status_code: int = 400
    reason: str = ""

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            {"error": self.code, "error_description": self.description},
            status_code=self.status_code,
            headers={"cache-control": "no-store"},
        )


Result = Union[Ok[T], OAuthFailure]


def invalid_request(description: str, reason: str) -> OAuthFailure:
    return OAuthFailure("invalid_request", description, 400, reason)


def server_error(description: str, reason: str) -> OAuthFailure:
    return OAuthFailure("server_error", description, 500, reason)


# ---------------------------------------------------------------------------
# Authorization request
# ---------------------------------------------------------------------------

class AuthorizationRequest(BaseModel):
    """The MCP client's original /authorize request, carried through Notion."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    redirect_uri: str
    redirect_uri_provided_explicitly: bool = True
    state: str | None = None
    scopes: list[str] = Field(default_factory=list)
    code_challenge: str = ""
    resource: str | None = None


# ---------------------------------------------------------------------------
# Crypto primitives
# ---------------------------------------------------------------------------

def sign(data: str, secret: str) -> str:
    return hmac.new(secret.encode(), data.encode(), hashlib.sha256).hexdigest()


def verify_signature(signature_hex: str, data: str, secret: str) -> bool:
    """Constant-time HMAC check. Malformed hex is a plain False."""
    try:
        signature = bytes.fromhex(signature_hex)
    except ValueError:
        return False
    expected = hmac.new(secret.encode(), data.encode(), hashlib.sha256).digest()
    return hmac.compare_digest(signature, expected)


def digest(data: str) -> str:
    return hashlib.sha256(data.encode()).hexdigest()


def _seal(payload: str, secret: str) -> str:
    encoded = base64.urlsafe_b64encode(payload.encode()).decode("ascii")
    return f"{sign(payload, secret)}.{encoded}"


def _unseal(value: str | None, secret: str) -> str | None:
    """Decode and verify ``<hex signature>.<base64 payload>``; None if invalid."""
    if not value:
        return None
    parts = value.split(".")
    if len(parts) != 2:
        return None
    signature_hex, encoded = parts
    try:
        payload = base64.urlsafe_b64decode(encoded.encode("ascii")).decode()
    except ValueError:
        return None
    if not verify_signature(signature_hex, payload, secret):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie directives
# ---------------------------------------------------------------------------

def _cookie(name: str, value: str, max_age: int) -> str:
    return f"{name}={value}; HttpOnly; Secure; Path=/; SameSite=Lax; Max-Age={max_age}"


def _clear_cookie(name: str) -> str:
    return _cookie(name, "", 0)


def _equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ---------------------------------------------------------------------------
# CSRF double submit
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CSRFToken:
    token: str
    set_cookie: str


def issue_csrf() -> CSRFToken:
    token = secrets.token_urlsafe(32)
    return CSRFToken(token=token, set_cookie=_cookie(CSRF_COOKIE, token, CSRF_TTL))


def validate_csrf(submitted: str | None, cookies: Mapping[str, str]) -> Result[str]:
    """Check the form token against the cookie; Ok carries a clearing directive.

    The token is not marked spent, so it may be resubmitted until it expires.
    """
    from_cookie = cookies.get(CSRF_COOKIE)
    if not submitted:
        return invalid_request(_CSRF_DESCRIPTION, "csrf_missing_form_token")
    if not from_cookie:
        return invalid_request(_CSRF_DESCRIPTION, "csrf_missing_cookie")
    if not _equal(submitted, from_cookie):
        return invalid_request(_CSRF_DESCRIPTION, "csrf_mismatch")
    return Ok(_clear_cookie(CSRF_COOKIE))


# ---------------------------------------------------------------------------
# Approved clients cookie
# ---------------------------------------------------------------------------

def encode_approved_clients(clients: list[str], secret: str) -> str:
    return _seal(json.dumps(clients), secret)


def decode_approved_clients(value: str | None, secret: str) -> list[str]:
    """Return the verified client list, or [] for anything untrusted."""
    payload = _unseal(value, secret)
    if payload is None:
        return []
    try:
        clients = json.loads(payload)
    except ValueError:
        return []
    if not isinstance(clients, list) or not all(isinstance(c, str) for c in clients):
        return []
    return clients


def is_client_approved(cookies: Mapping[str, str], client_id: str, secret: str) -> bool:
    approved = decode_approved_clients(cookies.get(APPROVED_CLIENTS_COOKIE), secret)
    return client_id in approved


def approve_client(cookies: Mapping[str, str], client_id: str, secret: str) -> str:
    """Add ``client_id`` as the most recent approval; the oldest ids fall off."""
    existing = decode_approved_clients(cookies.get(APPROVED_CLIENTS_COOKIE), secret)
    updated = [c for c in existing if c != client_id] + [client_id]
    updated = updated[-MAX_APPROVED_CLIENTS:]
    return _cookie(
        APPROVED_CLIENTS_COOKIE,
        encode_approved_clients(updated, secret),
        APPROVAL_TTL,
    )


# ---------------------------------------------------------------------------
# Session binding
# ---------------------------------------------------------------------------

def bind_state(state_token: str) -> str:
    return _cookie(BINDING_COOKIE, digest(state_token), STATE_TTL)


def verify_state_binding(state_token: str, cookies: Mapping[str, str]) -> Result[str]:
    bound = cookies.get(BINDING_COOKIE)
    if not bound:
        return invalid_request(_BINDING_DESCRIPTION, "binding_missing")
    if not _equal(digest(state_token), bound):
        return invalid_request(_BINDING_DESCRIPTION, "binding_mismatch")
    return Ok(_clear_cookie(BINDING_COOKIE))


# ---------------------------------------------------------------------------
# Consent form state and signed consent links
# ---------------------------------------------------------------------------

def encode_consent_state(request: AuthorizationRequest) -> str:
    payload = json.dumps({"oauthReqInfo": request.model_dump(mode="json")})
    return base64.b64encode(payload.encode()).decode("ascii")


def sign_consent_state(encoded: str, secret: str) -> str:
    return sign(f"consent-state:{encoded}", secret)


def decode_consent_state(encoded: str | None, signature: str | None,
                         secret: str) -> Result[AuthorizationRequest]:
    """Verify and parse the consent form's hidden ``state`` field.

    The field travels through the browser, so it is only trusted when the
    accompanying signature matches.
    """
    if not encoded:
        return invalid_request("Missing state", "consent_state_missing")
    if not signature or not verify_signature(signature, f"consent-state:{encoded}", secret):
        return invalid_request("Invalid state data", "consent_state_tampered")
    try:
        data = json.loads(base64.b64decode(encoded.encode("ascii"), validate=True))
        request = AuthorizationRequest.model_validate(data["oauthReqInfo"])
    except (ValueError, KeyError, TypeError):
        return invalid_request("Invalid state data", "consent_state_unparseable")
    return Ok(request)


def seal_request(request: AuthorizationRequest, secret: str) -> str:
    return _seal(request.model_dump_json(), secret)


def unseal_request(sealed: str | None, secret: str) -> Result[AuthorizationRequest]:
    payload = _unseal(sealed, secret)
    if payload is None:
        return invalid_request("Invalid request", "consent_link_invalid")
    try:
        return Ok(AuthorizationRequest.model_validate_json(payload))
    except ValidationError:
        return invalid_request("Invalid request", "consent_link_unparseable")


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class StateStore:
    """Single-use authorization state kept in the key-value store.

    ``consume`` is a read followed by a delete; the store gives no atomic
    get-and-delete, so two concurrent callbacks with the same token can both
    read the record. The binding cookie narrows that window to one browser.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def create(self, request: AuthorizationRequest, ttl_seconds: int = STATE_TTL) -> str:
        payload = request.model_dump_json()
        for _ in range(_STATE_CREATE_ATTEMPTS):
            token = secrets.token_urlsafe(32)
            if await self.store.put(STATE_KEY_PREFIX + token, payload,
                                    ttl=ttl_seconds, if_absent=True):
                return token
        raise RuntimeError("could not allocate a unique state token")

    async def consume(self, token: str | None) -> Result[AuthorizationRequest]:
        if not token:
            return invalid_request(_STATE_DESCRIPTION, "state_missing")
        key = STATE_KEY_PREFIX + token
        raw = await self.store.get(key)
        if raw is None:
            return invalid_request(_STATE_DESCRIPTION, "state_not_found")
        await self.store.delete(key)
        try:
            request = AuthorizationRequest.model_validate_json(raw)
        except ValidationError:
            return server_error("Invalid state data", "state_corrupt")
        return Ok(request)
