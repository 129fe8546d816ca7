"""
oauth_utils.py: consent-state and session-binding primitives for the Reflect
OAuth flow.

Every cookie this server sets is sealed with the cookie key (Fernet:
AES-CBC + HMAC-SHA256), except the CSRF cookie which only has to match the
form field it was issued with.

  __Host-CSRF_TOKEN        double-submit token for the consent form (10 min)
  __Host-APPROVED_CLIENTS  sealed JSON list of client ids this browser approved
  __Host-CONSENTED_STATE   sealed state token bound to this browser (one use)

Pending authorization requests live in a key-value store keyed by the state
token. A callback only succeeds when the browser's binding cookie, the state
echoed by Reflect and the store entry all agree; the store entry is deleted
atomically on the way through.
"""

import asyncio
import base64
import binascii
import hmac
import html as html_mod
import json
import logging
import secrets
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Protocol

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, ConfigDict, ValidationError
from starlette.responses import HTMLResponse

logger = logging.getLogger("reflect-oauth")

CSRF_COOKIE = "__Host-CSRF_TOKEN"
APPROVED_CLIENTS_COOKIE = "__Host-APPROVED_CLIENTS"
SESSION_BINDING_COOKIE = "__Host-CONSENTED_STATE"

CSRF_TTL = 600  # 10 minutes
STATE_TTL = 600  # 10 minutes
APPROVED_CLIENTS_TTL = 365 * 86400  # 1 year

STATE_KEY_PREFIX = "oauth:state:"
_STATE_CREATE_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """An expected, user-recoverable failure of the consent flow.

    Route handlers turn it into a response with ``to_response()``; the user
    restarts the flow from their MCP client.
    """

    def __init__(self, code: str, description: str, status_code: int = 400,
                 headers: list[tuple[str, str]] | None = None):
        super().__init__(description)
        self.code = code
        self.description = description
        self.status_code = status_code
        self.headers: list[tuple[str, str]] = list(headers or [])

    def to_response(self) -> HTMLResponse:
        response = HTMLResponse(
            error_page("Authorization failed", self.description),
            status_code=self.status_code,
        )
        response.headers["cache-control"] = "no-store"
        for name, value in self.headers:
            response.headers.append(name, value)
        return response


class IntegrityError(OAuthError):
    """A sealed value failed to decrypt or verify under the cookie key."""

    def __init__(self, description: str = "Invalid sealed value"):
        super().__init__("invalid_request", description)


class CSRFMismatch(OAuthError):
    def __init__(self, description: str = "Invalid CSRF token"):
        super().__init__("invalid_request", description, status_code=403)


class NoBinding(OAuthError):
    def __init__(self, description: str = "Missing or invalid session binding"):
        super().__init__("invalid_request", description)


class UnknownOrExpiredState(OAuthError):
    def __init__(self, description: str = "Unknown or expired state"):
        super().__init__("invalid_request", description)


# ---------------------------------------------------------------------------
# Cookie cipher
# ---------------------------------------------------------------------------

@lru_cache(maxsize=8)
def _fernet(key: str) -> MultiFernet:
    """Build the cipher for a configured secret.

    The secret may hold several comma-separated keys. The first one seals;
    all of them open, so keys can be rotated without breaking live cookies.
    """
    secrets_list = [k.strip() for k in key.split(",") if k.strip()]
    if not secrets_list:
        raise ValueError("cookie encryption key is empty")
    fernets = []
    for secret in secrets_list:
        derived = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"reflect-mcp cookie v1",
        ).derive(secret.encode())
        fernets.append(Fernet(base64.urlsafe_b64encode(derived)))
    return MultiFernet(fernets)


def seal(plaintext: str, key: str) -> str:
    """Encrypt and sign *plaintext*; the result is safe to put in a cookie."""
    return _fernet(key).encrypt(plaintext.encode()).decode("ascii")


def unseal(token: str, key: str, ttl: int | None = None) -> str:
    """Reverse ``seal``.

    Truncation, tampering, a foreign key and (with *ttl*) an expired token
    all raise the same ``IntegrityError``.
    """
    try:
        return _fernet(key).decrypt(token.encode("ascii"), ttl=ttl).decode()
    except (InvalidToken, ValueError, TypeError) as e:
        raise IntegrityError() from e


# ---------------------------------------------------------------------------
# Cookie headers
# ---------------------------------------------------------------------------

def _set_cookie(name: str, value: str, max_age: int) -> str:
    # __Host- prefix: Secure, Path=/ and no Domain, so the cookie is host-only.
    return (f"{name}={value}; HttpOnly; Secure; Path=/; "
            f"SameSite=Lax; Max-Age={max_age}")


def _clear_cookie(name: str) -> str:
    return _set_cookie(name, "", 0)


# ---------------------------------------------------------------------------
# CSRF guard
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CSRFProtection:
    token: str
    set_cookie: str


def generate_csrf_protection() -> CSRFProtection:
    token = secrets.token_urlsafe(32)
    return CSRFProtection(token=token, set_cookie=_set_cookie(CSRF_COOKIE, token, CSRF_TTL))


def validate_csrf_token(submitted: str | None, cookies: Mapping[str, str]) -> None:
    """Double-submit check: the form token must equal the cookie token."""
    expected = cookies.get(CSRF_COOKIE)
    if not submitted or not expected:
        raise CSRFMismatch("Missing CSRF token")
    if not hmac.compare_digest(submitted.encode(), expected.encode()):
        raise CSRFMismatch("CSRF token mismatch")


def clear_csrf_cookie() -> str:
    return _clear_cookie(CSRF_COOKIE)


# ---------------------------------------------------------------------------
# Approved-client ledger
# ---------------------------------------------------------------------------

def _read_approved_clients(cookies: Mapping[str, str], key: str) -> set[str]:
    raw = cookies.get(APPROVED_CLIENTS_COOKIE)
    if not raw:
        return set()
    try:
        data = json.loads(unseal(raw, key))
    except (IntegrityError, json.JSONDecodeError):
        logger.debug("approved-clients cookie unreadable; treating as empty")
        return set()
    if not isinstance(data, list):
        return set()
    return {str(c) for c in data}


def is_client_approved(cookies: Mapping[str, str], client_id: str, key: str) -> bool:
    """UI hint only. Never gates state creation or session binding."""
    return client_id in _read_approved_clients(cookies, key)


def add_approved_client(cookies: Mapping[str, str], client_id: str, key: str) -> str:
    approved = _read_approved_clients(cookies, key)
    approved.add(client_id)
    payload = json.dumps(sorted(approved), separators=(",", ":"))
    return _set_cookie(APPROVED_CLIENTS_COOKIE, seal(payload, key), APPROVED_CLIENTS_TTL)


# ---------------------------------------------------------------------------
# Pending authorization request
# ---------------------------------------------------------------------------

class PendingAuthRequest(BaseModel):
    """The MCP client's /authorize parameters, held until Reflect calls back."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    redirect_uri: str
    redirect_uri_provided_explicitly: bool = True
    scopes: list[str] = []
    state: str | None = None
    code_challenge: str
    resource: str | None = None


def encode_pending_request(pending: PendingAuthRequest) -> str:
    return base64.urlsafe_b64encode(pending.model_dump_json().encode()).decode("ascii")


def decode_pending_request(encoded: str) -> PendingAuthRequest:
    """Parse the base64 JSON carried through the consent page."""
    try:
        raw = base64.urlsafe_b64decode(encoded.encode("ascii"))
        return PendingAuthRequest.model_validate_json(raw)
    except (ValueError, binascii.Error, ValidationError) as e:
        raise OAuthError("invalid_request", "Invalid state data") from e


# ---------------------------------------------------------------------------
# Key-value backends
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    async def put(self, key: str, value: str, ttl: int,
                  only_if_absent: bool = False) -> bool: ...

    async def pop(self, key: str) -> str | None: ...


class MemoryKV:
    """Single-process store with TTL expiry.

    Every operation runs under one lock, so ``pop`` is an atomic
    get-and-delete for concurrent callbacks on the same event loop.
    """

    def __init__(self):
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]

    async def put(self, key: str, value: str, ttl: int,
                  only_if_absent: bool = False) -> bool:
        async with self._lock:
            now = time.monotonic()
            self._purge(now)
            if only_if_absent and key in self._data:
                return False
            self._data[key] = (value, now + ttl)
            return True

    async def pop(self, key: str) -> str | None:
        async with self._lock:
            entry = self._data.pop(key, None)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                return None
            return value

    def __len__(self) -> int:
        return len(self._data)


class RedisKV:
    """Redis-backed store: ``SET EX NX`` to write, ``GETDEL`` to consume."""

    def __init__(self, redis_client):
        self._redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisKV":
        import redis.asyncio

        return cls(redis.asyncio.Redis.from_url(url, decode_responses=True))

    async def put(self, key: str, value: str, ttl: int,
                  only_if_absent: bool = False) -> bool:
        result = await self._redis.set(key, value, ex=ttl, nx=only_if_absent)
        return bool(result)

    async def pop(self, key: str) -> str | None:
        value = await self._redis.getdel(key)
        if isinstance(value, bytes):
            value = value.decode()
        return value


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class OAuthStateStore:
    """Maps one-time state tokens to pending authorization requests."""

    def __init__(self, kv: KeyValueStore, ttl: int = STATE_TTL):
        self.kv = kv
        self.ttl = ttl

    async def create(self, pending: PendingAuthRequest) -> str:
        value = pending.model_dump_json()
        for _ in range(_STATE_CREATE_ATTEMPTS):
            state_token = secrets.token_urlsafe(32)
            if await self.kv.put(STATE_KEY_PREFIX + state_token, value,
                                 self.ttl, only_if_absent=True):
                return state_token
        raise RuntimeError("could not allocate a unique state token")

    async def consume(self, state_token: str) -> PendingAuthRequest:
        """Look up and delete in one step. A second call always fails."""
        if not state_token:
            raise UnknownOrExpiredState()
        raw = await self.kv.pop(STATE_KEY_PREFIX + state_token)
        if raw is None:
            raise UnknownOrExpiredState()
        try:
            return PendingAuthRequest.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("stored state %s... is not a pending request", state_token[:8])
            raise UnknownOrExpiredState() from e


# ---------------------------------------------------------------------------
# Session binder
# ---------------------------------------------------------------------------

def bind_state_to_session(state_token: str, key: str, ttl: int = STATE_TTL) -> str:
    """Set-Cookie header binding *state_token* to this browser.

    Overwrites any earlier binding: one live consent per browser.
    """
    return _set_cookie(SESSION_BINDING_COOKIE, seal(state_token, key), ttl)


def clear_session_binding() -> str:
    return _clear_cookie(SESSION_BINDING_COOKIE)


def read_bound_token(cookies: Mapping[str, str], key: str, ttl: int = STATE_TTL) -> str:
    raw = cookies.get(SESSION_BINDING_COOKIE)
    if not raw:
        raise NoBinding()
    try:
        token = unseal(raw, key, ttl=ttl)
    except IntegrityError as e:
        raise NoBinding() from e
    if not token:
        raise NoBinding()
    return token


# ---------------------------------------------------------------------------
# Callback validator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidatedState:
    pending: PendingAuthRequest
    clear_cookie: str


INVALID_STATE_DESCRIPTION = "Invalid or expired authorization state"


async def validate_oauth_state(
    cookies: Mapping[str, str],
    query_state: str | None,
    store: OAuthStateStore,
    key: str,
) -> ValidatedState:
    """Prove the callback belongs to this browser and to a live request.

    Browser side: the sealed binding cookie must open and hold the same
    token Reflect echoed back in ``state``. Server side: that token must
    still be in the store, and is consumed here. Both failures surface as
    the same ``OAuthError``; the cause is only logged. The clear-cookie
    header rides on the result and on the error alike.
    """
    clear_cookie = clear_session_binding()
    try:
        bound = read_bound_token(cookies, key, ttl=store.ttl)
        if not query_state or not hmac.compare_digest(bound.encode(), query_state.encode()):
            raise NoBinding("Session binding does not match callback state")
        pending = await store.consume(bound)
    except (NoBinding, UnknownOrExpiredState) as e:
        logger.info("callback rejected: %s", e.description)
        raise OAuthError(
            "invalid_request",
            INVALID_STATE_DESCRIPTION,
            headers=[("set-cookie", clear_cookie)],
        ) from e
    return ValidatedState(pending=pending, clear_cookie=clear_cookie)


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------

_BASE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 420px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        a { color: #00d4ff; }"""


def render_approval_dialog(
    *,
    client_name: str,
    client_uri: str | None,
    encoded_state: str,
    csrf: CSRFProtection,
    server_name: str,
    server_description: str,
    scopes: list[str],
    previously_approved: bool = False,
    action: str = "/consent",
) -> HTMLResponse:
    """Render the consent page and attach the CSRF cookie.

    *previously_approved* only changes the wording; the form, CSRF token
    and the state/binding steps behind it are identical either way.
    """
    safe_client = html_mod.escape(client_name)
    client_link = ""
    if client_uri:
        safe_uri = html_mod.escape(client_uri, quote=True)
        client_link = f'<p class="uri"><a href="{safe_uri}" rel="noopener noreferrer">{safe_uri}</a></p>'
    scope_items = "".join(f"<li>{html_mod.escape(s)}</li>" for s in scopes) or "<li>Default access</li>"
    approved_note = (
        '<p class="note">You have approved this client before.</p>'
        if previously_approved else ""
    )
    page = f"""<!DOCTYPE html>
<html>
<head>
    <title>{html_mod.escape(server_name)} | Authorize</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_BASE_STYLE}
        .client {{ color: #ff6b9d; font-weight: 600; }}
        .uri {{ font-size: 0.8rem; word-break: break-all; }}
        .note {{ color: #8fd18f; font-size: 0.85rem; }}
        .perms {{ background: #12122a; border: 1px solid #2a2a4a; border-radius: 8px;
            padding: 1rem; margin: 1rem 0; font-size: 0.9rem; }}
        .buttons {{ display: flex; gap: 1rem; margin-top: 1.5rem; }}
        button {{ flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }}
        .approve {{ background: #00d4ff; color: #0a0a1a; }}
        .deny {{ background: #2a2a4a; color: #e0e0e0; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{html_mod.escape(server_name)}</h1>
        <p>{html_mod.escape(server_description)}</p>
        <p><span class="client">{safe_client}</span> wants access to your Reflect account.</p>
        {client_link}
        {approved_note}
        <div class="perms">
            <strong>Requested access:</strong>
            <ul>{scope_items}</ul>
        </div>
        <form method="POST" action="{html_mod.escape(action, quote=True)}">
            <input type="hidden" name="state" value="{html_mod.escape(encoded_state, quote=True)}">
            <input type="hidden" name="csrf_token" value="{html_mod.escape(csrf.token, quote=True)}">
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Deny</button>
                <button type="submit" name="action" value="approve" class="approve">Approve</button>
            </div>
        </form>
    </div>
</body>
</html>"""
    response = HTMLResponse(page)
    response.headers["cache-control"] = "no-store"
    # Consent page must not be framed (clickjacking).
    response.headers["x-frame-options"] = "DENY"
    response.headers["content-security-policy"] = "frame-ancestors 'none'"
    response.headers.append("set-cookie", csrf.set_cookie)
    return response


def error_page(title: str, message: str) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Reflect MCP | {safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_BASE_STYLE}
        .card {{ border-color: #ff4444; text-align: center; }}
        h1 {{ color: #ff4444; margin-bottom: 1rem; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{safe_title}</h1>
        <p>{safe_msg}</p>
        <p style="margin-top:1.5rem">Start the connection again from your MCP client.</p>
    </div>
</body>
</html>"""
