"""
reflect_oauth.py: OAuthAuthorizationServerProvider for Reflect MCP.

MCP clients authenticate against this server; this server authenticates
against Reflect on their behalf. The SDK serves /register, /authorize,
/token, /revoke and the metadata documents. This module adds:

  /consent          approval dialog (GET) and its submission (POST)
  /oauth/callback   Reflect redirect target; validates the consent state,
                    exchanges the Reflect code, completes the MCP flow

Security layers:
  - Dynamic registration rate-limited (10 per minute) with metadata limits.
  - Consent form protected by a double-submit CSRF cookie.
  - Each consent gets a one-time state token stored server-side and bound
    to the browser with a sealed cookie; the callback needs both.
  - Reflect tokens never leave the server. MCP tokens are opaque random
    strings stored in-memory, each carrying the Reflect grant it maps to.
"""

import asyncio
import json
import logging
import secrets
import time
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import AnyUrl, BaseModel
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response

from mcp.server.auth.provider import (
    AccessToken,
    AuthorizationCode,
    AuthorizationParams,
    RefreshToken,
    construct_redirect_uri,
)
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken

from oauth_utils import (
    OAuthError,
    OAuthStateStore,
    PendingAuthRequest,
    add_approved_client,
    bind_state_to_session,
    clear_csrf_cookie,
    clear_session_binding,
    decode_pending_request,
    encode_pending_request,
    error_page,
    generate_csrf_protection,
    is_client_approved,
    render_approval_dialog,
    validate_csrf_token,
    validate_oauth_state,
)

logger = logging.getLogger("reflect-oauth")
audit_logger = logging.getLogger("reflect-audit")

TOKEN_EXPIRY = 8 * 3600  # 8 hours
REFRESH_TOKEN_EXPIRY = 30 * 86400  # 30 days
AUTH_CODE_TTL = 300  # 5 minutes

MCP_SCOPE = "reflect"

REFLECT_AUTHORIZE_URL = "https://reflect.app/oauth"
REFLECT_TOKEN_URL = "https://reflect.app/api/oauth/token"
REFLECT_SCOPE = "read:graph,write:graph"

MAX_CLIENT_NAME = 256
MAX_CLIENT_URI = 2048


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class UpstreamError(OAuthError):
    """Reflect's token endpoint failed or timed out. Retrying may help."""

    def __init__(self, description: str, status_code: int = 502):
        super().__init__("temporarily_unavailable", description, status_code=status_code)


# ---------------------------------------------------------------------------
# Token models
# ---------------------------------------------------------------------------

class AccessGrant(BaseModel):
    """What Reflect handed back for one consent. Read by the MCP tools."""

    access_token: str
    access_token_id: str = ""


class ReflectAuthorizationCode(AuthorizationCode):
    grant: AccessGrant


class ReflectAccessToken(AccessToken):
    grant: AccessGrant


class ReflectRefreshToken(RefreshToken):
    grant: AccessGrant


def get_upstream_authorize_url(
    upstream_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    response_type: str = "code",
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "response_type": response_type,
    }
    sep = "&" if "?" in upstream_url else "?"
    return f"{upstream_url}{sep}{urlencode(params)}"


class ReflectOAuthProvider:
    """OAuth 2.0 provider for Reflect MCP.

    All clients go through the consent page, then through Reflect.
    Registration rate-limited to 10/min.
    """

    REG_RATE_LIMIT = 10
    REG_RATE_WINDOW = 60  # seconds

    def __init__(
        self,
        issuer_url: str,
        *,
        reflect_client_id: str,
        reflect_client_secret: str,
        cookie_key: str,
        state_store: OAuthStateStore,
        http_timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        server_name: str = "Reflect MCP Server",
        server_description: str = "This MCP server connects your AI assistant to Reflect.",
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.reflect_client_id = reflect_client_id
        self.reflect_client_secret = reflect_client_secret
        self.cookie_key = cookie_key
        self.state_store = state_store
        self.http_timeout = http_timeout
        self.server_name = server_name
        self.server_description = server_description
        self._transport = transport
        self.clients: dict[str, OAuthClientInformationFull] = {}
        self.auth_codes: dict[str, ReflectAuthorizationCode] = {}
        self.access_tokens: dict[str, ReflectAccessToken] = {}
        self.refresh_tokens: dict[str, ReflectRefreshToken] = {}
        self._reg_timestamps: list[float] = []
        self._reg_lock = asyncio.Lock()

    @property
    def callback_url(self) -> str:
        return f"{self.issuer_url}/oauth/callback"

    # --- OAuthAuthorizationServerProvider protocol ---

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        return self.clients.get(client_id)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        if client_info.client_name and len(client_info.client_name) > MAX_CLIENT_NAME:
            raise ValueError(f"client_name exceeds {MAX_CLIENT_NAME} characters")
        if client_info.client_uri and len(str(client_info.client_uri)) > MAX_CLIENT_URI:
            raise ValueError(f"client_uri exceeds {MAX_CLIENT_URI} characters")

        async with self._reg_lock:
            now = time.time()
            self._reg_timestamps = [t for t in self._reg_timestamps
                                    if now - t < self.REG_RATE_WINDOW]
            if len(self._reg_timestamps) >= self.REG_RATE_LIMIT:
                _audit("register_rate_limited")
                raise ValueError("Too many registration requests, try again later")
            self._reg_timestamps.append(now)
            self.clients[client_info.client_id] = client_info

        _audit("client_registered", client_id=client_info.client_id,
               client_name=client_info.client_name)
        logger.info("client_registered: %s", client_info.client_id)

    async def authorize(
        self,
        client: OAuthClientInformationFull,
        params: AuthorizationParams,
    ) -> str:
        pending = PendingAuthRequest(
            client_id=client.client_id,
            redirect_uri=str(params.redirect_uri),
            redirect_uri_provided_explicitly=params.redirect_uri_provided_explicitly,
            scopes=params.scopes or [MCP_SCOPE],
            state=params.state,
            code_challenge=params.code_challenge,
            resource=params.resource,
        )
        _audit("authorize_pending", client_id=client.client_id)
        return f"{self.issuer_url}/consent?{urlencode({'request': encode_pending_request(pending)})}"

    async def load_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: str,
    ) -> ReflectAuthorizationCode | None:
        code = self.auth_codes.pop(authorization_code, None)
        if code is None or code.client_id != client.client_id:
            return None
        return code

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: ReflectAuthorizationCode,
    ) -> OAuthToken:
        scopes = authorization_code.scopes or [MCP_SCOPE]
        return self._issue_tokens(client.client_id, scopes, authorization_code.grant,
                                  resource=authorization_code.resource)

    async def load_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: str,
    ) -> ReflectRefreshToken | None:
        rt = self.refresh_tokens.get(refresh_token)
        if rt is None or rt.client_id != client.client_id:
            return None
        if rt.expires_at and rt.expires_at < time.time():
            del self.refresh_tokens[refresh_token]
            return None
        return rt

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: ReflectRefreshToken,
        scopes: list[str],
    ) -> OAuthToken:
        self.refresh_tokens.pop(refresh_token.token, None)
        _audit("token_refreshed", client_id=client.client_id)
        return self._issue_tokens(client.client_id, scopes or refresh_token.scopes,
                                  refresh_token.grant)

    async def load_access_token(self, token: str) -> ReflectAccessToken | None:
        at = self.access_tokens.get(token)
        if at and at.expires_at and at.expires_at < time.time():
            logger.info("load_access_token: expired for %s", at.client_id)
            del self.access_tokens[token]
            return None
        return at

    async def revoke_token(self, token: AccessToken | RefreshToken) -> None:
        if isinstance(token, AccessToken):
            self.access_tokens.pop(token.token, None)
        else:
            self.refresh_tokens.pop(token.token, None)
        _audit("token_revoked", client_id=token.client_id)

    # --- Internal ---

    def _issue_tokens(
        self,
        client_id: str,
        scopes: list[str],
        grant: AccessGrant,
        resource: str | None = None,
    ) -> OAuthToken:
        now = int(time.time())
        access_tok = secrets.token_urlsafe(32)
        refresh_tok = secrets.token_urlsafe(32)

        self.access_tokens[access_tok] = ReflectAccessToken(
            token=access_tok,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + TOKEN_EXPIRY,
            resource=resource,
            grant=grant,
        )
        self.refresh_tokens[refresh_tok] = ReflectRefreshToken(
            token=refresh_tok,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + REFRESH_TOKEN_EXPIRY,
            grant=grant,
        )
        _audit("token_issued", client_id=client_id, expires_in=TOKEN_EXPIRY)
        logger.info("token_issued: access=%s... stored=%d",
                    access_tok[:8], len(self.access_tokens))

        return OAuthToken(
            access_token=access_tok,
            token_type="Bearer",
            expires_in=TOKEN_EXPIRY,
            scope=" ".join(scopes),
            refresh_token=refresh_tok,
        )

    def grant_for(self, token: str) -> AccessGrant | None:
        """Reflect grant behind an MCP access token, or None."""
        at = self.access_tokens.get(token)
        if at is None or (at.expires_at and at.expires_at < time.time()):
            return None
        return at.grant

    async def _registered_client_for(self, pending: PendingAuthRequest) -> OAuthClientInformationFull:
        # The pending request round-trips through the browser, so check it again.
        client = await self.get_client(pending.client_id)
        if client is None:
            raise OAuthError("invalid_client", "Unknown client")
        registered = {str(u) for u in (client.redirect_uris or [])}
        if pending.redirect_uri not in registered:
            raise OAuthError("invalid_request", "Redirect URI is not registered for this client")
        return client

    async def exchange_code(self, code: str) -> AccessGrant:
        """Trade Reflect's authorization code for a Reflect access token."""
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout,
                                         transport=self._transport) as client:
                resp = await client.post(
                    REFLECT_TOKEN_URL,
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        "client_id": self.reflect_client_id,
                        "client_secret": self.reflect_client_secret,
                        "redirect_uri": self.callback_url,
                    },
                )
        except httpx.TimeoutException as e:
            logger.warning("token exchange timed out after %ss", self.http_timeout)
            raise UpstreamError("Reflect did not respond in time. Please try again.",
                                status_code=504) from e
        except httpx.HTTPError as e:
            logger.warning("token exchange failed: %s", e)
            raise UpstreamError("Could not reach Reflect. Please try again.") from e

        if resp.status_code != 200:
            logger.warning("token exchange failed: %s %s", resp.status_code, resp.text[:200])
            raise UpstreamError("Reflect rejected the authorization. Please try again.")

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Reflect returned an unreadable token response.") from e

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise OAuthError("invalid_grant", "Missing access token")
        return AccessGrant(access_token=access_token,
                           access_token_id=str(data.get("access_token_id", "")))

    async def complete_authorization(self, pending: PendingAuthRequest, grant: AccessGrant) -> str:
        """Mint an MCP authorization code carrying *grant*; return the client redirect."""
        code_str = secrets.token_urlsafe(32)
        now = time.time()
        self.auth_codes[code_str] = ReflectAuthorizationCode(
            code=code_str,
            scopes=pending.scopes,
            expires_at=now + AUTH_CODE_TTL,
            client_id=pending.client_id,
            code_challenge=pending.code_challenge,
            redirect_uri=AnyUrl(pending.redirect_uri),
            redirect_uri_provided_explicitly=pending.redirect_uri_provided_explicitly,
            resource=pending.resource,
            grant=grant,
        )
        expired = [c for c, ac in self.auth_codes.items() if ac.expires_at < now]
        for c in expired:
            del self.auth_codes[c]
        _audit("authorize_completed", client_id=pending.client_id,
               reflect_token_id=grant.access_token_id)
        return construct_redirect_uri(pending.redirect_uri, code=code_str, state=pending.state)

    # --- /consent ---

    async def handle_consent(self, request: Request) -> Response:
        try:
            if request.method == "GET":
                return await self._consent_get(request)
            return await self._consent_post(request)
        except OAuthError as e:
            return e.to_response()
        except Exception:
            logger.exception("consent: unexpected error")
            return HTMLResponse(error_page("Error", "Internal server error."), status_code=500)

    async def _consent_get(self, request: Request) -> Response:
        encoded = request.query_params.get("request", "")
        if not encoded:
            raise OAuthError("invalid_request", "Invalid request")
        pending = decode_pending_request(encoded)
        client = await self._registered_client_for(pending)

        approved = is_client_approved(request.cookies, client.client_id, self.cookie_key)
        csrf = generate_csrf_protection()
        return render_approval_dialog(
            client_name=client.client_name or client.client_id,
            client_uri=str(client.client_uri) if client.client_uri else None,
            encoded_state=encoded,
            csrf=csrf,
            server_name=self.server_name,
            server_description=self.server_description,
            scopes=pending.scopes,
            previously_approved=approved,
        )

    async def _consent_post(self, request: Request) -> Response:
        form = await request.form()
        validate_csrf_token(str(form.get("csrf_token", "")), request.cookies)

        encoded = form.get("state")
        if not encoded or not isinstance(encoded, str):
            raise OAuthError("invalid_request", "Missing state in form data")
        pending = decode_pending_request(encoded)
        client = await self._registered_client_for(pending)

        if str(form.get("action", "approve")) == "deny":
            _audit("authorize_denied", client_id=client.client_id)
            response = RedirectResponse(
                construct_redirect_uri(pending.redirect_uri, error="access_denied",
                                       state=pending.state),
                status_code=302,
            )
            response.headers.append("set-cookie", clear_csrf_cookie())
            return response

        approved_cookie = add_approved_client(request.cookies, client.client_id, self.cookie_key)
        state_token = await self.state_store.create(pending)
        binding_cookie = bind_state_to_session(state_token, self.cookie_key,
                                               ttl=self.state_store.ttl)
        _audit("consent_granted", client_id=client.client_id)

        location = get_upstream_authorize_url(
            REFLECT_AUTHORIZE_URL,
            client_id=self.reflect_client_id,
            redirect_uri=self.callback_url,
            scope=REFLECT_SCOPE,
            state=state_token,
        )
        response = RedirectResponse(location, status_code=302)
        response.headers["cache-control"] = "no-store"
        response.headers.append("set-cookie", approved_cookie)
        response.headers.append("set-cookie", binding_cookie)
        response.headers.append("set-cookie", clear_csrf_cookie())
        return response

    # --- /oauth/callback ---

    async def handle_callback(self, request: Request) -> Response:
        try:
            return await self._callback(request)
        except OAuthError as e:
            if not any(name == "set-cookie" for name, _ in e.headers):
                e.headers.append(("set-cookie", clear_session_binding()))
            _audit("callback_rejected", reason=e.code, status=e.status_code)
            return e.to_response()
        except Exception:
            logger.exception("callback: unexpected error")
            response = HTMLResponse(error_page("Error", "Internal server error."), status_code=500)
            response.headers.append("set-cookie", clear_session_binding())
            return response

    async def _callback(self, request: Request) -> Response:
        validated = await validate_oauth_state(
            request.cookies,
            request.query_params.get("state"),
            self.state_store,
            self.cookie_key,
        )
        pending = validated.pending

        code = request.query_params.get("code")
        if not code:
            raise OAuthError("invalid_request", "Missing code",
                             headers=[("set-cookie", validated.clear_cookie)])

        logger.info("callback: exchanging code for client=%s", pending.client_id)
        try:
            grant = await self.exchange_code(code)
        except OAuthError as e:
            e.headers.append(("set-cookie", validated.clear_cookie))
            raise

        redirect_to = await self.complete_authorization(pending, grant)
        response = RedirectResponse(redirect_to, status_code=302)
        response.headers["cache-control"] = "no-store"
        response.headers.append("set-cookie", validated.clear_cookie)
        return response
