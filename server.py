#!/usr/bin/env python3
"""
Reflect MCP: connect MCP clients to Reflect notes over OAuth.

Runs as an MCP server (stdio or streamable-http) exposing Reflect tools.
Over HTTP the server is also an OAuth authorization server: MCP clients
register and authorize here, and each authorization is brokered through
Reflect's own OAuth flow (see reflect_oauth.py and oauth_utils.py).

Settings come from reflect.yaml (optional) and environment variables; the
environment wins.
"""

import argparse
import asyncio
import json
import logging
import os
import re
import secrets
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
import yaml
from pydantic import AnyHttpUrl
from mcp.server.auth.middleware.auth_context import get_access_token
from mcp.server.auth.settings import AuthSettings, ClientRegistrationOptions, RevocationOptions
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import Response

from oauth_utils import STATE_TTL, MemoryKV, OAuthStateStore, RedisKV
from reflect_oauth import MCP_SCOPE, AccessGrant, ReflectOAuthProvider

logger = logging.getLogger("reflect")

REFLECT_API_URL = "https://reflect.app/api"

# ---------------------------------------------------------------------------
# Configuration: reflect.yaml, then env vars
# ---------------------------------------------------------------------------

_ENV_VARS = {
    "issuer_url": "REFLECT_ISSUER_URL",
    "client_id": "REFLECT_CLIENT_ID",
    "client_secret": "REFLECT_CLIENT_SECRET",
    "cookie_encryption_key": "COOKIE_ENCRYPTION_KEY",
    "redis_url": "REFLECT_REDIS_URL",
    "state_ttl": "REFLECT_STATE_TTL",
    "http_timeout": "REFLECT_HTTP_TIMEOUT",
}


@dataclass
class ReflectSettings:
    issuer_url: str = "http://localhost:8000"
    client_id: str = ""
    client_secret: str = ""
    cookie_encryption_key: str = ""
    redis_url: str = ""
    state_ttl: int = STATE_TTL
    http_timeout: float = 15.0


def _load_settings(config_path: Path | None = None, environ: dict[str, str] | None = None) -> ReflectSettings:
    """Load settings from YAML (if present) and the environment."""
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(environ.get("REFLECT_CONFIG", Path(__file__).parent / "reflect.yaml"))

    raw: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise SystemExit(f"Invalid {config_path}: {e}")
        if not isinstance(loaded, dict):
            raise SystemExit(f"Invalid {config_path}: expected a mapping of settings")
        known = {f.name for f in fields(ReflectSettings)}
        unknown = set(loaded) - known
        if unknown:
            raise SystemExit(
                f"Unknown setting(s) in {config_path}: {', '.join(sorted(unknown))}. "
                f"Valid options: {', '.join(sorted(known))}"
            )
        raw.update(loaded)

    for name, var in _ENV_VARS.items():
        if environ.get(var):
            raw[name] = environ[var]

    try:
        settings = ReflectSettings(**raw)
        settings.state_ttl = int(settings.state_ttl)
        settings.http_timeout = float(settings.http_timeout)
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid settings: {e}")
    settings.issuer_url = settings.issuer_url.rstrip("/")
    return settings


SETTINGS = _load_settings()

if not SETTINGS.cookie_encryption_key:
    logger.warning("COOKIE_ENCRYPTION_KEY not set; using an ephemeral key "
                   "(in-flight authorizations will not survive a restart)")
    SETTINGS.cookie_encryption_key = secrets.token_urlsafe(32)
if not SETTINGS.client_id or not SETTINGS.client_secret:
    logger.warning("REFLECT_CLIENT_ID / REFLECT_CLIENT_SECRET not set; "
                   "the Reflect authorization flow will fail")


def _build_state_store(settings: ReflectSettings) -> OAuthStateStore:
    kv = RedisKV.from_url(settings.redis_url) if settings.redis_url else MemoryKV()
    return OAuthStateStore(kv, ttl=settings.state_ttl)


# ---------------------------------------------------------------------------
# OAuth provider (shared instance; must exist before FastMCP constructor)
# ---------------------------------------------------------------------------
_oauth_provider = ReflectOAuthProvider(
    issuer_url=SETTINGS.issuer_url,
    reflect_client_id=SETTINGS.client_id,
    reflect_client_secret=SETTINGS.client_secret,
    cookie_key=SETTINGS.cookie_encryption_key,
    state_store=_build_state_store(SETTINGS),
    http_timeout=SETTINGS.http_timeout,
)

# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "Reflect Assistant MCP",
    auth_server_provider=_oauth_provider,
    auth=AuthSettings(
        issuer_url=AnyHttpUrl(SETTINGS.issuer_url),
        resource_server_url=AnyHttpUrl(f"{SETTINGS.issuer_url}/mcp"),
        client_registration_options=ClientRegistrationOptions(
            enabled=True,
            valid_scopes=[MCP_SCOPE],
            default_scopes=[MCP_SCOPE],
        ),
        revocation_options=RevocationOptions(enabled=True),
        required_scopes=[MCP_SCOPE],
    ),
    # Behind a reverse proxy the Host header is the public domain.
    transport_security=TransportSecuritySettings(
        enable_dns_rebinding_protection=False,
    ),
    instructions=(
        "Reflect Assistant MCP: read and append to Reflect notes.\n"
        "  get_reflect_graphs              List the graphs this account can access.\n"
        "  append_to_reflect_daily_notes   Append text to a graph's daily note.\n"
        "Pass the user's local date (YYYY-MM-DD) when appending.\n"
    ),
)


@mcp.custom_route("/consent", methods=["GET", "POST"])
async def _consent_route(request: Request) -> Response:
    """Approval dialog and its form submission."""
    return await _oauth_provider.handle_consent(request)


@mcp.custom_route("/oauth/callback", methods=["GET"])
async def _callback_route(request: Request) -> Response:
    """Reflect redirects here after the user signs in."""
    return await _oauth_provider.handle_callback(request)


# ---------------------------------------------------------------------------
# Reflect API helpers
# ---------------------------------------------------------------------------

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _valid_date(date_input: str | None) -> str:
    """Return *date_input* if it is a real YYYY-MM-DD date, else today (UTC)."""
    if date_input and _DATE_RE.match(date_input):
        try:
            date.fromisoformat(date_input)
            return date_input
        except ValueError:
            pass
    return datetime.now(timezone.utc).date().isoformat()


def _current_grant() -> AccessGrant | None:
    token = get_access_token()
    if token is None:
        return None
    return _oauth_provider.grant_for(token.token)


def _error(message: str) -> str:
    return json.dumps({"error": message})


_NOT_AUTHENTICATED = "Not authenticated. Please complete OAuth flow first."


async def _reflect_request(
    grant: AccessGrant,
    method: str,
    path: str,
    payload: dict | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    headers = {"Authorization": f"Bearer {grant.access_token}"}
    try:
        async with httpx.AsyncClient(timeout=SETTINGS.http_timeout, transport=transport) as client:
            resp = await client.request(method, f"{REFLECT_API_URL}{path}",
                                        headers=headers, json=payload)
        if resp.status_code >= 400:
            return _error(f"HTTP error! status: {resp.status_code}")
        return json.dumps(resp.json())
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("reflect %s %s failed: %s", method, path, e)
        return _error(str(e))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def get_reflect_graphs() -> str:
    """Get a list of all Reflect graphs accessible with the current access token.

    Retrieves all graphs from the Reflect API that the authenticated user has
    access to.
    """
    grant = _current_grant()
    if grant is None:
        return _error(_NOT_AUTHENTICATED)
    return await _reflect_request(grant, "GET", "/graphs")


@mcp.tool()
async def append_to_reflect_daily_notes(
    content: str, graph_id: str, date: str | None = None,
) -> str:
    """Append content to the daily notes in a specific Reflect graph.

    Pass today's date in the user's local timezone to avoid timezone issues.

    Args:
        content: The text to append. Plain text or markdown.
        graph_id: The Reflect graph whose daily note should be updated.
        date: Daily note date, YYYY-MM-DD in the user's local time
            (e.g. '2025-11-30'). Omitted or invalid means today.
    """
    grant = _current_grant()
    if grant is None:
        return _error(_NOT_AUTHENTICATED)
    return await _reflect_request(
        grant,
        "PUT",
        f"/graphs/{quote(graph_id, safe='')}/daily-notes",
        {"date": _valid_date(date), "text": content, "transform_type": "list-append"},
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.reflect-mcp/audit.log
    audit_log_path = Path.home() / ".reflect-mcp" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("reflect-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Reflect MCP server")
    parser.add_argument("--transport", choices=["stdio", "streamable-http"], default="streamable-http")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    if args.transport == "streamable-http":
        import uvicorn

        # streamable_http_app() includes the OAuth routes, metadata
        # endpoints, custom routes and bearer auth middleware.
        app = mcp.streamable_http_app()

        logger.info("reflect: starting HTTP server on %s:%s (issuer %s)",
                    args.host, args.port, SETTINGS.issuer_url)
        config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                                proxy_headers=True, forwarded_allow_ips="*")
        asyncio.run(uvicorn.Server(config).serve())
    else:
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
