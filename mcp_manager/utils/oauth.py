"""OAuth 2.1 protocol helpers used by MCP integrations.

Implements well-known metadata discovery (RFC 8414 / RFC 9728), dynamic
client registration (RFC 7591), PKCE (S256 only), authorization URL
construction with the RFC 8707 ``resource`` indicator, the
authorization-code grant and refresh-token grant.

Everything here is stateless: persistence of the artifacts is the job of the
integration and OAuth state services.

Token sets are plain dicts::

    {
        "access_token": str,
        "refresh_token": str | None,
        "token_type": str | None,
        "scope": str | None,
        "expires_in": int | None,   # seconds
        "received_at": int,         # epoch milliseconds
    }

Expiry is always derived from ``received_at + expires_in * 1000``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import AsyncIterator
from typing import Dict
from typing import List
from typing import NamedTuple
from typing import Optional
from urllib.parse import parse_qsl
from urllib.parse import urlencode
from urllib.parse import urlsplit

import httpx

from mcp_manager.exceptions import OAuthDiscoveryError
from mcp_manager.exceptions import OAuthError
from mcp_manager.exceptions import OAuthRegistrationError
from mcp_manager.exceptions import OAuthTokenError

logger = logging.getLogger(__name__)

OAUTH_HTTP_TIMEOUT = 10.0
TOKEN_EXPIRY_BUFFER_MS = 5 * 60 * 1000
CLIENT_APPLICATION_NAME = "Kodus MCP Manager"

PROTECTED_RESOURCE_WELL_KNOWN = "oauth-protected-resource"
AUTHORIZATION_SERVER_WELL_KNOWN = "oauth-authorization-server"
DEFAULT_PORTS = {"http": 80, "https": 443}


class PKCEPair(NamedTuple):
    verifier: str
    challenge: str


class RegisteredClient(NamedTuple):
    client_id: str
    client_secret: Optional[str]


@dataclass
class OAuthDiscovery:
    """Result of :func:`discover_oauth`."""

    resource_metadata: Dict[str, Any] = field(default_factory=dict)
    server_metadata: Dict[str, Any] = field(default_factory=dict)
    issuer: str = ""

    @property
    def authorization_endpoint(self) -> Optional[str]:
        return self.server_metadata.get("authorization_endpoint")

    @property
    def token_endpoint(self) -> Optional[str]:
        return self.server_metadata.get("token_endpoint")

    @property
    def registration_endpoint(self) -> Optional[str]:
        return self.server_metadata.get("registration_endpoint")


def _now_ms() -> int:
    return int(time.time() * 1000)


@asynccontextmanager
async def _http(client: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    """Yield *client* when given, otherwise a short-lived client with the default timeout."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=OAUTH_HTTP_TIMEOUT) as owned:
        yield owned


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# ---------------------------------------------------------------------------
# PKCE / state
# ---------------------------------------------------------------------------


def generate_pkce() -> PKCEPair:
    """Return a fresh PKCE verifier and its S256 challenge."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PKCEPair(verifier=verifier, challenge=challenge)


def generate_state() -> str:
    return secrets.token_hex(16)


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def canonical_resource_uri(base_url: str) -> str:
    """Return the RFC 8707 resource identifier for *base_url*.

    Scheme and host are lower-cased, an explicit non-default port is kept, a
    root path is dropped and a trailing slash is stripped.
    """
    parts = urlsplit(base_url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = f":{parts.port}" if parts.port and parts.port != DEFAULT_PORTS.get(scheme) else ""
    path = parts.path if parts.path and parts.path != "/" else ""
    if path.endswith("/"):
        path = path.rstrip("/")
    return f"{scheme}://{host}{port}{path}"


def build_well_known_url(base_url: str, name: str) -> str:
    """``https://host/app`` + ``name`` -> ``https://host/.well-known/<name>/app``."""
    parts = urlsplit(base_url)
    base_path = parts.path if parts.path and parts.path != "/" else ""
    return f"{_origin(base_url)}/.well-known/{name}{base_path}"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def _fetch_first(
    client: httpx.AsyncClient,
    candidates: List[str],
) -> tuple[Optional[httpx.Response], List[str]]:
    """GET each candidate in order and return the first response below 400."""
    tried: List[str] = []
    for url in candidates:
        tried.append(url)
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            logger.warning(f"OAuth discovery request to {url} failed: {exc}")
            continue
        if response.status_code < 400:
            return response, tried
        logger.warning(f"OAuth discovery request to {url} returned {response.status_code}")
    return None, tried


async def discover_oauth(base_url: str, client: Optional[httpx.AsyncClient] = None) -> OAuthDiscovery:
    """Discover protected-resource and authorization-server metadata for *base_url*.

    Protected resource: ``/.well-known/oauth-protected-resource{path}`` then the
    bare origin; if both fail discovery continues with empty metadata.

    Authorization server: issuer (first ``authorization_servers`` entry, else
    *base_url*), then *base_url*, then the bare origin.
    """
    origin = _origin(base_url)

    async with _http(client) as http:
        rs_response, _ = await _fetch_first(
            http,
            [
                build_well_known_url(base_url, PROTECTED_RESOURCE_WELL_KNOWN),
                build_well_known_url(origin, PROTECTED_RESOURCE_WELL_KNOWN),
            ],
        )

        resource_metadata = _json_or_empty(rs_response) if rs_response is not None else {}
        authorization_servers = resource_metadata.get("authorization_servers") or []

        if rs_response is not None and not authorization_servers:
            raise OAuthDiscoveryError("authorization_servers not found in resource metadata")
        if rs_response is None:
            logger.info(f"No protected resource metadata for {base_url}, proceeding without it")

        issuer = authorization_servers[0] if authorization_servers else base_url
        issuers = [issuer, base_url, origin]
        as_response, tried = await _fetch_first(
            http,
            [build_well_known_url(candidate, AUTHORIZATION_SERVER_WELL_KNOWN) for candidate in issuers],
        )

    if as_response is None:
        raise OAuthDiscoveryError("Failed to fetch authorization server metadata")

    server_metadata = _json_or_empty(as_response)
    resolved_issuer = issuers[len(tried) - 1]

    if not server_metadata.get("authorization_endpoint") and not server_metadata.get("token_endpoint"):
        raise OAuthDiscoveryError("Missing authorization or token endpoints")

    return OAuthDiscovery(
        resource_metadata=resource_metadata,
        server_metadata=server_metadata,
        issuer=resolved_issuer,
    )


# ---------------------------------------------------------------------------
# Dynamic client registration
# ---------------------------------------------------------------------------


async def register_oauth_client(
    registration_endpoint: str,
    redirect_uri: str,
    scopes: Optional[List[str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> RegisteredClient:
    """Register a public client (no token endpoint auth) and return its credentials."""
    body: Dict[str, Any] = {
        "client_name": CLIENT_APPLICATION_NAME,
        "application_name": CLIENT_APPLICATION_NAME,
        "redirect_uris": [redirect_uri],
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "none",
    }
    if scopes:
        body["scope"] = " ".join(scopes)

    async with _http(client) as http:
        try:
            response = await http.post(registration_endpoint, json=body)
        except httpx.HTTPError as exc:
            raise OAuthRegistrationError(f"Client registration failed: {exc}") from exc

    if response.status_code >= 400:
        raise OAuthRegistrationError(
            f"Client registration failed, status: {response.status_code}: {response.reason_phrase}"
        )

    data = _json_or_empty(response)
    client_id = data.get("client_id")
    if not client_id:
        raise OAuthRegistrationError("Client registration did not return client_id")

    return RegisteredClient(client_id=client_id, client_secret=data.get("client_secret"))


# ---------------------------------------------------------------------------
# Authorization request
# ---------------------------------------------------------------------------


def build_authorization_url(
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    base_url: str,
    scopes: Optional[List[str]] = None,
) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "resource": canonical_resource_uri(base_url),
        "state": state,
    }
    if scopes:
        params["scope"] = " ".join(scopes)

    separator = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{separator}{urlencode(params)}"


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_token_response(response: httpx.Response) -> Dict[str, Any]:
    """Parse a token endpoint response body into a time-stamped token set.

    Some servers answer with ``application/x-www-form-urlencoded`` despite RFC
    6749, so JSON parsing falls back to form parsing.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = dict(parse_qsl(response.text))

    if not isinstance(payload, dict):
        payload = {}

    access_token = payload.get("access_token")
    if not access_token:
        raise OAuthTokenError("Access token not found in response")

    return {
        "access_token": access_token,
        "refresh_token": payload.get("refresh_token"),
        "token_type": payload.get("token_type"),
        "scope": payload.get("scope"),
        "expires_in": _coerce_int(payload.get("expires_in")),
        "received_at": _now_ms(),
    }


async def _post_token_form(
    token_endpoint: str,
    form: Dict[str, str],
    client: Optional[httpx.AsyncClient],
    failure_message: str,
) -> Dict[str, Any]:
    async with _http(client) as http:
        try:
            response = await http.post(
                token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthTokenError(f"{failure_message}: {exc}") from exc

    if response.status_code >= 400:
        raise OAuthTokenError(failure_message)

    return parse_token_response(response)


async def exchange_code_for_tokens(
    token_endpoint: str,
    *,
    client_id: str,
    code: str,
    code_verifier: str,
    redirect_uri: str,
    resource: str,
    state: str,
    client_secret: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Exchange an authorization code for a token set."""
    form = {"client_id": client_id}
    if client_secret:
        form["client_secret"] = client_secret
    form.update(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "resource": resource,
            "state": state,
        }
    )
    return await _post_token_form(token_endpoint, form, client, "OAuth token exchange failed")


def token_expires_at(token: Dict[str, Any]) -> Optional[int]:
    """Return the expiry as epoch ms, or ``None`` when the server gave no lifetime."""
    expires_in = _coerce_int(token.get("expires_in"))
    if expires_in is None:
        return None
    return int(token.get("received_at") or 0) + expires_in * 1000


def is_token_expiring(token: Dict[str, Any], now_ms: Optional[int] = None) -> bool:
    """True when the token expires within :data:`TOKEN_EXPIRY_BUFFER_MS` of *now_ms*."""
    expires_at = token_expires_at(token)
    if expires_at is None:
        return False
    now = _now_ms() if now_ms is None else now_ms
    return now + TOKEN_EXPIRY_BUFFER_MS >= expires_at


def is_token_expired(token: Dict[str, Any], now_ms: Optional[int] = None) -> bool:
    expires_at = token_expires_at(token)
    if expires_at is None:
        return False
    now = _now_ms() if now_ms is None else now_ms
    return now >= expires_at


async def refresh_access_token(
    token_endpoint: str,
    token: Dict[str, Any],
    *,
    client_id: str,
    client_secret: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Run the refresh-token grant. Raises :class:`OAuthTokenError` on failure."""
    refresh_token = token.get("refresh_token")
    if not refresh_token:
        raise OAuthTokenError("No refresh token available")

    form = {
        "grant_type": "refresh_token",
        "client_id": client_id,
        "refresh_token": refresh_token,
    }
    if client_secret:
        form["client_secret"] = client_secret
    if redirect_uri:
        form["redirect_uri"] = redirect_uri

    new_token = await _post_token_form(token_endpoint, form, client, "Failed to refresh tokens")
    if not new_token.get("refresh_token"):
        new_token["refresh_token"] = refresh_token
    return new_token


async def check_and_refresh_oauth(
    token_endpoint: str,
    token: Dict[str, Any],
    *,
    client_id: str,
    client_secret: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[Dict[str, Any]]:
    """Refresh *token* when it is about to expire.

    Returns the same token when no refresh is due (or none is possible), a new
    token set after a successful refresh, and ``None`` when the refresh failed.
    """
    if not is_token_expiring(token) or not token.get("refresh_token"):
        return token

    try:
        return await refresh_access_token(
            token_endpoint,
            token,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            client=client,
        )
    except OAuthError as exc:
        logger.warning(f"OAuth token refresh against {token_endpoint} failed: {exc}")
        return None
