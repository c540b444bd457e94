"""Minimal MCP client for listing tools on remote HTTP/SSE servers.

Speaks JSON-RPC 2.0 over the streamable HTTP transport: ``initialize``,
``notifications/initialized`` and paginated ``tools/list``. Servers may answer
with a plain JSON body or an ``text/event-stream`` body carrying the response
as a ``data:`` event.

The underlying session is reference counted so that several logical callers
can share one client: the first :meth:`MCPClient.connect` opens the session,
the last :meth:`MCPClient.disconnect` closes it, and connects that arrive while
the session is being opened await the same in-flight attempt.
"""

import asyncio
import base64
import json
import logging
from itertools import count
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx

from mcp_manager.exceptions import MCPAuthenticationError
from mcp_manager.exceptions import MCPConnectionError
from mcp_manager.models.enums import IntegrationProtocol
from mcp_manager.schemas.integration import ApiKeyAuth
from mcp_manager.schemas.integration import BasicAuth
from mcp_manager.schemas.integration import BearerTokenAuth
from mcp_manager.schemas.integration import IntegrationView
from mcp_manager.schemas.integration import OAuth2Auth

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "kodus-mcp-manager", "version": "0.1.0"}
SESSION_HEADER = "Mcp-Session-Id"
DEFAULT_TIMEOUT = 30.0

_SUPPORTED_PROTOCOLS = {IntegrationProtocol.HTTP.value, IntegrationProtocol.SSE.value}


def build_auth_headers(integration: IntegrationView) -> Dict[str, str]:
    """Headers required by the auth type of *integration* plus its static headers.

    Static headers win over derived ones so a server that expects e.g.
    ``Authorization: Bearer <key>`` for an API key can be configured as such.
    OAuth2 integrations use the stored access token as is; callers refresh it
    beforehand.
    """
    headers: Dict[str, str] = {}
    auth = integration.auth

    if isinstance(auth, BearerTokenAuth):
        headers["Authorization"] = f"Bearer {auth.bearer_token}"
    elif isinstance(auth, ApiKeyAuth):
        headers[auth.api_key_header] = auth.api_key
    elif isinstance(auth, BasicAuth):
        raw = f"{auth.basic_user}:{auth.basic_password or ''}".encode("utf-8")
        headers["Authorization"] = f"Basic {base64.b64encode(raw).decode('ascii')}"
    elif isinstance(auth, OAuth2Auth) and auth.access_token:
        token_type = (auth.token or {}).get("token_type") or "Bearer"
        if token_type.lower() == "bearer":
            token_type = "Bearer"
        headers["Authorization"] = f"{token_type} {auth.access_token}"

    headers.update(integration.headers or {})
    return headers


def _parse_sse(text: str) -> List[Dict[str, Any]]:
    """Return the JSON payloads of every ``data:`` event in an SSE body."""
    messages: List[Dict[str, Any]] = []
    data_lines: List[str] = []

    def flush() -> None:
        if not data_lines:
            return
        payload = "\n".join(data_lines)
        data_lines.clear()
        try:
            message = json.loads(payload)
        except ValueError:
            return
        if isinstance(message, dict):
            messages.append(message)

    for line in text.splitlines():
        if not line.strip():
            flush()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    flush()
    return messages


class MCPClient:
    """Reference-counted MCP session bound to one integration."""

    def __init__(
        self,
        integration: IntegrationView,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.integration = integration
        self.name = integration.name or "custom-server"
        self.url = integration.base_url
        self.timeout = timeout

        self._external_client = http_client
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None
        self._ids = count(1)

        self._ref_count = 0
        self._connected = False
        self._connecting: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._ref_count += 1
        if self._connected:
            return

        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._open_shared())
        connecting = self._connecting

        try:
            # shield: one cancelled waiter must not cancel the attempt for the others
            await asyncio.shield(connecting)
        except BaseException:
            self._ref_count = max(0, self._ref_count - 1)
            raise
        finally:
            if self._connecting is connecting and connecting.done():
                self._connecting = None

    async def disconnect(self) -> None:
        if self._ref_count == 0:
            return
        self._ref_count = max(0, self._ref_count - 1)
        if self._ref_count > 0 or not self._connected:
            return
        await self._close()

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def _open_shared(self) -> None:
        await self._open()
        # every waiter gave up while the handshake was in flight
        if self._ref_count == 0:
            await self._close()

    async def _open(self) -> None:
        if self.integration.protocol not in _SUPPORTED_PROTOCOLS:
            raise MCPConnectionError(self.name, self.url, f"Unsupported protocol '{self.integration.protocol}'")

        if self._client is None:
            self._client = self._external_client or httpx.AsyncClient(timeout=self.timeout)

        try:
            await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
            )
            await self._notify("notifications/initialized")
        except BaseException:
            await self._release_client()
            raise

        self._connected = True
        logger.debug(f"Connected to MCP server '{self.name}' at {self.url}")

    async def _close(self) -> None:
        self._connected = False
        await self._release_client()
        logger.debug(f"Disconnected from MCP server '{self.name}'")

    async def _release_client(self) -> None:
        client, self._client = self._client, None
        self._session_id = None
        if client is not None and client is not self._external_client:
            await client.aclose()

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = build_auth_headers(self.integration)
        headers["Accept"] = "application/json, text/event-stream"
        headers["Content-Type"] = "application/json"
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, message: Dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.post(self.url, json=message, headers=self._headers())
        except httpx.HTTPError as exc:
            raise MCPConnectionError(self.name, self.url, exc) from exc

        if response.status_code in (401, 403):
            raise MCPAuthenticationError(self.name, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise MCPConnectionError(self.name, self.url, f"HTTP {response.status_code}")

        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        return response

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._post(message)

    async def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        request_id = next(self._ids)
        response = await self._post({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            candidates = _parse_sse(response.text)
        else:
            try:
                body = response.json()
            except ValueError as exc:
                raise MCPConnectionError(self.name, self.url, "Invalid JSON-RPC response") from exc
            candidates = body if isinstance(body, list) else [body]

        for message in candidates:
            if not isinstance(message, dict) or message.get("id") != request_id:
                continue
            if "error" in message:
                error = message["error"] or {}
                raise MCPConnectionError(self.name, self.url, error.get("message") or str(error))
            return message.get("result") or {}

        raise MCPConnectionError(self.name, self.url, f"No response to '{method}'")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Return every tool advertised by the server, following ``nextCursor``."""
        await self.connect()
        try:
            tools: List[Dict[str, Any]] = []
            cursor: Optional[str] = None
            while True:
                params = {"cursor": cursor} if cursor else {}
                result = await self._request("tools/list", params)
                tools.extend(tool for tool in result.get("tools") or [] if isinstance(tool, dict))
                cursor = result.get("nextCursor")
                if not cursor:
                    return tools
        finally:
            await self.disconnect()
