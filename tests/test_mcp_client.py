"""Tests for the reference-counted MCP client."""

import asyncio
import json

import httpx
import pytest

from mcp_manager.clients.mcp_client import MCPClient
from mcp_manager.clients.mcp_client import _parse_sse
from mcp_manager.clients.mcp_client import build_auth_headers
from mcp_manager.exceptions import MCPAuthenticationError
from mcp_manager.exceptions import MCPConnectionError
from mcp_manager.schemas.integration import ApiKeyAuth
from mcp_manager.schemas.integration import BasicAuth
from mcp_manager.schemas.integration import BearerTokenAuth
from mcp_manager.schemas.integration import IntegrationView
from mcp_manager.schemas.integration import NoAuth
from mcp_manager.schemas.integration import OAuth2Auth
from tests.conftest import FakeMCPServer


def _view(auth=None, protocol="http", headers=None):
    return IntegrationView(
        id="i-1",
        organization_id="org-1",
        base_url="https://mcp.example.com/mcp",
        name="Example",
        auth=auth or NoAuth(),
        protocol=protocol,
        headers=headers or {},
    )


class TestAuthHeaders:
    """Header derivation per auth type."""

    def test_bearer(self):
        """Bearer tokens go in Authorization."""
        assert build_auth_headers(_view(BearerTokenAuth("tok"))) == {"Authorization": "Bearer tok"}

    def test_api_key(self):
        """API keys go in the configured header."""
        assert build_auth_headers(_view(ApiKeyAuth("k", "X-Api-Key"))) == {"X-Api-Key": "k"}

    def test_basic(self):
        """Basic auth is base64 of user:password."""
        headers = build_auth_headers(_view(BasicAuth("user", "pass")))
        assert headers == {"Authorization": "Basic dXNlcjpwYXNz"}

    def test_oauth2_uses_token_type(self):
        """OAuth2 tokens normalise the bearer type."""
        auth = OAuth2Auth(token={"access_token": "at", "token_type": "bearer"})
        assert build_auth_headers(_view(auth)) == {"Authorization": "Bearer at"}

    def test_oauth2_without_token(self):
        """No token means no Authorization header."""
        assert build_auth_headers(_view(OAuth2Auth())) == {}

    def test_static_headers_override(self):
        """Configured headers take precedence over derived ones."""
        headers = build_auth_headers(
            _view(ApiKeyAuth("k", "X-Api-Key"), headers={"Authorization": "Bearer k", "X-Api-Key": "other"})
        )
        assert headers == {"Authorization": "Bearer k", "X-Api-Key": "other"}


class TestParseSSE:
    """Extraction of JSON payloads from event-stream bodies."""

    def test_multiple_events(self):
        """Each data event becomes one message; junk is skipped."""
        body = 'event: message\ndata: {"id": 1}\n\ndata: not json\n\ndata: {"id":\ndata: 2}\n'
        assert _parse_sse(body) == [{"id": 1}, {"id": 2}]


class TestSession:
    """Connect/disconnect accounting."""

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_initialize(self):
        """Concurrent connects perform a single handshake."""
        server = FakeMCPServer()
        async with server.client() as http:
            client = MCPClient(_view(), http_client=http)
            await asyncio.gather(client.connect(), client.connect(), client.connect())

            assert client.connected
            assert client.ref_count == 3
            assert server.methods().count("initialize") == 1

            await client.disconnect()
            await client.disconnect()
            assert client.connected
            await client.disconnect()
            assert not client.connected
            assert client.ref_count == 0

            await client.disconnect()
            assert client.ref_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_connect_closes_orphaned_session(self):
        """A handshake that completes after its only waiter was cancelled is closed."""
        started = asyncio.Event()
        gate = asyncio.Event()
        methods = []

        async def handler(request):
            message = json.loads(request.content)
            methods.append(message["method"])
            if "id" not in message:
                return httpx.Response(202)
            started.set()
            await gate.wait()
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": {}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = MCPClient(_view(), http_client=http)
            waiter = asyncio.create_task(client.connect())
            await started.wait()
            pending = client._connecting

            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert client.ref_count == 0

            gate.set()
            await asyncio.wait_for(pending, timeout=1)
            assert not client.connected

            await client.connect()
            assert client.connected
            assert client.ref_count == 1
            assert methods.count("initialize") == 2

    @pytest.mark.asyncio
    async def test_session_header_forwarded(self):
        """The session id from initialize is sent on later requests."""
        server = FakeMCPServer()
        async with server.client() as http:
            async with MCPClient(_view(BearerTokenAuth("tok")), http_client=http) as client:
                await client.list_tools()

        assert "Mcp-Session-Id" not in server.requests[0].headers
        assert server.requests[-1].headers["Mcp-Session-Id"] == "session-1"
        assert server.requests[-1].headers["Authorization"] == "Bearer tok"
        assert server.methods() == ["initialize", "notifications/initialized", "tools/list"]

    @pytest.mark.asyncio
    async def test_server_error(self):
        """A 5xx during initialize is a connection error and releases the reference."""
        async with FakeMCPServer(status_code=500).client() as http:
            client = MCPClient(_view(), http_client=http)
            with pytest.raises(MCPConnectionError):
                await client.connect()
        assert client.ref_count == 0
        assert not client.connected

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        """401 is reported as an authentication error."""
        async with FakeMCPServer(status_code=401).client() as http:
            with pytest.raises(MCPAuthenticationError):
                await MCPClient(_view(), http_client=http).list_tools()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("protocol", ["stdio", "websocket"])
    async def test_unsupported_protocol(self, protocol):
        """Only HTTP transports are spoken."""
        with pytest.raises(MCPConnectionError, match="Unsupported protocol"):
            await MCPClient(_view(protocol=protocol)).connect()

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Network errors become connection errors."""

        def handler(request):
            raise httpx.ConnectError("refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(MCPConnectionError, match="refused"):
                await MCPClient(_view(), http_client=http).connect()


class TestListTools:
    """Tool listing over JSON and SSE bodies."""

    @pytest.mark.asyncio
    async def test_json_body(self):
        """Tools are returned from a plain JSON response."""
        async with FakeMCPServer().client() as http:
            tools = await MCPClient(_view(), http_client=http).list_tools()
        assert [tool["name"] for tool in tools] == ["search", "fetch"]

    @pytest.mark.asyncio
    async def test_sse_body(self):
        """Tools are returned from an event-stream response."""
        async with FakeMCPServer(sse=True).client() as http:
            tools = await MCPClient(_view(protocol="sse"), http_client=http).list_tools()
        assert [tool["name"] for tool in tools] == ["search", "fetch"]

    @pytest.mark.asyncio
    async def test_pagination(self):
        """nextCursor is followed until exhausted."""
        pages = {None: ([{"name": "a"}], "c2"), "c2": ([{"name": "b"}], None)}
        cursors = []

        def handler(request):
            message = json.loads(request.content)
            if "id" not in message:
                return httpx.Response(202)
            if message["method"] == "initialize":
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": {}})
            cursor = message["params"].get("cursor")
            cursors.append(cursor)
            tools, next_cursor = pages[cursor]
            result = {"tools": tools}
            if next_cursor:
                result["nextCursor"] = next_cursor
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": result})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            tools = await MCPClient(_view(), http_client=http).list_tools()

        assert cursors == [None, "c2"]
        assert [tool["name"] for tool in tools] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_jsonrpc_error(self):
        """A JSON-RPC error object is raised."""

        def handler(request):
            message = json.loads(request.content)
            if "id" not in message:
                return httpx.Response(202)
            if message["method"] == "initialize":
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": {}})
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "no tools"}}
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(MCPConnectionError, match="no tools"):
                await MCPClient(_view(), http_client=http).list_tools()
