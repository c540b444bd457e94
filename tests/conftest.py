"""Shared fixtures for the MCP manager test-suite.

Environment is configured *before* any project import so that
``get_settings()`` skips the production checks and every module sees a
deterministic encryption secret.
"""

import os

os.environ["TESTING"] = "1"
os.environ["API_MCP_MANAGER_ENCRYPTION_SECRET"] = "test-encryption-secret"
os.environ["API_MCP_MANAGER_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["API_MCP_MANAGER_REDIRECT_URI"] = "https://app.example.com/oauth/callback"
os.environ["API_MCP_MANAGER_MCP_PROVIDERS"] = "kodusmcp,custom,smithery"
os.environ.pop("API_MCP_MANAGER_MANAGED_SERVERS_PATH", None)

import json  # noqa: E402
from typing import Any  # noqa: E402
from typing import Dict  # noqa: E402
from typing import List  # noqa: E402
from typing import Optional  # noqa: E402
from urllib.parse import parse_qsl  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402

from mcp_manager.config import get_settings  # noqa: E402
from mcp_manager.database import initialize_database  # noqa: E402
from mcp_manager.database import make_engine  # noqa: E402
from mcp_manager.database import make_sessionmaker  # noqa: E402


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so provider sessions and the test session are separate connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'mcp_manager.db'}")
    initialize_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return get_settings()


# ---------------------------------------------------------------------------
# Fake remote servers
# ---------------------------------------------------------------------------


def form_of(request: httpx.Request) -> Dict[str, str]:
    return dict(parse_qsl(request.content.decode("utf-8")))


class FakeOAuthServer:
    """Authorization server for ``https://example.com/mcp`` living at ``https://auth.example.com``."""

    def __init__(self, registration: bool = True, tokens: Optional[List[Dict[str, Any]]] = None):
        self.registration = registration
        self.tokens = list(
            tokens
            or [
                {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600, "token_type": "Bearer"},
                {"access_token": "at-2", "expires_in": 3600, "token_type": "Bearer"},
            ]
        )
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "example.com" and path == "/.well-known/oauth-protected-resource/mcp":
            return httpx.Response(
                200,
                json={"resource": "https://example.com/mcp", "authorization_servers": ["https://auth.example.com"]},
            )
        if host == "auth.example.com" and path == "/.well-known/oauth-authorization-server":
            metadata = {
                "issuer": "https://auth.example.com",
                "authorization_endpoint": "https://auth.example.com/authorize",
                "token_endpoint": "https://auth.example.com/token",
            }
            if self.registration:
                metadata["registration_endpoint"] = "https://auth.example.com/register"
            return httpx.Response(200, json=metadata)
        if host == "auth.example.com" and path == "/register" and request.method == "POST":
            return httpx.Response(201, json={"client_id": "dyn-client"})
        if host == "auth.example.com" and path == "/token" and request.method == "POST":
            if not self.tokens:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.tokens.pop(0))
        return httpx.Response(404)

    @property
    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeMCPServer:
    """Streamable-HTTP MCP server answering ``initialize`` and ``tools/list``."""

    def __init__(self, tools: Optional[List[Dict[str, Any]]] = None, status_code: int = 200, sse: bool = False):
        self.tools = tools if tools is not None else [
            {"name": "search", "description": "Search the web"},
            {"name": "fetch", "description": "Fetch a page"},
        ]
        self.status_code = status_code
        self.sse = sse
        self.requests: List[httpx.Request] = []

    def methods(self) -> List[str]:
        return [json.loads(r.content).get("method") for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code)

        message = json.loads(request.content)
        if "id" not in message:
            return httpx.Response(202)

        if message["method"] == "initialize":
            result = {"protocolVersion": "2025-03-26", "capabilities": {"tools": {}}, "serverInfo": {"name": "fake"}}
        elif message["method"] == "tools/list":
            result = {"tools": self.tools}
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "error": {"message": "nope"}})

        body = {"jsonrpc": "2.0", "id": message["id"], "result": result}
        headers = {"Mcp-Session-Id": "session-1"}
        if self.sse:
            headers["content-type"] = "text/event-stream"
            return httpx.Response(200, text=f"event: message\ndata: {json.dumps(body)}\n\n", headers=headers)
        return httpx.Response(200, json=body, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def oauth_server():
    return FakeOAuthServer()


@pytest.fixture
def mcp_server():
    return FakeMCPServer()
