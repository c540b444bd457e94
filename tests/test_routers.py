"""HTTP-level tests for the /mcp and /health routes."""

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from mcp_manager.database import get_db
from mcp_manager.main import app
from mcp_manager.providers import kodus_catalog
from mcp_manager.providers.factory import ProviderFactory
from mcp_manager.providers.smithery import TEMPLATES
from mcp_manager.services.integrations import IntegrationService


def _token(**claims):
    return jwt.encode(claims, "gateway-secret", algorithm="HS256")


def _auth(organization_id="org-1"):
    return {"Authorization": f"Bearer {_token(organizationId=organization_id)}"}


@pytest.fixture
def client(settings, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.provider_factory = ProviderFactory(settings, session_factory)
    yield TestClient(app)
    app.dependency_overrides = {}


class TestAuthentication:
    """Every /mcp route needs a bearer token with an organizationId claim."""

    def test_missing_header(self, client):
        """No Authorization header is 401."""
        response = client.get("/mcp/connections")
        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_malformed_token(self, client):
        """A token that is not a JWT is 401."""
        response = client.get("/mcp/connections", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_missing_claim(self, client):
        """A JWT without organizationId is 401."""
        response = client.get("/mcp/connections", headers={"Authorization": f"Bearer {_token(sub='u-1')}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token has no organizationId"

    def test_health_is_public(self, client, session_factory, monkeypatch):
        """The health check needs no token."""
        monkeypatch.setattr("mcp_manager.routers.health.get_session_factory", lambda: session_factory)
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["environment"]["status"] == "pass"
        assert body["checks"]["database"]["status"] == "pass"


class TestConnectionRoutes:
    """/mcp/connections."""

    def test_empty_list(self, client):
        """A new organization has no connections."""
        response = client.get("/mcp/connections", headers=_auth())
        assert response.status_code == 200
        assert response.json() == {"items": [], "total": 0}

    def test_invalid_page_size(self, client):
        """pageSize must be positive."""
        assert client.get("/mcp/connections?pageSize=0", headers=_auth()).status_code == 422

    def test_unknown_connection(self, client):
        """Unknown ids are 404."""
        response = client.get("/mcp/connections/unknown", headers=_auth())
        assert response.status_code == 404
        assert response.json()["detail"] == "Connection with ID unknown not found"

    def test_update_unknown(self, client):
        """Patching a missing connection is 404."""
        response = client.patch("/mcp/connections", json={"integration_id": "x", "status": "ACTIVE"}, headers=_auth())
        assert response.status_code == 404

    def test_update_requires_integration_id(self, client):
        """The body must name the integration."""
        assert client.patch("/mcp/connections", json={"status": "ACTIVE"}, headers=_auth()).status_code == 422

    def test_allowed_tools_unknown(self, client):
        """Updating tools of an unconnected integration is 404."""
        response = client.put("/mcp/connections/x/allowed-tools", json={"allowed_tools": ["a"]}, headers=_auth())
        assert response.status_code == 404

    def test_kodus_connection_scoped_to_organization(self, client):
        """A connection is listed for its organization only."""
        created = client.post(
            "/mcp/integration/kodusmcp",
            json={"base_url": "https://mcp.kodus.io", "integration_id": kodus_catalog.DEFAULT_INTEGRATION_ID},
            headers=_auth(),
        )
        assert created.status_code == 201
        assert created.json()["message"] == "Kodus MCP integration created successfully"

        mine = client.get("/mcp/connections", headers=_auth()).json()
        theirs = client.get("/mcp/connections", headers=_auth("org-2")).json()
        assert mine["total"] == 1
        assert mine["items"][0]["provider"] == "kodusmcp"
        assert theirs["total"] == 0

        connection_id = mine["items"][0]["id"]
        assert client.get(f"/mcp/connections/{connection_id}", headers=_auth("org-2")).status_code == 404

        deleted = client.delete(f"/mcp/connections/{connection_id}", headers=_auth())
        assert deleted.json() == {"message": "Connection deleted successfully"}
        assert client.get("/mcp/connections", headers=_auth()).json()["total"] == 0


class TestIntegrationRoutes:
    """/mcp/integration and the per-provider catalog."""

    def test_create_custom(self, client):
        """Custom integrations are created with secrets hidden."""
        response = client.post(
            "/mcp/integration/custom",
            json={
                "base_url": "https://mcp.example.com",
                "name": "Docs",
                "auth_type": "bearer_token",
                "bearer_token": "super-secret",
            },
            headers=_auth(),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "Docs"
        assert body["auth_type"] == "bearer_token"
        assert "super-secret" not in response.text

        listed = client.get("/mcp/integration/custom", headers=_auth()).json()
        assert [item["id"] for item in listed] == [body["id"]]

        fetched = client.get(f"/mcp/integration/custom/{body['id']}", headers=_auth())
        assert fetched.json()["base_url"] == "https://mcp.example.com"

        config = client.get(f"/mcp/integration/custom/{body['id']}/connection-config", headers=_auth()).json()
        assert config["headers"] == {"Authorization": "Bearer super-secret"}

        deleted = client.delete(f"/mcp/integration/custom/{body['id']}", headers=_auth())
        assert deleted.json() == {"message": "Integration deleted successfully"}
        assert client.get(f"/mcp/integration/custom/{body['id']}", headers=_auth()).status_code == 404

    def test_create_custom_validation(self, client):
        """Missing auth fields are 400 with the reason."""
        response = client.post(
            "/mcp/integration/custom",
            json={"base_url": "https://mcp.example.com", "name": "Docs", "auth_type": "bearer_token"},
            headers=_auth(),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Bearer token is required for BEARER_TOKEN auth type"

    def test_access_token_for_non_oauth(self, client):
        """Integrations without OAuth have no access token; unknown ids are 404."""
        created = client.post(
            "/mcp/integration/custom",
            json={"base_url": "https://mcp.example.com", "name": "Docs", "auth_type": "bearer_token", "bearer_token": "t"},
            headers=_auth(),
        ).json()

        response = client.get(f"/mcp/integration/custom/{created['id']}/access-token", headers=_auth())
        assert response.status_code == 200
        assert response.json() == {"id": created["id"], "access_token": None}

        missing = client.get("/mcp/integration/custom/nope/access-token", headers=_auth())
        assert missing.status_code == 404

    def test_validate_custom(self, client, monkeypatch):
        """Validation reports reachability without storing the integration."""
        seen = []

        async def fake_validate(self, data):
            seen.append(data.base_url)
            return True

        monkeypatch.setattr(IntegrationService, "validate_integration", fake_validate)
        response = client.post(
            "/mcp/integration/custom/validate",
            json={"base_url": "https://mcp.example.com", "name": "Docs"},
            headers=_auth(),
        )
        assert response.status_code == 200
        assert response.json() == {"valid": True}
        assert seen == ["https://mcp.example.com"]
        assert client.get("/mcp/integration/custom", headers=_auth()).json() == []

    def test_validate_custom_missing_credentials(self, client):
        """Auth fields are checked before the server is contacted."""
        response = client.post(
            "/mcp/integration/custom/validate",
            json={"base_url": "https://mcp.example.com", "name": "Docs", "auth_type": "bearer_token"},
            headers=_auth(),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Bearer token is required for BEARER_TOKEN auth type"

    def test_create_custom_requires_name(self, client):
        """A custom integration without name is 400."""
        response = client.post("/mcp/integration/custom", json={"base_url": "https://x"}, headers=_auth())
        assert response.status_code == 400

    def test_create_unsupported_provider(self, client):
        """Other providers cannot create integrations here."""
        response = client.post("/mcp/integration/smithery", json={"base_url": "https://x", "name": "X"}, headers=_auth())
        assert response.status_code == 400
        assert response.json()["detail"] == "Provider type smithery not supported"

    def test_list_integrations(self, client):
        """Every enabled provider contributes to the catalog."""
        response = client.get("/mcp/integrations", headers=_auth())
        assert response.status_code == 200
        items = response.json()

        providers = [item["provider"] for item in items]
        assert providers.count("kodusmcp") == 1
        assert providers.count("smithery") == len(TEMPLATES)
        default = next(item for item in items if item["id"] == kodus_catalog.DEFAULT_INTEGRATION_ID)
        assert default["is_connected"] is True
        assert default["connection_status"] == "ACTIVE"

    def test_provider_not_enabled(self, client):
        """Providers that are not enabled are 404."""
        response = client.get("/mcp/composio/integrations/ac_1", headers=_auth())
        assert response.status_code == 404
        assert response.json()["detail"] == "Provider composio not found"

    def test_kodus_tools(self, client):
        """The default Kodus integration exposes its catalog tools."""
        response = client.get(
            f"/mcp/kodusmcp/integrations/{kodus_catalog.DEFAULT_INTEGRATION_ID}/tools", headers=_auth()
        )
        assert response.status_code == 200
        assert len(response.json()) == 15

    def test_smithery_integration_detail(self, client):
        """A template answers with its required params."""
        response = client.get("/mcp/smithery/integrations/smithery-browserbase", headers=_auth())
        assert response.status_code == 200
        body = response.json()
        assert body["app_name"] == "browserbase"
        assert [param["name"] for param in body["required_params"]] == ["api_key", "project_id"]

        params = client.get("/mcp/smithery/integrations/smithery-browserbase/required-params", headers=_auth())
        assert [param["name"] for param in params.json()] == ["api_key", "project_id"]

    def test_connect_missing_params(self, client):
        """Connecting without required params is 400."""
        response = client.post(
            "/mcp/smithery/connect", json={"integration_id": "smithery-exa-search"}, headers=_auth()
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required params: api_key"

    def test_selected_tools(self, client):
        """Selected tools follow the Kodus MCP connection."""
        default_id = kodus_catalog.DEFAULT_INTEGRATION_ID
        client.post(
            "/mcp/integration/kodusmcp",
            json={"base_url": "https://mcp.kodus.io", "integration_id": default_id},
            headers=_auth(),
        )
        updated = client.put(
            f"/mcp/kodusmcp/integrations/{default_id}/selected-tools",
            json={"selected_tools": ["KODUS_LIST_COMMITS"]},
            headers=_auth(),
        )
        assert updated.status_code == 200
        assert updated.json()["success"] is True

        selected = client.get(f"/mcp/kodusmcp/integrations/{default_id}/selected-tools", headers=_auth())
        assert selected.json() == {"selected_tools": ["KODUS_LIST_COMMITS"]}

    def test_oauth_on_unsupported_provider(self, client):
        """OAuth initialization on providers without a flow is 400."""
        response = client.post(
            "/mcp/integration/smithery/oauth/initialize", json={"integration_id": "x"}, headers=_auth()
        )
        assert response.status_code == 400
