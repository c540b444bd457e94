"""Tests for the encrypted integration store and the custom OAuth2 lifecycle."""

from unittest.mock import patch
from urllib.parse import parse_qs
from urllib.parse import urlsplit

import pytest

from mcp_manager.crud import crud_integrations
from mcp_manager.crud import crud_oauth_state
from mcp_manager.exceptions import ConflictError
from mcp_manager.exceptions import IntegrationConfigError
from mcp_manager.exceptions import IntegrationNotFoundError
from mcp_manager.exceptions import IntegrationValidationError
from mcp_manager.exceptions import InvalidStateError
from mcp_manager.exceptions import OAuthTokenError
from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.schemas.integration import BearerTokenAuth
from mcp_manager.schemas.integration import OAuth2Auth
from mcp_manager.schemas.mcp import IntegrationCreate
from mcp_manager.services.integrations import IntegrationService
from mcp_manager.services.integrations import to_view
from mcp_manager.utils import crypto
from mcp_manager.utils import oauth
from tests.conftest import FakeMCPServer
from tests.conftest import FakeOAuthServer
from tests.conftest import form_of

ORG = "org-1"
MINUTE_MS = 60 * 1000


def _oauth_body(**overrides):
    data = {"base_url": "https://example.com/mcp", "name": "Example", "auth_type": "oauth2", "oauth_scopes": ["read"]}
    data.update(overrides)
    return IntegrationCreate(**data)


async def _create_and_finalize(service, db):
    """Run scenario A end to end with the clock frozen at zero."""
    with patch.object(oauth, "_now_ms", return_value=0):
        created = await service.create_integration(ORG, _oauth_body())
        row = crud_integrations.get_integration(db, created["integration_id"], ORG)
        state = to_view(row).auth.state
        await service.finalize_oauth_flow(ORG, created["integration_id"], "code-1", state)
    return created["integration_id"]


class TestCreateIntegration:
    """Creating non-OAuth integrations."""

    @pytest.mark.asyncio
    async def test_bearer_integration_encrypted(self, db, settings):
        """Secrets and headers are stored encrypted and decrypt into the view."""
        service = IntegrationService(db, settings)
        view = await service.create_integration(
            ORG,
            IntegrationCreate(
                base_url="https://mcp.example.com",
                name="Search",
                auth_type="bearer_token",
                bearer_token="tok-123",
                headers=[{"key": "X-Team", "value": "core"}],
            ),
        )

        row = crud_integrations.get_integration(db, view.id, ORG)
        assert "tok-123" not in row.auth
        assert crypto.decrypt(row.auth) == '{"bearer_token": "tok-123"}'
        assert row.active is True
        assert row.provider == "custom"
        assert isinstance(view.auth, BearerTokenAuth)
        assert view.headers == {"X-Team": "core"}
        assert view.to_dict()["header_names"] == ["X-Team"]
        assert "tok-123" not in str(view.to_dict())

    @pytest.mark.asyncio
    async def test_name_defaults_to_base_url(self, db, settings):
        """A missing name falls back to the base URL."""
        view = await IntegrationService(db, settings).create_integration(
            ORG, IntegrationCreate(base_url="https://mcp.example.com")
        )
        assert view.name == "https://mcp.example.com"
        assert view.auth_type == IntegrationAuthType.NONE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,message",
        [
            ({"auth_type": "bearer_token"}, "Bearer token is required for BEARER_TOKEN auth type"),
            ({"auth_type": "api_key", "api_key": "k"}, "API Key and API Key Header are required for API_KEY auth type"),
            ({"auth_type": "basic"}, "Basic User is required for BASIC auth type"),
        ],
    )
    async def test_missing_auth_fields(self, db, settings, body, message):
        """Each auth type validates its own fields."""
        with pytest.raises(IntegrationValidationError) as exc_info:
            await IntegrationService(db, settings).create_integration(
                ORG, IntegrationCreate(base_url="https://mcp.example.com", **body)
            )
        assert str(exc_info.value) == message
        assert crud_integrations.get_integrations(db, organization_id=ORG) == []

    @pytest.mark.asyncio
    async def test_unknown_stored_auth_type_fails_loudly(self, db, settings):
        """A row with an unknown auth type cannot be read."""
        row = crud_integrations.create_integration(
            db,
            organization_id=ORG,
            base_url="https://mcp.example.com",
            name="Broken",
            auth_type="kerberos",
            protocol="http",
            auth=crypto.encrypt("{}"),
            headers=None,
        )
        with pytest.raises(IntegrationConfigError):
            await IntegrationService(db, settings).get_integration_by_id(row.id, ORG)


class TestOAuthCreate:
    """Creating an oauth2 integration starts the authorization flow."""

    @pytest.mark.asyncio
    async def test_dynamic_registration_and_auth_url(self, db, settings):
        """Without a client_id the client is registered and the row stays inactive."""
        server = FakeOAuthServer()
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            created = await service.create_integration(ORG, _oauth_body())

        row = crud_integrations.get_integration(db, created["integration_id"], ORG)
        auth = to_view(row).auth
        query = parse_qs(urlsplit(created["auth_url"]).query)

        assert created["auth_url"].startswith("https://auth.example.com/authorize?")
        assert query["client_id"] == ["dyn-client"]
        assert query["resource"] == ["https://example.com/mcp"]
        assert query["redirect_uri"] == ["https://app.example.com/oauth/callback"]
        assert query["scope"] == ["read"]
        assert query["state"] == [auth.state]
        assert query["code_challenge"] == [auth.code_challenge]
        assert row.active is False
        assert isinstance(auth, OAuth2Auth)
        assert auth.client_id == "dyn-client"
        assert auth.token is None
        assert crud_oauth_state.get_oauth_state(db, ORG, row.id) is None

    @pytest.mark.asyncio
    async def test_supplied_client_id_skips_registration(self, db, settings):
        """A given client_id is used as is."""
        server = FakeOAuthServer()
        async with server.client() as client:
            created = await IntegrationService(db, settings, http_client=client).create_integration(
                ORG, _oauth_body(client_id="static-client", client_secret="s3cret")
            )

        assert parse_qs(urlsplit(created["auth_url"]).query)["client_id"] == ["static-client"]
        assert not [r for r in server.requests if r.url.path == "/register"]

    @pytest.mark.asyncio
    async def test_no_client_id_and_no_registration(self, db, settings):
        """Without client_id or registration endpoint creation fails."""
        server = FakeOAuthServer(registration=False)
        async with server.client() as client:
            with pytest.raises(IntegrationValidationError, match="client_id is required"):
                await IntegrationService(db, settings, http_client=client).create_integration(ORG, _oauth_body())

    @pytest.mark.asyncio
    async def test_reinitiate_active_integration(self, db, settings):
        """An active integration cannot restart the flow."""
        server = FakeOAuthServer()
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            integration_id = await _create_and_finalize(service, db)
            with pytest.raises(ConflictError):
                await service.initiate_oauth_flow(ORG, integration_id)


class TestOAuthFinalize:
    """Finalizing exchanges the code and activates the row."""

    @pytest.mark.asyncio
    async def test_finalize_activates(self, db, settings):
        """A matching state exchanges the code and stores the token."""
        server = FakeOAuthServer()
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            integration_id = await _create_and_finalize(service, db)

        row = crud_integrations.get_integration(db, integration_id, ORG)
        auth = to_view(row).auth
        form = form_of(server.token_requests[0])

        assert row.active is True
        assert auth.access_token == "at-1"
        assert auth.token["refresh_token"] == "rt-1"
        assert form["code"] == "code-1"
        assert form["code_verifier"] == auth.code_verifier
        assert form["resource"] == "https://example.com/mcp"

    @pytest.mark.asyncio
    async def test_state_mismatch(self, db, settings):
        """A wrong state is rejected before any token request."""
        server = FakeOAuthServer()
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            created = await service.create_integration(ORG, _oauth_body())
            with pytest.raises(InvalidStateError):
                await service.finalize_oauth_flow(ORG, created["integration_id"], "code-1", "not-the-state")

        assert server.token_requests == []
        assert crud_integrations.get_integration(db, created["integration_id"], ORG).active is False

    @pytest.mark.asyncio
    async def test_unknown_integration(self, db, settings):
        """Finalizing an unknown id is a not-found error."""
        with pytest.raises(IntegrationNotFoundError):
            await IntegrationService(db, settings).finalize_oauth_flow(ORG, "missing", "c", "s")


class TestTokenRefresh:
    """Strict and opportunistic refresh."""

    @pytest.mark.asyncio
    async def test_refresh_inside_buffer(self, db, settings):
        """54 minutes into a one hour token nothing happens; at 56 minutes it is refreshed."""
        server = FakeOAuthServer()
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            integration_id = await _create_and_finalize(service, db)

            with patch.object(oauth, "_now_ms", return_value=54 * MINUTE_MS):
                view = await service.get_refreshed_oauth_integration(ORG, integration_id)
            assert view.auth.access_token == "at-1"
            assert len(server.token_requests) == 1

            with patch.object(oauth, "_now_ms", return_value=56 * MINUTE_MS):
                view = await service.get_refreshed_oauth_integration(ORG, integration_id)

        form = form_of(server.token_requests[1])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "rt-1"
        assert view.auth.access_token == "at-2"
        assert view.auth.token["refresh_token"] == "rt-1"
        stored = to_view(crud_integrations.get_integration(db, integration_id, ORG))
        assert stored.auth.access_token == "at-2"

    @pytest.mark.asyncio
    async def test_strict_refresh_failure_raises(self, db, settings):
        """A failed refresh on the strict path raises."""
        server = FakeOAuthServer(tokens=[{"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}])
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            integration_id = await _create_and_finalize(service, db)
            with patch.object(oauth, "_now_ms", return_value=59 * MINUTE_MS):
                with pytest.raises(OAuthTokenError):
                    await service.get_refreshed_oauth_integration(ORG, integration_id)

    @pytest.mark.asyncio
    async def test_opportunistic_refresh_failure_keeps_token(self, db, settings):
        """Plain reads keep the stored token when the refresh fails."""
        server = FakeOAuthServer(tokens=[{"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}])
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            integration_id = await _create_and_finalize(service, db)
            with patch.object(oauth, "_now_ms", return_value=59 * MINUTE_MS):
                view = await service.get_integration_by_id(integration_id, ORG)

        assert view.auth.access_token == "at-1"

    @pytest.mark.asyncio
    async def test_valid_access_token(self, db, settings):
        """The access token is returned for oauth2 and empty for others."""
        server = FakeOAuthServer()
        async with server.client() as client:
            service = IntegrationService(db, settings, http_client=client)
            integration_id = await _create_and_finalize(service, db)
            with patch.object(oauth, "_now_ms", return_value=MINUTE_MS):
                token, _ = await service.get_valid_access_token(integration_id, ORG)
            plain = await service.create_integration(ORG, IntegrationCreate(base_url="https://other.example.com"))
            empty, _ = await service.get_valid_access_token(plain.id, ORG)

        assert token == "at-1"
        assert empty == ""


class TestEditAndDelete:
    """Editing and soft deleting."""

    @pytest.mark.asyncio
    async def test_edit_replaces_auth(self, db, settings):
        """Editing re-validates and re-encrypts."""
        service = IntegrationService(db, settings)
        view = await service.create_integration(ORG, IntegrationCreate(base_url="https://mcp.example.com", name="A"))
        edited = await service.edit_integration(
            ORG,
            view.id,
            IntegrationCreate(
                base_url="https://mcp2.example.com", auth_type="api_key", api_key="k", api_key_header="X-Key"
            ),
        )
        assert edited.base_url == "https://mcp2.example.com"
        assert edited.name == "A"
        assert edited.auth.api_key == "k"

    @pytest.mark.asyncio
    async def test_edit_oauth_rejected(self, db, settings):
        """OAuth2 integrations are not edited in place."""
        service = IntegrationService(db, settings)
        view = await service.create_integration(ORG, IntegrationCreate(base_url="https://mcp.example.com"))
        with pytest.raises(IntegrationValidationError):
            await service.edit_integration(ORG, view.id, _oauth_body())

    @pytest.mark.asyncio
    async def test_soft_delete(self, db, settings):
        """Deleted integrations disappear from reads but the row remains."""
        service = IntegrationService(db, settings)
        view = await service.create_integration(ORG, IntegrationCreate(base_url="https://mcp.example.com"))
        service.delete_integration(ORG, view.id)

        assert await service.get_integration_by_id(view.id, ORG) is None
        assert service.find(organization_id=ORG) == []
        with pytest.raises(IntegrationNotFoundError):
            service.delete_integration(ORG, view.id)

    @pytest.mark.asyncio
    async def test_other_organization_cannot_read(self, db, settings):
        """Integrations are scoped to their organization."""
        service = IntegrationService(db, settings)
        view = await service.create_integration(ORG, IntegrationCreate(base_url="https://mcp.example.com"))
        assert await service.get_integration_by_id(view.id, "org-2") is None


class TestValidateIntegration:
    """Probing an endpoint before saving it."""

    @pytest.mark.asyncio
    async def test_reachable(self, db, settings):
        """A server that lists tools validates."""
        async with FakeMCPServer().client() as client:
            ok = await IntegrationService(db, settings, http_client=client).validate_integration(
                IntegrationCreate(base_url="https://mcp.example.com")
            )
        assert ok is True

    @pytest.mark.asyncio
    async def test_unreachable(self, db, settings):
        """A failing server does not validate."""
        async with FakeMCPServer(status_code=500).client() as client:
            ok = await IntegrationService(db, settings, http_client=client).validate_integration(
                IntegrationCreate(base_url="https://mcp.example.com")
            )
        assert ok is False
