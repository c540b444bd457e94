"""Integration store: encrypted CRUD plus the custom OAuth2 lifecycle.

Secrets are encrypted on the way in and decrypted into an
:class:`~mcp_manager.schemas.integration.IntegrationView` on the way out; no
caller outside this module touches the flat row's ``auth`` column.
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

import httpx
from sqlalchemy.orm import Session

from mcp_manager.clients.mcp_client import MCPClient
from mcp_manager.config import Settings
from mcp_manager.config import get_settings
from mcp_manager.crud import crud_integrations
from mcp_manager.exceptions import ConflictError
from mcp_manager.exceptions import IntegrationConfigError
from mcp_manager.exceptions import IntegrationNotFoundError
from mcp_manager.exceptions import IntegrationValidationError
from mcp_manager.exceptions import InvalidStateError
from mcp_manager.exceptions import MCPManagerError
from mcp_manager.exceptions import OAuthTokenError
from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.models.enums import ProviderType
from mcp_manager.models.integration import Integration
from mcp_manager.schemas.integration import ApiKeyAuth
from mcp_manager.schemas.integration import AuthConfig
from mcp_manager.schemas.integration import BasicAuth
from mcp_manager.schemas.integration import BearerTokenAuth
from mcp_manager.schemas.integration import IntegrationView
from mcp_manager.schemas.integration import NoAuth
from mcp_manager.schemas.integration import OAuth2Auth
from mcp_manager.schemas.mcp import IntegrationCreate
from mcp_manager.services.oauth_state import OAuthStateService
from mcp_manager.utils import crypto
from mcp_manager.utils import oauth

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Marshalling helpers
# ---------------------------------------------------------------------------


def build_auth_config(data: IntegrationCreate) -> AuthConfig:
    """Validate the auth fields required by ``data.auth_type`` and build the variant."""
    auth_type = data.auth_type

    if auth_type == IntegrationAuthType.BEARER_TOKEN:
        if not data.bearer_token:
            raise IntegrationValidationError("Bearer token is required for BEARER_TOKEN auth type")
        return BearerTokenAuth(bearer_token=data.bearer_token)

    if auth_type == IntegrationAuthType.API_KEY:
        if not data.api_key or not data.api_key_header:
            raise IntegrationValidationError("API Key and API Key Header are required for API_KEY auth type")
        return ApiKeyAuth(api_key=data.api_key, api_key_header=data.api_key_header)

    if auth_type == IntegrationAuthType.BASIC:
        if not data.basic_user:
            raise IntegrationValidationError("Basic User is required for BASIC auth type")
        return BasicAuth(basic_user=data.basic_user, basic_password=data.basic_password)

    if auth_type == IntegrationAuthType.OAUTH2:
        return OAuth2Auth(
            client_id=data.client_id,
            client_secret=data.client_secret,
            oauth_scopes=list(data.oauth_scopes),
            dynamic_registration=data.dynamic_registration,
        )

    if auth_type == IntegrationAuthType.NONE:
        return NoAuth()

    raise IntegrationValidationError(f"Unhandled auth type: {auth_type}")


def auth_from_payload(auth_type: str, payload: Dict[str, Any]) -> AuthConfig:
    if auth_type == IntegrationAuthType.NONE.value:
        return NoAuth()
    if auth_type == IntegrationAuthType.BEARER_TOKEN.value:
        return BearerTokenAuth(bearer_token=payload.get("bearer_token") or "")
    if auth_type == IntegrationAuthType.API_KEY.value:
        return ApiKeyAuth(api_key=payload.get("api_key") or "", api_key_header=payload.get("api_key_header") or "")
    if auth_type == IntegrationAuthType.BASIC.value:
        return BasicAuth(basic_user=payload.get("basic_user") or "", basic_password=payload.get("basic_password"))
    if auth_type == IntegrationAuthType.OAUTH2.value:
        return OAuth2Auth.from_payload(payload)
    raise IntegrationConfigError(f"Unknown auth type '{auth_type}' on stored integration")


def _encrypt_json(value: Dict[str, Any]) -> str:
    return crypto.encrypt(json.dumps(value))


def _decrypt_json(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    return json.loads(crypto.decrypt(value))


def to_view(row: Integration) -> IntegrationView:
    """Decrypt *row* into its typed view. Unknown auth types fail loudly."""
    return IntegrationView(
        id=row.id,
        organization_id=row.organization_id,
        active=bool(row.active),
        protocol=row.protocol,
        base_url=row.base_url,
        name=row.name,
        description=row.description,
        logo_url=row.logo_url,
        provider=row.provider,
        headers=_decrypt_json(row.headers),
        auth=auth_from_payload(row.auth_type, _decrypt_json(row.auth)),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class IntegrationService:
    """Create, read, edit and authorise custom integrations for one DB session."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.oauth_state = OAuthStateService(db, self.settings, http_client=http_client)

    to_view = staticmethod(to_view)

    # ------------------------------------------------------------------
    # Create / edit / delete
    # ------------------------------------------------------------------

    async def create_integration(
        self,
        organization_id: str,
        data: IntegrationCreate,
    ) -> Union[IntegrationView, Dict[str, str]]:
        """Persist a new integration.

        OAuth2 integrations go through :meth:`create_oauth2_integration` and
        return ``{"auth_url", "integration_id"}``; everything else returns the view.
        """
        if data.auth_type == IntegrationAuthType.OAUTH2:
            return await self.create_oauth2_integration(organization_id, data)

        auth = build_auth_config(data)
        row = crud_integrations.create_integration(
            self.db,
            organization_id=organization_id,
            base_url=data.base_url,
            name=data.name or data.base_url,
            description=data.description,
            logo_url=data.logo_url,
            auth_type=auth.auth_type.value,
            protocol=data.protocol.value,
            auth=_encrypt_json(auth.to_payload()),
            headers=_encrypt_json(data.headers_dict()),
            provider=ProviderType.CUSTOM.value,
            active=True,
        )
        logger.info(f"Created {auth.auth_type.value} integration {row.id} for organization={organization_id}")
        return to_view(row)

    async def create_oauth2_integration(self, organization_id: str, data: IntegrationCreate) -> Dict[str, str]:
        auth = build_auth_config(data)
        row = crud_integrations.create_integration(
            self.db,
            organization_id=organization_id,
            base_url=data.base_url,
            name=data.name or data.base_url,
            description=data.description,
            logo_url=data.logo_url,
            auth_type=IntegrationAuthType.OAUTH2.value,
            protocol=data.protocol.value,
            auth=_encrypt_json(auth.to_payload()),
            headers=_encrypt_json(data.headers_dict()),
            provider=ProviderType.CUSTOM.value,
            active=False,
        )
        logger.info(f"Created pending oauth2 integration {row.id} for organization={organization_id}")

        auth_url = await self._start_oauth(row, auth)
        return {"auth_url": auth_url, "integration_id": row.id}

    async def initiate_oauth_flow(self, organization_id: str, integration_id: str) -> str:
        """Re-run authorization for an existing, not yet active oauth2 integration."""
        row = self._require_row(integration_id, organization_id)
        view = to_view(row)

        if view.active:
            raise ConflictError("Integration is already active")
        if not isinstance(view.auth, OAuth2Auth):
            raise IntegrationValidationError("Integration is not OAuth2")

        return await self._start_oauth(row, view.auth)

    async def _start_oauth(self, row: Integration, auth: OAuth2Auth) -> str:
        initiation = await self.oauth_state.initiate_oauth(
            row.base_url,
            oauth_scopes=auth.oauth_scopes,
            dynamic_registration=auth.dynamic_registration,
            client_id=auth.client_id,
            client_secret=auth.client_secret,
        )
        crud_integrations.update_integration(
            self.db,
            row,
            active=False,
            auth=_encrypt_json(initiation.to_state()),
        )
        return initiation.auth_url

    async def edit_integration(
        self,
        organization_id: str,
        integration_id: str,
        data: IntegrationCreate,
    ) -> IntegrationView:
        row = self._require_row(integration_id, organization_id)

        if row.auth_type == IntegrationAuthType.OAUTH2.value or data.auth_type == IntegrationAuthType.OAUTH2:
            raise IntegrationValidationError("OAuth2 integrations can only be changed through the OAuth flow")

        auth = build_auth_config(data)
        row = crud_integrations.update_integration(
            self.db,
            row,
            base_url=data.base_url,
            name=data.name or row.name,
            description=data.description,
            logo_url=data.logo_url,
            auth_type=auth.auth_type.value,
            protocol=data.protocol.value,
            auth=_encrypt_json(auth.to_payload()),
            headers=_encrypt_json(data.headers_dict()),
            active=True,
        )
        return to_view(row)

    def delete_integration(self, organization_id: str, integration_id: str) -> None:
        if not crud_integrations.delete_integration(self.db, integration_id, organization_id):
            raise IntegrationNotFoundError(integration_id)

    # ------------------------------------------------------------------
    # OAuth2 finalisation and token access
    # ------------------------------------------------------------------

    async def finalize_oauth_flow(
        self,
        organization_id: str,
        integration_id: str,
        code: str,
        state: str,
    ) -> Dict[str, str]:
        row = self._require_row(integration_id, organization_id)
        view = to_view(row)

        if view.active:
            raise ConflictError("Integration is already active")
        if not isinstance(view.auth, OAuth2Auth):
            raise IntegrationValidationError("Integration is not OAuth2")

        auth = view.auth
        if not (auth.client_id and auth.token_endpoint and auth.redirect_uri and auth.code_verifier and auth.state):
            raise IntegrationConfigError("OAuth metadata missing for connection")

        if not hmac.compare_digest(state.encode("utf-8"), auth.state.encode("utf-8")):
            logger.warning(f"OAuth state mismatch for integration={integration_id} organization={organization_id}")
            raise InvalidStateError()

        auth.token = await self.oauth_state.exchange_authorization_code(
            base_url=view.base_url,
            token_endpoint=auth.token_endpoint,
            client_id=auth.client_id,
            client_secret=auth.client_secret,
            code=code,
            redirect_uri=auth.redirect_uri,
            code_verifier=auth.code_verifier,
            state=state,
        )

        crud_integrations.update_integration(self.db, row, active=True, auth=_encrypt_json(auth.to_payload()))
        logger.info(f"OAuth integration {integration_id} finalized for organization={organization_id}")
        return {"message": "OAuth integration finalized"}

    async def get_refreshed_oauth_integration(self, organization_id: str, integration_id: str) -> IntegrationView:
        """Return the integration with a live token, refreshing first when needed.

        Unlike the opportunistic paths, a failed refresh raises
        :class:`OAuthTokenError`: the caller is about to use the token.
        """
        row = self._require_row(integration_id, organization_id)
        view = to_view(row)
        auth = view.auth

        if not isinstance(auth, OAuth2Auth) or not auth.token:
            return view
        if not oauth.is_token_expiring(auth.token):
            return view

        if not auth.token.get("refresh_token"):
            if oauth.is_token_expired(auth.token):
                raise OAuthTokenError("Access token expired and no refresh token available")
            return view

        if not auth.token_endpoint or not auth.client_id:
            raise OAuthTokenError("OAuth metadata missing for connection")

        auth.token = await oauth.refresh_access_token(
            auth.token_endpoint,
            auth.token,
            client_id=auth.client_id,
            client_secret=auth.client_secret,
            redirect_uri=auth.redirect_uri,
            client=self.http_client,
        )
        row = crud_integrations.update_integration(self.db, row, auth=_encrypt_json(auth.to_payload()))
        logger.info(f"Refreshed OAuth token for integration={integration_id} organization={organization_id}")
        return to_view(row)

    async def _refresh_opportunistically(self, row: Integration) -> Integration:
        """Best-effort refresh used on plain reads; failures keep the stored token."""
        if row.auth_type != IntegrationAuthType.OAUTH2.value:
            return row

        try:
            auth = OAuth2Auth.from_payload(_decrypt_json(row.auth))
            if not auth.token or not auth.token_endpoint or not auth.client_id:
                return row

            new_token = await oauth.check_and_refresh_oauth(
                auth.token_endpoint,
                auth.token,
                client_id=auth.client_id,
                client_secret=auth.client_secret,
                redirect_uri=auth.redirect_uri,
                client=self.http_client,
            )
            if new_token is None or new_token is auth.token:
                return row

            auth.token = new_token
            return crud_integrations.update_integration(self.db, row, auth=_encrypt_json(auth.to_payload()))
        except MCPManagerError as exc:
            logger.warning(f"Error checking/refreshing OAuth token for integration={row.id}: {exc}")
            return row

    async def get_integration_by_id(self, integration_id: str, organization_id: str) -> Optional[IntegrationView]:
        row = crud_integrations.get_integration(self.db, integration_id, organization_id)
        if row is None:
            return None
        row = await self._refresh_opportunistically(row)
        return to_view(row)

    async def get_valid_access_token(self, integration_id: str, organization_id: str) -> Tuple[str, IntegrationView]:
        """Return ``(access_token, view)``; non-OAuth integrations yield an empty token."""
        row = self._require_row(integration_id, organization_id)
        if row.auth_type != IntegrationAuthType.OAUTH2.value:
            return "", to_view(row)

        row = await self._refresh_opportunistically(row)
        view = to_view(row)
        access_token = view.auth.access_token if isinstance(view.auth, OAuth2Auth) else None
        if not access_token:
            raise OAuthTokenError("No access token available for this integration")
        return access_token, view

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, **filters) -> List[IntegrationView]:
        return [to_view(row) for row in crud_integrations.get_integrations(self.db, **filters)]

    async def find_one(self, **filters) -> Optional[IntegrationView]:
        row = crud_integrations.find_integration(self.db, **filters)
        if row is None:
            return None
        row = await self._refresh_opportunistically(row)
        return to_view(row)

    async def validate_integration(self, data: IntegrationCreate) -> bool:
        """Probe the endpoint's tool list with the supplied credentials."""
        view = IntegrationView(
            id="",
            organization_id="",
            base_url=data.base_url,
            name=data.name or data.base_url,
            protocol=data.protocol.value,
            headers=data.headers_dict(),
            auth=build_auth_config(data),
        )
        try:
            async with MCPClient(view, http_client=self.http_client) as client:
                await client.list_tools()
            return True
        except MCPManagerError as exc:
            logger.warning(f"Integration validation against {data.base_url} failed: {exc}")
            return False

    def _require_row(self, integration_id: str, organization_id: str) -> Integration:
        row = crud_integrations.get_integration(self.db, integration_id, organization_id)
        if row is None:
            raise IntegrationNotFoundError(integration_id)
        return row
