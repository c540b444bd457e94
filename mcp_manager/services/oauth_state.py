"""Per-(organization, integration) OAuth working state.

The state row lives beside the integration row and holds the same keys as an
``oauth2`` integration payload (client credentials, discovered metadata, PKCE
verifier, ``state`` and the latest ``token``). It is written on initiation,
rewritten on every successful exchange or refresh and read before every call
that needs a live access token.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from mcp_manager.config import Settings
from mcp_manager.config import get_settings
from mcp_manager.crud import crud_oauth_state
from mcp_manager.exceptions import IntegrationValidationError
from mcp_manager.exceptions import OAuthDiscoveryError
from mcp_manager.exceptions import RedirectUriNotConfiguredError
from mcp_manager.models.enums import OAuthStatus
from mcp_manager.utils import crypto
from mcp_manager.utils import oauth

logger = logging.getLogger(__name__)


@dataclass
class OAuthInitiation:
    """Everything produced by starting an authorization-code flow."""

    auth_url: str
    client_id: str
    client_secret: Optional[str]
    resource_metadata: Dict[str, Any]
    server_metadata: Dict[str, Any]
    issuer: str
    redirect_uri: str
    code_challenge: str
    code_verifier: str
    state: str
    oauth_scopes: List[str] = field(default_factory=list)
    dynamic_registration: bool = False

    def to_state(self) -> Dict[str, Any]:
        """Serialise to the stored oauth2 payload shape (no token yet)."""
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "oauth_scopes": self.oauth_scopes,
            "dynamic_registration": self.dynamic_registration,
            "as_metadata": self.server_metadata,
            "rs_metadata": self.resource_metadata,
            "issuer": self.issuer,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.code_challenge,
            "code_verifier": self.code_verifier,
            "state": self.state,
            "token": None,
        }


def resolve_redirect_uri(settings: Settings) -> str:
    if not settings.redirect_uri:
        raise RedirectUriNotConfiguredError()
    return settings.redirect_uri


async def start_authorization(
    *,
    base_url: str,
    redirect_uri: str,
    oauth_scopes: Optional[List[str]] = None,
    dynamic_registration: bool = False,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> OAuthInitiation:
    """Discover, resolve client credentials, generate PKCE + state and build the URL.

    A supplied ``client_id`` is used as is unless ``dynamic_registration`` is
    set. Without one, the server must advertise a registration endpoint.
    """
    discovery = await oauth.discover_oauth(base_url, client=http_client)

    if not discovery.authorization_endpoint or not discovery.token_endpoint:
        raise OAuthDiscoveryError("Missing authorization or token endpoints")

    scopes = list(oauth_scopes or [])
    wants_registration = dynamic_registration or not client_id

    if wants_registration and discovery.registration_endpoint:
        registered = await oauth.register_oauth_client(
            discovery.registration_endpoint,
            redirect_uri,
            scopes,
            client=http_client,
        )
        client_id = registered.client_id
        client_secret = registered.client_secret
    elif not client_id:
        raise IntegrationValidationError(
            "A client_id is required, and dynamic client registration is not supported."
        )

    pkce = oauth.generate_pkce()
    state = oauth.generate_state()

    auth_url = oauth.build_authorization_url(
        discovery.authorization_endpoint,
        client_id,
        redirect_uri,
        pkce.challenge,
        state,
        base_url,
        scopes,
    )

    return OAuthInitiation(
        auth_url=auth_url,
        client_id=client_id,
        client_secret=client_secret,
        resource_metadata=discovery.resource_metadata,
        server_metadata=discovery.server_metadata,
        issuer=discovery.issuer,
        redirect_uri=redirect_uri,
        code_challenge=pkce.challenge,
        code_verifier=pkce.verifier,
        state=state,
        oauth_scopes=scopes,
        dynamic_registration=bool(dynamic_registration),
    )


class OAuthStateService:
    """Read/write the encrypted OAuth state row for an integration."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.http_client = http_client

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_oauth_status(self, organization_id: str, integration_id: str) -> Optional[str]:
        row = crud_oauth_state.get_oauth_state(self.db, organization_id, integration_id)
        if row is None or not row.status:
            return None
        return row.status

    def get_oauth_state(self, organization_id: str, integration_id: str) -> Optional[Dict[str, Any]]:
        row = crud_oauth_state.get_oauth_state(self.db, organization_id, integration_id)
        if row is None or not row.auth:
            return None
        return json.loads(crypto.decrypt(row.auth))

    def save_oauth_state(
        self,
        organization_id: str,
        integration_id: str,
        status: OAuthStatus | str,
        state: Dict[str, Any],
    ) -> None:
        status_value = status.value if isinstance(status, OAuthStatus) else str(status)
        crud_oauth_state.upsert_oauth_state(
            self.db,
            organization_id=organization_id,
            integration_id=integration_id,
            status=status_value,
            auth=crypto.encrypt(json.dumps(state)),
        )

    def delete_oauth_state(self, organization_id: str, integration_id: str) -> None:
        crud_oauth_state.delete_oauth_state(self.db, organization_id, integration_id)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def refresh_oauth_state_if_needed(
        self,
        organization_id: str,
        integration_id: str,
        state: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Refresh the stored token when it is close to expiry.

        Opportunistic: any failure leaves *state* untouched and is only logged.
        """
        token = state.get("token")
        token_endpoint = (state.get("as_metadata") or {}).get("token_endpoint")
        client_id = state.get("client_id")
        redirect_uri = state.get("redirect_uri")

        if not token or not token_endpoint or not redirect_uri or not client_id:
            return state

        new_token = await oauth.check_and_refresh_oauth(
            token_endpoint,
            token,
            client_id=client_id,
            client_secret=state.get("client_secret"),
            redirect_uri=redirect_uri,
            client=self.http_client,
        )
        if new_token is None or new_token is token:
            return state

        refreshed = {**state, "token": new_token}
        self.save_oauth_state(organization_id, integration_id, OAuthStatus.ACTIVE, refreshed)
        logger.info(f"Refreshed OAuth token for organization={organization_id} integration={integration_id}")
        return refreshed

    async def refresh_integration_oauth_if_needed(
        self,
        organization_id: str,
        integration_id: str,
        integration_config: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Refresh the state row belonging to an oauth2 integration.

        Client credentials missing from the state row are taken from
        *integration_config*, the decrypted auth payload of the integration.
        Returns ``None`` when the organization has no state row.
        """
        state = self.get_oauth_state(organization_id, integration_id)
        if state is None:
            return None

        merged = {
            **state,
            "client_id": state.get("client_id") or integration_config.get("client_id"),
            "client_secret": state.get("client_secret") or integration_config.get("client_secret"),
        }
        return await self.refresh_oauth_state_if_needed(organization_id, integration_id, merged)

    async def initiate_oauth(
        self,
        base_url: str,
        oauth_scopes: Optional[List[str]] = None,
        dynamic_registration: bool = False,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> OAuthInitiation:
        return await start_authorization(
            base_url=base_url,
            redirect_uri=resolve_redirect_uri(self.settings),
            oauth_scopes=oauth_scopes,
            dynamic_registration=dynamic_registration,
            client_id=client_id,
            client_secret=client_secret,
            http_client=self.http_client,
        )

    async def exchange_authorization_code(
        self,
        *,
        base_url: str,
        token_endpoint: str,
        client_id: str,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        state: str,
        client_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await oauth.exchange_code_for_tokens(
            token_endpoint,
            client_id=client_id,
            client_secret=client_secret,
            code=code,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            resource=oauth.canonical_resource_uri(base_url),
            state=state,
            client=self.http_client,
        )
