"""Kodus MCP: the built-in Kodus server plus operator-managed MCP servers.

Managed servers come from a JSON file (``API_MCP_MANAGER_MANAGED_SERVERS_PATH``
or the packaged ``config/managed_mcp_servers.json``). They are shared by every
organization; OAuth2 managed servers keep a per-organization state row written
by :meth:`KodusMCPProvider.initiate_managed_oauth` and
:meth:`KodusMCPProvider.finalize_managed_oauth`.
"""

import hmac
import json
import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import jsonschema

from mcp_manager.clients.mcp_client import MCPClient
from mcp_manager.database import db_session
from mcp_manager.exceptions import ConfigurationError
from mcp_manager.exceptions import IntegrationConfigError
from mcp_manager.exceptions import IntegrationNotFoundError
from mcp_manager.exceptions import IntegrationValidationError
from mcp_manager.exceptions import InvalidStateError
from mcp_manager.exceptions import MCPManagerError
from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.models.enums import IntegrationProtocol
from mcp_manager.models.enums import OAuthStatus
from mcp_manager.providers import kodus_catalog
from mcp_manager.providers.base import BaseProvider
from mcp_manager.providers.types import ConnectionPage
from mcp_manager.providers.types import ConnectionStatus
from mcp_manager.providers.types import MCPConnection
from mcp_manager.providers.types import MCPConnectionConfig
from mcp_manager.providers.types import MCPIntegration
from mcp_manager.providers.types import MCPRequiredParam
from mcp_manager.providers.types import MCPTool
from mcp_manager.providers.types import ProviderType
from mcp_manager.schemas.integration import IntegrationView
from mcp_manager.schemas.integration import OAuth2Auth
from mcp_manager.services.integrations import auth_from_payload
from mcp_manager.services.oauth_state import OAuthStateService

logger = logging.getLogger(__name__)

DEFAULT_MANAGED_SERVERS_PATH = Path(__file__).resolve().parent.parent / "config" / "managed_mcp_servers.json"

MANAGED_SERVERS_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["id", "name", "base_url"],
        "additionalProperties": False,
        "properties": {
            "id": {"type": "string", "minLength": 1},
            "name": {"type": "string", "minLength": 1},
            "base_url": {"type": "string", "minLength": 1},
            "description": {"type": "string"},
            "protocol": {"enum": [IntegrationProtocol.HTTP.value, IntegrationProtocol.SSE.value]},
            "logo_url": {"type": "string"},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "allowed_tools": {"type": "array", "items": {"type": "string"}},
            "auth": {
                "type": "object",
                "required": ["type"],
                "properties": {"type": {"enum": [auth_type.value for auth_type in IntegrationAuthType]}},
            },
        },
    },
}


@dataclass
class ManagedServer:
    id: str
    name: str
    base_url: str
    description: str = ""
    protocol: str = IntegrationProtocol.HTTP.value
    logo_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    allowed_tools: List[str] = field(default_factory=list)
    auth: Dict[str, Any] = field(default_factory=lambda: {"type": IntegrationAuthType.NONE.value})

    @property
    def auth_type(self) -> str:
        return self.auth.get("type", IntegrationAuthType.NONE.value)

    @property
    def is_oauth(self) -> bool:
        return self.auth_type == IntegrationAuthType.OAUTH2.value


def load_managed_servers(path: Optional[str] = None) -> Dict[str, ManagedServer]:
    """Read and validate the managed server list, keyed by id."""
    source = Path(path) if path else DEFAULT_MANAGED_SERVERS_PATH
    if not source.exists():
        logger.info(f"No managed MCP servers file at {source}")
        return {}

    try:
        entries = json.loads(source.read_text(encoding="utf-8"))
        jsonschema.validate(instance=entries, schema=MANAGED_SERVERS_SCHEMA)
    except (ValueError, jsonschema.ValidationError) as exc:
        raise ConfigurationError(f"Invalid managed MCP servers file {source}: {exc}") from exc

    servers = {entry["id"]: ManagedServer(**entry) for entry in entries}
    logger.info(f"Loaded {len(servers)} managed MCP servers from {source}")
    return servers


class KodusMCPProvider(BaseProvider):
    name = ProviderType.KODUSMCP.value

    def __init__(self, *args, managed_servers: Optional[Dict[str, ManagedServer]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        if managed_servers is None:
            managed_servers = load_managed_servers(self.settings.managed_servers_path)
        self.managed_servers = managed_servers

    def _oauth_state(self, db) -> OAuthStateService:
        return OAuthStateService(db, self.settings, http_client=self.http_client)

    def _managed(self, integration_id: str) -> ManagedServer:
        server = self.managed_servers.get(integration_id)
        if server is None:
            raise IntegrationNotFoundError(integration_id)
        return server

    # ------------------------------------------------------------------
    # Managed server views
    # ------------------------------------------------------------------

    async def _managed_view(self, server: ManagedServer, organization_id: str) -> IntegrationView:
        config = {key: value for key, value in server.auth.items() if key != "type"}

        if not server.is_oauth:
            return IntegrationView(
                id=server.id,
                organization_id=organization_id,
                base_url=server.base_url,
                name=server.name,
                auth=auth_from_payload(server.auth_type, config),
                protocol=server.protocol,
                provider=self.name,
                description=server.description,
                logo_url=server.logo_url,
                headers=dict(server.headers),
            )

        with db_session(self.session_factory) as db:
            oauth_state = self._oauth_state(db)
            status = oauth_state.get_oauth_status(organization_id, server.id)
            state = await oauth_state.refresh_integration_oauth_if_needed(organization_id, server.id, config)

        return IntegrationView(
            id=server.id,
            organization_id=organization_id,
            base_url=server.base_url,
            name=server.name,
            auth=OAuth2Auth.from_payload({**config, **(state or {})}),
            active=status == OAuthStatus.ACTIVE.value,
            protocol=server.protocol,
            provider=self.name,
            description=server.description,
            logo_url=server.logo_url,
            headers=dict(server.headers),
        )

    async def _safe_tools(self, view: IntegrationView) -> List[MCPTool]:
        try:
            async with MCPClient(view, http_client=self.http_client, timeout=self.settings.http_timeout) as client:
                raw_tools = await client.list_tools()
        except MCPManagerError as exc:
            logger.warning(
                f"Kodus MCP: failed to list tools of managed server={view.id} organization={view.organization_id}: {exc}"
            )
            return []

        tools = self.tools_from_mcp(raw_tools)
        for tool in tools:
            tool.warning = kodus_catalog.has_warning(tool.name)
        return tools

    async def _managed_integration(self, server: ManagedServer, organization_id: str) -> MCPIntegration:
        view = await self._managed_view(server, organization_id)
        allowed_tools = list(server.allowed_tools)
        if view.active and not allowed_tools:
            allowed_tools = [tool.slug for tool in await self._safe_tools(view)]
        return MCPIntegration(
            id=server.id,
            name=server.name,
            provider=self.name,
            app_name=server.name,
            description=server.description,
            auth_scheme=server.auth_type,
            logo=server.logo_url,
            base_url=server.base_url,
            protocol=server.protocol,
            active=view.active,
            allowed_tools=allowed_tools,
        )

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    async def get_integrations(
        self,
        cursor: Optional[str] = None,
        limit: int = 50,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[MCPIntegration]:
        filters = filters or {}
        organization_id = filters.get("organization_id")
        self.validate_id(organization_id, "Organization")

        items = [kodus_catalog.default_integration()]
        for server in self.managed_servers.values():
            items.append(await self._managed_integration(server, organization_id))

        app_name = filters.get("app_name")
        if app_name:
            items = [item for item in items if item.app_name == app_name]
        return items

    async def get_integration(self, integration_id: str, organization_id: Optional[str] = None) -> MCPIntegration:
        self.validate_id(integration_id, "Integration")
        if integration_id == kodus_catalog.DEFAULT_INTEGRATION_ID:
            return kodus_catalog.default_integration()
        server = self._managed(integration_id)
        self.validate_id(organization_id, "Organization")
        return await self._managed_integration(server, organization_id)

    async def get_integration_required_params(self, integration_id: str) -> List[MCPRequiredParam]:
        return []

    async def get_integration_tools(self, integration_id: str, organization_id: str) -> List[MCPTool]:
        self.validate_id(integration_id, "Integration")
        if integration_id == kodus_catalog.DEFAULT_INTEGRATION_ID:
            return kodus_catalog.default_tools()
        server = self._managed(integration_id)
        return await self._safe_tools(await self._managed_view(server, organization_id))

    async def update_selected_tools(
        self,
        integration_id: str,
        organization_id: str,
        selected_tools: List[str],
    ) -> Dict[str, Any]:
        if integration_id in self.managed_servers:
            message = "Selected tools updated for managed Kodus MCP integration."
        else:
            message = "Selected tools updated successfully"
        logger.info(
            f"Kodus MCP: {len(selected_tools)} tools selected for integration={integration_id} "
            f"organization={organization_id}"
        )
        return {"success": True, "message": message, "selected_tools": list(selected_tools)}

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def initiate_connection(self, config: MCPConnectionConfig) -> MCPConnection:
        self.validate_id(config.integration_id, "Integration")
        self.validate_id(config.organization_id, "Organization")

        if config.integration_id not in self.managed_servers:
            raise IntegrationValidationError(
                f"Integration {config.integration_id} cannot be connected through the Kodus MCP provider"
            )

        server = self.managed_servers[config.integration_id]
        allowed_tools = list(config.allowed_tools) or list(server.allowed_tools)
        if not allowed_tools:
            view = await self._managed_view(server, config.organization_id)
            allowed_tools = [tool.slug for tool in await self._safe_tools(view)]

        return MCPConnection(
            id=server.id,
            app_name=server.name,
            status=ConnectionStatus.ACTIVE.value,
            auth_url=None,
            mcp_url=server.base_url,
            allowed_tools=allowed_tools,
        )

    async def get_connections(
        self,
        cursor: Optional[str] = None,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
    ) -> ConnectionPage:
        return ConnectionPage()

    # ------------------------------------------------------------------
    # Managed OAuth
    # ------------------------------------------------------------------

    async def initiate_managed_oauth(self, organization_id: str, integration_id: str) -> str:
        server = self._managed(integration_id)
        if not server.is_oauth:
            raise IntegrationValidationError("Integration is not OAuth2")

        with db_session(self.session_factory) as db:
            oauth_state = self._oauth_state(db)
            initiation = await oauth_state.initiate_oauth(
                server.base_url,
                oauth_scopes=server.auth.get("oauth_scopes") or [],
                dynamic_registration=bool(server.auth.get("dynamic_registration")),
                client_id=server.auth.get("client_id"),
                client_secret=server.auth.get("client_secret"),
            )
            oauth_state.save_oauth_state(organization_id, integration_id, OAuthStatus.PENDING, initiation.to_state())

        logger.info(f"Kodus MCP: OAuth started for managed server={integration_id} organization={organization_id}")
        return initiation.auth_url

    async def finalize_managed_oauth(
        self,
        organization_id: str,
        integration_id: str,
        code: str,
        state: str,
    ) -> Dict[str, str]:
        server = self._managed(integration_id)
        if not server.is_oauth:
            raise IntegrationValidationError("Integration is not OAuth2")

        with db_session(self.session_factory) as db:
            oauth_state = self._oauth_state(db)
            stored = oauth_state.get_oauth_state(organization_id, integration_id)
            auth = OAuth2Auth.from_payload(stored or {})
            if not (auth.client_id and auth.token_endpoint and auth.redirect_uri and auth.code_verifier and auth.state):
                raise IntegrationConfigError("OAuth metadata missing for connection")

            if not hmac.compare_digest(state.encode("utf-8"), auth.state.encode("utf-8")):
                logger.warning(
                    f"Kodus MCP: OAuth state mismatch for managed server={integration_id} organization={organization_id}"
                )
                raise InvalidStateError()

            auth.token = await oauth_state.exchange_authorization_code(
                base_url=server.base_url,
                token_endpoint=auth.token_endpoint,
                client_id=auth.client_id,
                client_secret=auth.client_secret,
                code=code,
                redirect_uri=auth.redirect_uri,
                code_verifier=auth.code_verifier,
                state=state,
            )
            oauth_state.save_oauth_state(organization_id, integration_id, OAuthStatus.ACTIVE, auth.to_payload())

        logger.info(f"Kodus MCP: OAuth finalized for managed server={integration_id} organization={organization_id}")
        return {"message": "OAuth integration finalized"}
