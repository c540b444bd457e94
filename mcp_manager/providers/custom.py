"""User-registered MCP servers stored as custom integrations."""

import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from mcp_manager.clients.mcp_client import MCPClient
from mcp_manager.database import db_session
from mcp_manager.exceptions import IntegrationNotFoundError
from mcp_manager.exceptions import MCPManagerError
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
from mcp_manager.services.integrations import IntegrationService

logger = logging.getLogger(__name__)


class CustomProvider(BaseProvider):
    name = ProviderType.CUSTOM.value

    def _service(self, db) -> IntegrationService:
        return IntegrationService(db, self.settings, http_client=self.http_client)

    def _to_integration(self, view: IntegrationView) -> MCPIntegration:
        return MCPIntegration(
            id=view.id,
            name=view.name,
            provider=self.name,
            app_name=view.name,
            description=view.description or "",
            auth_scheme=view.auth_type.value,
            logo=view.logo_url,
            base_url=view.base_url,
            protocol=view.protocol,
            active=view.active,
        )

    async def _load(self, integration_id: str, organization_id: Optional[str]) -> IntegrationView:
        self.validate_id(integration_id, "Integration")
        if not organization_id:
            raise IntegrationNotFoundError(integration_id)
        with db_session(self.session_factory) as db:
            view = await self._service(db).get_integration_by_id(integration_id, organization_id)
        if view is None:
            raise IntegrationNotFoundError(integration_id)
        return view

    async def _list_tools(self, view: IntegrationView) -> List[MCPTool]:
        async with MCPClient(view, http_client=self.http_client, timeout=self.settings.http_timeout) as client:
            raw_tools = await client.list_tools()
        return self.tools_from_mcp(raw_tools)

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    async def get_integrations(
        self,
        cursor: Optional[str] = None,
        limit: int = 50,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[MCPIntegration]:
        organization_id = (filters or {}).get("organization_id")
        if not organization_id:
            return []
        try:
            with db_session(self.session_factory) as db:
                views = self._service(db).find(organization_id=organization_id, active=True)
        except MCPManagerError as exc:
            logger.error(f"Custom: failed to list integrations for organization={organization_id}: {exc}")
            return []
        return [self._to_integration(view) for view in views]

    async def get_integration(self, integration_id: str, organization_id: Optional[str] = None) -> MCPIntegration:
        return self._to_integration(await self._load(integration_id, organization_id))

    async def get_integration_required_params(self, integration_id: str) -> List[MCPRequiredParam]:
        return []

    async def get_integration_tools(self, integration_id: str, organization_id: str) -> List[MCPTool]:
        try:
            view = await self._load(integration_id, organization_id)
            return await self._list_tools(view)
        except MCPManagerError as exc:
            logger.error(
                f"Custom: failed to list tools for integration={integration_id} organization={organization_id}: {exc}"
            )
            return []

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def initiate_connection(self, config: MCPConnectionConfig) -> MCPConnection:
        view = await self._load(config.integration_id, config.organization_id)
        tools = await self._list_tools(view)

        allowed_tools = list(config.allowed_tools) or [tool.slug for tool in tools]
        logger.info(
            f"Custom: connected integration={view.id} organization={config.organization_id} "
            f"with {len(allowed_tools)} tools"
        )
        return MCPConnection(
            id=view.id,
            app_name=view.name,
            status=ConnectionStatus.ACTIVE.value,
            auth_url=None,
            mcp_url=view.base_url,
            allowed_tools=allowed_tools,
        )

    async def get_connections(
        self,
        cursor: Optional[str] = None,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
    ) -> ConnectionPage:
        # Connections to custom servers exist only in the local connections table.
        return ConnectionPage()
