"""Composio-hosted integrations (auth configs) and connected accounts."""

import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from mcp_manager.clients.composio import ComposioClient
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

logger = logging.getLogger(__name__)


class ComposioProvider(BaseProvider):
    name = ProviderType.COMPOSIO.value
    status_map = {
        "INITIALIZING": ConnectionStatus.PENDING,
        "INITIATED": ConnectionStatus.PENDING,
        "ACTIVE": ConnectionStatus.ACTIVE,
        "FAILED": ConnectionStatus.FAILED,
        "EXPIRED": ConnectionStatus.EXPIRED,
        "INACTIVE": ConnectionStatus.INACTIVE,
        "success": ConnectionStatus.ACTIVE,
        "error": ConnectionStatus.FAILED,
    }

    def __init__(self, *args, client: Optional[ComposioClient] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.client = client or ComposioClient(
            self.settings.composio_api_key,
            base_url=self.settings.composio_base_url,
            http_client=self.http_client,
            timeout=self.settings.http_timeout,
        )

    def _to_integration(self, item: Dict[str, Any]) -> MCPIntegration:
        toolkit = item.get("toolkit") or {}
        return MCPIntegration(
            id=item["id"],
            name=item.get("name") or toolkit.get("slug") or item["id"],
            provider=self.name,
            app_name=toolkit.get("slug") or "",
            description=item.get("description") or "",
            auth_scheme=item.get("auth_scheme"),
            logo=toolkit.get("logo"),
        )

    def _to_connection(self, item: Dict[str, Any]) -> MCPConnection:
        toolkit = item.get("toolkit") or {}
        return MCPConnection(
            id=item["id"],
            app_name=toolkit.get("slug") or "",
            status=self._status_or(item.get("status"), ConnectionStatus.PENDING),
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
        try:
            body = await self.client.list_auth_configs(app_name=filters.get("app_name"), limit=limit, cursor=cursor)
        except MCPManagerError as exc:
            logger.error(f"Composio: failed to list integrations (app_name={filters.get('app_name')}): {exc}")
            return []
        return [self._to_integration(item) for item in body.get("items") or [] if item.get("id")]

    async def get_integration(self, integration_id: str, organization_id: Optional[str] = None) -> MCPIntegration:
        self.validate_id(integration_id, "Integration")
        item = await self.client.get_auth_config(integration_id)
        return self._to_integration(item)

    async def get_integration_required_params(self, integration_id: str) -> List[MCPRequiredParam]:
        self.validate_id(integration_id, "Integration")
        item = await self.client.get_auth_config(integration_id)
        return [
            MCPRequiredParam(
                name=field["name"],
                display_name=field.get("displayName") or field.get("display_name") or field["name"],
                description=field.get("description") or "",
                type=field.get("type") or "string",
                required=bool(field.get("required", True)),
            )
            for field in item.get("expected_input_fields") or []
            if field.get("name")
        ]

    async def get_integration_tools(self, integration_id: str, organization_id: str) -> List[MCPTool]:
        self.validate_id(integration_id, "Integration")
        try:
            item = await self.client.get_auth_config(integration_id)
            app_name = (item.get("toolkit") or {}).get("slug")
            restricted = item.get("restrict_to_following_tools") or None
            body = await self.client.list_tools(app_name=app_name, tool_slugs=restricted)
        except MCPManagerError as exc:
            logger.error(
                f"Composio: failed to list tools for integration={integration_id} organization={organization_id}: {exc}"
            )
            return []

        return [
            MCPTool(
                slug=tool["slug"],
                name=tool.get("name") or tool["slug"],
                description=tool.get("description") or "",
                provider=self.name,
            )
            for tool in body.get("items") or []
            if tool.get("slug")
        ]

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def initiate_connection(self, config: MCPConnectionConfig) -> MCPConnection:
        self.validate_id(config.integration_id, "Integration")
        self.validate_id(config.organization_id, "Organization")

        required = await self.get_integration_required_params(config.integration_id)
        self.check_required_params(required, config.params)

        auth_config = await self.client.get_auth_config(config.integration_id)
        app_name = (auth_config.get("toolkit") or {}).get("slug") or ""

        callback_url = self.build_redirect_uri(
            self.settings.redirect_uri,
            {"provider": self.name, "integrationId": config.integration_id},
        )
        account = await self.client.create_connected_account(
            auth_config_id=config.integration_id,
            user_id=config.organization_id,
            auth_scheme=auth_config.get("auth_scheme"),
            callback_url=callback_url,
            params=config.params,
        )

        server = await self.client.get_mcp_server(config.integration_id)
        if server is None:
            server = await self.client.create_mcp_server(
                app_name=app_name,
                organization_id=config.organization_id,
                auth_config_id=config.integration_id,
                allowed_tools=config.allowed_tools,
            )

        logger.info(
            f"Composio: connected account {account.get('id')} for integration={config.integration_id} "
            f"organization={config.organization_id}"
        )
        return MCPConnection(
            id=account["id"],
            app_name=app_name,
            status=self._status_or(account.get("status"), ConnectionStatus.PENDING),
            auth_url=account.get("redirect_url") or account.get("redirect_uri"),
            mcp_url=self.client.mcp_url(server["id"], account["id"]),
            allowed_tools=list(config.allowed_tools),
        )

    async def get_connections(
        self,
        cursor: Optional[str] = None,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
    ) -> ConnectionPage:
        filters = filters or {}
        integration_id = filters.get("integration_id")
        organization_id = filters.get("organization_id")
        try:
            body = await self.client.list_connected_accounts(
                auth_config_ids=[integration_id] if integration_id else None,
                user_ids=[organization_id] if organization_id else None,
                limit=limit,
                cursor=cursor,
            )
        except MCPManagerError as exc:
            logger.error(f"Composio: failed to list connections (organization={organization_id}): {exc}")
            return ConnectionPage()

        items = [self._to_connection(item) for item in body.get("items") or [] if item.get("id")]
        return ConnectionPage(data=items, total=body.get("total_items", len(items)))

    async def delete_connection(self, connection_id: str) -> None:
        self.validate_id(connection_id, "Connection")
        await self.client.delete_connected_account(connection_id)
        logger.info(f"Composio: deleted connected account {connection_id}")
