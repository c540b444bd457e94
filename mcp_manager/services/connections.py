"""Connection orchestration across providers.

Routers talk to :class:`ConnectionService` only. It owns the local
``mcp_connections`` table, dispatches to provider adapters by name and wraps
the custom-integration store for the ``/integration`` endpoints.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

import httpx
from sqlalchemy.orm import Session

from mcp_manager.clients.mcp_client import build_auth_headers
from mcp_manager.config import Settings
from mcp_manager.crud import crud_connections
from mcp_manager.exceptions import ConflictError
from mcp_manager.exceptions import ConnectionNotFoundError
from mcp_manager.exceptions import IntegrationNotFoundError
from mcp_manager.exceptions import IntegrationValidationError
from mcp_manager.models.connection import Connection
from mcp_manager.models.enums import ConnectionStatus
from mcp_manager.models.enums import ProviderType
from mcp_manager.providers import kodus_catalog
from mcp_manager.providers.factory import ProviderFactory
from mcp_manager.providers.kodusmcp import KodusMCPProvider
from mcp_manager.providers.types import MCPConnectionConfig
from mcp_manager.providers.types import MCPIntegration
from mcp_manager.providers.types import MCPRequiredParam
from mcp_manager.providers.types import MCPTool
from mcp_manager.schemas.integration import IntegrationView
from mcp_manager.schemas.mcp import FinalizeOAuthRequest
from mcp_manager.schemas.mcp import InitiateConnectionRequest
from mcp_manager.schemas.mcp import IntegrationCreate
from mcp_manager.schemas.mcp import UpdateConnectionRequest
from mcp_manager.services.integrations import IntegrationService
from mcp_manager.services.oauth_state import OAuthStateService

logger = logging.getLogger(__name__)

REMOTE_CONNECTION_PREFIX = "ca_"


def connection_to_dict(connection: Connection) -> Dict[str, Any]:
    return {
        "id": connection.id,
        "organization_id": connection.organization_id,
        "integration_id": connection.integration_id,
        "provider": connection.provider,
        "status": connection.status,
        "app_name": connection.app_name,
        "mcp_url": connection.mcp_url,
        "allowed_tools": list(connection.allowed_tools or []),
        "metadata": dict(connection.metadata_ or {}),
        "created_at": connection.created_at.isoformat() if connection.created_at else None,
        "updated_at": connection.updated_at.isoformat() if connection.updated_at else None,
    }


def _connection_summary(connection: Connection) -> Dict[str, Any]:
    return {
        "id": connection.id,
        "integration_id": connection.integration_id,
        "app_name": connection.app_name,
        "status": connection.status,
        "mcp_url": connection.mcp_url,
        "allowed_tools": list(connection.allowed_tools or []),
    }


def _is_default_kodus(item: MCPIntegration) -> bool:
    return item.provider == ProviderType.KODUSMCP.value and item.is_default


class ConnectionService:
    def __init__(
        self,
        db: Session,
        factory: ProviderFactory,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.factory = factory
        self.settings = settings or factory.settings
        self.integrations = IntegrationService(db, self.settings, http_client=http_client)
        self.oauth_state = OAuthStateService(db, self.settings, http_client=http_client)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get_connections(
        self,
        organization_id: str,
        page: int = 1,
        page_size: int = 50,
        *,
        provider: Optional[str] = None,
        status: Optional[str] = None,
        integration_id: Optional[str] = None,
        app_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        rows, total = crud_connections.get_connections(
            self.db,
            organization_id=organization_id,
            provider=provider,
            status=status,
            integration_id=integration_id,
            app_name=app_name,
            skip=(page - 1) * page_size,
            limit=page_size,
        )
        return {"items": [connection_to_dict(row) for row in rows], "total": total}

    def get_connection(self, connection_id: str, organization_id: str) -> Optional[Connection]:
        """Look up by local id, then by the provider's id for remote-style ids."""
        connection = crud_connections.get_connection(self.db, connection_id, organization_id)
        if connection is None and connection_id.startswith(REMOTE_CONNECTION_PREFIX):
            connection = crud_connections.get_connection_by_remote_id(self.db, organization_id, connection_id)
        return connection

    async def initiate_connection(
        self,
        organization_id: str,
        provider_name: str,
        body: InitiateConnectionRequest,
    ) -> Dict[str, Any]:
        provider = self.factory.get_provider(provider_name)
        response = await provider.initiate_connection(
            MCPConnectionConfig(
                integration_id=body.integration_id,
                organization_id=organization_id,
                allowed_tools=list(body.allowed_tools),
                params=dict(body.auth_params),
            )
        )

        fields = {
            "status": response.status,
            "provider": provider_name,
            "app_name": response.app_name,
            "mcp_url": response.mcp_url,
            "allowed_tools": response.allowed_tools,
            "metadata": {"connection": response.to_dict()},
        }
        existing = crud_connections.get_connection_for_integration(self.db, organization_id, body.integration_id)
        if existing is not None:
            connection = crud_connections.update_connection(self.db, existing, **fields)
        else:
            connection = crud_connections.create_connection(
                self.db,
                organization_id=organization_id,
                integration_id=body.integration_id,
                **fields,
            )

        logger.info(
            f"Connection {connection.id} ({response.status}) for integration={body.integration_id} "
            f"provider={provider_name} organization={organization_id}"
        )
        return connection_to_dict(connection)

    def update_connection(self, organization_id: str, body: UpdateConnectionRequest) -> Dict[str, Any]:
        connection = crud_connections.get_connection_for_integration(self.db, organization_id, body.integration_id)
        if connection is None:
            raise ConnectionNotFoundError()

        status = connection.status
        if body.status:
            status = self.factory.get_provider(connection.provider).translate_status(body.status).value

        metadata = {**(connection.metadata_ or {}), **(body.metadata or {})}
        if body.status:
            metadata["connection"] = {**(metadata.get("connection") or {}), "status": status}

        connection = crud_connections.update_connection(self.db, connection, status=status, metadata=metadata)
        return connection_to_dict(connection)

    async def delete_connection(self, connection_id: str, organization_id: str) -> Dict[str, str]:
        connection = self.get_connection(connection_id, organization_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection with ID {connection_id} not found")

        remote = (connection.metadata_ or {}).get("connection") or {}
        remote_id = remote.get("id") or connection_id
        if self.factory.has_provider(connection.provider):
            await self.factory.get_provider(connection.provider).delete_connection(remote_id)

        self.oauth_state.delete_oauth_state(organization_id, connection.integration_id)
        crud_connections.delete_connection(self.db, connection)
        logger.info(f"Deleted connection {connection.id} for organization={organization_id}")
        return {"message": "Connection deleted successfully"}

    # ------------------------------------------------------------------
    # Tool selection
    # ------------------------------------------------------------------

    def update_allowed_tools(
        self,
        integration_id: str,
        organization_id: str,
        allowed_tools: List[str],
    ) -> Dict[str, Any]:
        connection = crud_connections.get_connection_for_integration(self.db, organization_id, integration_id)
        if connection is None:
            raise ConnectionNotFoundError()

        connection = crud_connections.update_connection(self.db, connection, allowed_tools=allowed_tools)
        return {
            "message": "Allowed tools updated successfully",
            "connection": {
                "id": connection.id,
                "integration_id": connection.integration_id,
                "allowed_tools": list(connection.allowed_tools or []),
            },
        }

    def get_selected_tools(self, integration_id: str, provider_name: str, organization_id: str) -> List[str]:
        self.factory.get_provider(provider_name)
        connection = crud_connections.get_connection_for_integration(self.db, organization_id, integration_id)
        return list(connection.allowed_tools or []) if connection else []

    async def update_selected_tools(
        self,
        integration_id: str,
        provider_name: str,
        organization_id: str,
        selected_tools: List[str],
    ) -> Dict[str, Any]:
        provider = self.factory.get_provider(provider_name)
        result = await provider.update_selected_tools(integration_id, organization_id, selected_tools)
        if result is None:
            return self.update_allowed_tools(integration_id, organization_id, selected_tools)

        connection = crud_connections.get_connection_for_integration(self.db, organization_id, integration_id)
        if connection is not None:
            crud_connections.update_connection(self.db, connection, allowed_tools=selected_tools)
        return result

    # ------------------------------------------------------------------
    # Integration catalog
    # ------------------------------------------------------------------

    async def get_integrations(
        self,
        organization_id: str,
        page: int = 1,
        page_size: int = 50,
        app_name: Optional[str] = None,
    ) -> List[MCPIntegration]:
        """List integrations of every enabled provider, joined with local connections.

        Strict: a provider that raises fails the whole listing.
        """
        filters = {"app_name": app_name, "organization_id": organization_id}
        cursor = str(page) if page > 1 else None
        results = await asyncio.gather(
            *(provider.get_integrations(cursor, page_size, filters) for provider in self.factory.get_providers())
        )
        items = [item for result in results for item in result]

        rows, _ = crud_connections.get_connections(self.db, organization_id=organization_id)
        by_integration = {row.integration_id: row for row in rows}

        for item in items:
            self._apply_connection(item, by_integration.get(item.id))
        return items

    async def get_integration(self, integration_id: str, provider_name: str, organization_id: str) -> MCPIntegration:
        provider = self.factory.get_provider(provider_name)
        item = await provider.get_integration(integration_id, organization_id)
        item.required_params = await provider.get_integration_required_params(integration_id)

        connection = crud_connections.get_connection_for_integration(self.db, organization_id, integration_id)
        self._apply_connection(item, connection)
        return item

    @staticmethod
    def _apply_connection(item: MCPIntegration, connection: Optional[Connection]) -> None:
        if _is_default_kodus(item):
            item.is_connected = True
            item.connection_status = ConnectionStatus.ACTIVE.value
        elif connection is not None:
            item.is_connected = True
            item.connection_status = connection.status
            if connection.allowed_tools:
                item.allowed_tools = list(connection.allowed_tools)
        else:
            item.is_connected = False
            item.connection_status = None

    async def get_integration_required_params(self, integration_id: str, provider_name: str) -> List[MCPRequiredParam]:
        return await self.factory.get_provider(provider_name).get_integration_required_params(integration_id)

    async def get_integration_tools(self, integration_id: str, provider_name: str, organization_id: str) -> List[MCPTool]:
        return await self.factory.get_provider(provider_name).get_integration_tools(integration_id, organization_id)

    # ------------------------------------------------------------------
    # Custom integrations
    # ------------------------------------------------------------------

    def get_custom_integrations(self, organization_id: str, active: Optional[bool] = True) -> List[IntegrationView]:
        return self.integrations.find(organization_id=organization_id, active=active)

    async def get_custom_integration(
        self,
        organization_id: str,
        integration_id: str,
        active: Optional[bool] = True,
    ) -> IntegrationView:
        view = await self.integrations.find_one(id=integration_id, organization_id=organization_id, active=active)
        if view is None:
            raise IntegrationNotFoundError(integration_id)
        return view

    async def get_custom_integration_connection_config(self, organization_id: str, integration_id: str) -> Dict[str, Any]:
        """Everything an MCP client needs to call the server, with a live token."""
        view = await self.integrations.get_refreshed_oauth_integration(organization_id, integration_id)
        return {
            "id": view.id,
            "name": view.name,
            "base_url": view.base_url,
            "protocol": view.protocol,
            "headers": build_auth_headers(view),
        }

    async def get_custom_integration_access_token(self, organization_id: str, integration_id: str) -> Dict[str, Any]:
        access_token, view = await self.integrations.get_valid_access_token(integration_id, organization_id)
        return {"id": view.id, "access_token": access_token or None}

    async def validate_custom_integration(self, data: IntegrationCreate) -> Dict[str, Any]:
        return {"valid": await self.integrations.validate_integration(data)}

    async def create_integration(
        self,
        organization_id: str,
        provider_name: str,
        data: IntegrationCreate,
    ) -> Union[IntegrationView, Dict[str, Any]]:
        if provider_name == ProviderType.KODUSMCP.value:
            return self.create_kodus_mcp_integration(organization_id, data.integration_id, data.base_url)

        if provider_name == ProviderType.CUSTOM.value:
            if not data.name:
                raise IntegrationValidationError("name, auth_type and protocol are required")
            return await self.integrations.create_integration(organization_id, data)

        raise IntegrationValidationError(f"Provider type {provider_name} not supported")

    def create_kodus_mcp_integration(
        self,
        organization_id: str,
        integration_id: Optional[str],
        base_url: Optional[str],
    ) -> Dict[str, Any]:
        if not integration_id:
            raise IntegrationValidationError("integration_id is required in request body")

        existing = crud_connections.get_connection_for_integration(
            self.db,
            organization_id,
            integration_id,
            provider=ProviderType.KODUSMCP.value,
        )
        if existing is not None:
            return {
                "message": "Kodus MCP integration already exists for this organization",
                "connection": _connection_summary(existing),
            }

        connection = crud_connections.create_connection(
            self.db,
            organization_id=organization_id,
            integration_id=integration_id,
            provider=ProviderType.KODUSMCP.value,
            status=ConnectionStatus.ACTIVE.value,
            app_name=kodus_catalog.DEFAULT_INTEGRATION_NAME,
            mcp_url=base_url,
            allowed_tools=kodus_catalog.default_tool_slugs(),
            metadata={
                "description": kodus_catalog.DEFAULT_INTEGRATION_DESCRIPTION,
                "auto_created": True,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(f"Created Kodus MCP connection {connection.id} for organization={organization_id}")
        return {
            "message": "Kodus MCP integration created successfully",
            "connection": _connection_summary(connection),
        }

    async def edit_integration(
        self,
        organization_id: str,
        provider_name: str,
        integration_id: str,
        data: IntegrationCreate,
    ) -> IntegrationView:
        if provider_name != ProviderType.CUSTOM.value:
            raise IntegrationValidationError("Editing integrations is only supported for custom provider type")
        return await self.integrations.edit_integration(organization_id, integration_id, data)

    def delete_integration(self, organization_id: str, provider_name: str, integration_id: str) -> Dict[str, str]:
        if provider_name != ProviderType.CUSTOM.value:
            raise IntegrationValidationError("Deleting integrations is only supported for custom provider type")

        _, live_connections = crud_connections.get_connections(
            self.db,
            organization_id=organization_id,
            integration_id=integration_id,
        )
        if live_connections:
            raise ConflictError(
                "Cannot delete integration with active connections. Please delete associated connections first."
            )

        self.integrations.delete_integration(organization_id, integration_id)
        self.oauth_state.delete_oauth_state(organization_id, integration_id)
        return {"message": "Integration deleted successfully"}

    # ------------------------------------------------------------------
    # OAuth by provider
    # ------------------------------------------------------------------

    def _kodus_provider(self) -> KodusMCPProvider:
        provider = self.factory.get_provider(ProviderType.KODUSMCP.value)
        if not isinstance(provider, KodusMCPProvider):
            raise IntegrationValidationError("Provider kodusmcp does not support OAuth flow")
        return provider

    async def initiate_oauth_integration(
        self,
        organization_id: str,
        provider_name: str,
        integration_id: str,
    ) -> Dict[str, str]:
        if provider_name == ProviderType.CUSTOM.value:
            auth_url = await self.integrations.initiate_oauth_flow(organization_id, integration_id)
        elif provider_name == ProviderType.KODUSMCP.value:
            auth_url = await self._kodus_provider().initiate_managed_oauth(organization_id, integration_id)
        else:
            raise IntegrationValidationError(f"Provider {provider_name} does not support OAuth flow")
        return {"auth_url": auth_url}

    async def finalize_oauth_integration(
        self,
        organization_id: str,
        provider_name: str,
        body: FinalizeOAuthRequest,
    ) -> Dict[str, str]:
        if provider_name == ProviderType.CUSTOM.value:
            return await self.integrations.finalize_oauth_flow(
                organization_id, body.integration_id, body.code, body.state
            )
        if provider_name == ProviderType.KODUSMCP.value:
            return await self._kodus_provider().finalize_managed_oauth(
                organization_id, body.integration_id, body.code, body.state
            )
        raise IntegrationValidationError(f"Provider {provider_name} does not support OAuth flow")
