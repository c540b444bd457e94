"""Provider adapter contract.

Every backend (Composio, Smithery templates, custom servers, the Kodus MCP
catalog) implements :class:`BaseProvider`. Dispatch happens by name through
:class:`~mcp_manager.providers.factory.ProviderFactory`.

Failure policy: listing calls that merely read may degrade to an empty result;
single lookups and mutations always propagate.
"""

from __future__ import annotations

import logging
from abc import ABC
from abc import abstractmethod
from typing import Any
from typing import ClassVar
from typing import Dict
from typing import List
from typing import Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import sessionmaker

from mcp_manager.config import Settings
from mcp_manager.config import get_settings
from mcp_manager.database import get_session_factory
from mcp_manager.exceptions import InvalidStatusError
from mcp_manager.exceptions import MissingParamsError
from mcp_manager.exceptions import ValidationError
from mcp_manager.providers.types import ConnectionPage
from mcp_manager.providers.types import ConnectionStatus
from mcp_manager.providers.types import MCPConnection
from mcp_manager.providers.types import MCPConnectionConfig
from mcp_manager.providers.types import MCPIntegration
from mcp_manager.providers.types import MCPRequiredParam
from mcp_manager.providers.types import MCPTool

logger = logging.getLogger(__name__)

_INTERNAL_STATUSES = {status.value for status in ConnectionStatus}


class BaseProvider(ABC):
    name: ClassVar[str]
    status_map: ClassVar[Dict[str, ConnectionStatus]] = {
        "ACTIVE": ConnectionStatus.ACTIVE,
        "INACTIVE": ConnectionStatus.INACTIVE,
        "FAILED": ConnectionStatus.FAILED,
    }

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.http_client = http_client

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_integrations(
        self,
        cursor: Optional[str] = None,
        limit: int = 50,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[MCPIntegration]: ...

    @abstractmethod
    async def get_integration(self, integration_id: str, organization_id: Optional[str] = None) -> MCPIntegration: ...

    @abstractmethod
    async def get_integration_required_params(self, integration_id: str) -> List[MCPRequiredParam]: ...

    @abstractmethod
    async def get_integration_tools(self, integration_id: str, organization_id: str) -> List[MCPTool]: ...

    @abstractmethod
    async def initiate_connection(self, config: MCPConnectionConfig) -> MCPConnection: ...

    @abstractmethod
    async def get_connections(
        self,
        cursor: Optional[str] = None,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
    ) -> ConnectionPage: ...

    async def delete_connection(self, connection_id: str) -> None:
        """Remove the remote side of a connection. Most providers keep none."""

    async def update_selected_tools(
        self,
        integration_id: str,
        organization_id: str,
        selected_tools: List[str],
    ) -> Optional[Dict[str, Any]]:
        """Provider-specific handling of a tool selection.

        ``None`` means the provider has none and the selection is stored as
        the connection's allowed tools.
        """
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def translate_status(self, value: str) -> ConnectionStatus:
        """Map a backend status onto :class:`ConnectionStatus`.

        Values that are already internal statuses pass through unchanged;
        anything else unknown is rejected.
        """
        if value in self.status_map:
            return self.status_map[value]
        if value in _INTERNAL_STATUSES:
            return ConnectionStatus(value)
        raise InvalidStatusError(self.name, value)

    def _status_or(self, value: Optional[str], default: ConnectionStatus) -> str:
        try:
            return self.translate_status(value).value if value else default.value
        except InvalidStatusError:
            logger.warning(f"{self.name}: unknown status '{value}', using {default.value}")
            return default.value

    @staticmethod
    def validate_id(value: Optional[str], name: str) -> None:
        if not value:
            raise ValidationError(f"{name} ID is required")

    @staticmethod
    def build_redirect_uri(redirect_uri: Optional[str], params: Dict[str, Any]) -> Optional[str]:
        if not redirect_uri:
            return None
        return f"{redirect_uri}?{urlencode(params)}"

    @staticmethod
    def check_required_params(required: List[MCPRequiredParam], params: Optional[Dict[str, Any]]) -> None:
        params = params or {}
        missing = [param.name for param in required if param.required and not params.get(param.name)]
        if missing:
            raise MissingParamsError(missing)

    def tools_from_mcp(self, raw_tools: List[Dict[str, Any]]) -> List[MCPTool]:
        return [
            MCPTool(
                slug=tool["name"],
                name=tool["name"],
                description=tool.get("description") or "",
                provider=self.name,
                warning=False,
            )
            for tool in raw_tools
            if tool.get("name")
        ]
