"""Value types shared by every provider adapter."""

from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from mcp_manager.models.enums import ConnectionStatus
from mcp_manager.models.enums import ProviderType

__all__ = [
    "ConnectionPage",
    "ConnectionStatus",
    "MCPConnection",
    "MCPConnectionConfig",
    "MCPIntegration",
    "MCPRequiredParam",
    "MCPTool",
    "ProviderType",
]


@dataclass
class MCPRequiredParam:
    name: str
    display_name: str = ""
    description: str = ""
    type: str = "string"
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MCPTool:
    slug: str
    name: str
    description: str = ""
    provider: str = ProviderType.CUSTOM.value
    warning: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MCPIntegration:
    """An integration as offered by a provider, connected or not."""

    id: str
    name: str
    provider: str
    app_name: str = ""
    description: str = ""
    auth_scheme: Optional[str] = None
    logo: Optional[str] = None
    base_url: Optional[str] = None
    protocol: Optional[str] = None
    active: Optional[bool] = None
    allowed_tools: List[str] = field(default_factory=list)
    is_default: bool = False
    is_connected: bool = False
    connection_status: Optional[str] = None
    required_params: Optional[List[MCPRequiredParam]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MCPConnection:
    """What a provider returns after initiating a connection."""

    id: str
    app_name: str
    status: str
    auth_url: Optional[str] = None
    mcp_url: Optional[str] = None
    allowed_tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MCPConnectionConfig:
    integration_id: str
    organization_id: str
    allowed_tools: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionPage:
    data: List[MCPConnection] = field(default_factory=list)
    total: int = 0
