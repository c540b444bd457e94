from mcp_manager.models.connection import Connection
from mcp_manager.models.enums import ConnectionStatus
from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.models.enums import IntegrationProtocol
from mcp_manager.models.enums import OAuthStatus
from mcp_manager.models.enums import ProviderType
from mcp_manager.models.integration import Integration
from mcp_manager.models.integration import IntegrationOAuthState

__all__ = [
    "Connection",
    "ConnectionStatus",
    "Integration",
    "IntegrationAuthType",
    "IntegrationOAuthState",
    "IntegrationProtocol",
    "OAuthStatus",
    "ProviderType",
]
