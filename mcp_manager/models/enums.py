"""Enumerations shared by models, services and providers."""

from enum import Enum


class IntegrationAuthType(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    BASIC = "basic"
    BEARER_TOKEN = "bearer_token"
    OAUTH2 = "oauth2"


class IntegrationProtocol(str, Enum):
    HTTP = "http"
    SSE = "sse"
    STDIO = "stdio"
    WEBSOCKET = "websocket"


class OAuthStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class ProviderType(str, Enum):
    COMPOSIO = "composio"
    KODUSMCP = "kodusmcp"
    CUSTOM = "custom"
    SMITHERY = "smithery"
