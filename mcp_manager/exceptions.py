"""Exception hierarchy for the MCP manager.

Routers translate these into HTTP status codes (see ``routers/mcp.py``); the
services never raise ``HTTPException`` themselves.
"""

from typing import Any
from typing import Optional


class MCPManagerError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(MCPManagerError):
    """Required configuration is missing or invalid."""


class EncryptionConfigError(ConfigurationError):
    """No encryption secret is configured."""

    def __init__(self, field: str = "secret"):
        super().__init__(f"Missing encryption configuration: {field}")


class RedirectUriNotConfiguredError(ConfigurationError):
    def __init__(self):
        super().__init__("Redirect URI is not configured")


class ProviderConfigError(ConfigurationError):
    """A configured provider name has no adapter."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Provider {provider} is not supported")


class IntegrationConfigError(ConfigurationError):
    """A stored integration row cannot be interpreted (e.g. unknown auth type)."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(MCPManagerError):
    """The caller supplied invalid or incomplete input."""


class IntegrationValidationError(ValidationError):
    pass


class MissingParamsError(ValidationError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required params: {', '.join(missing)}")


class InvalidStateError(ValidationError):
    def __init__(self):
        super().__init__("Invalid state parameter")


class InvalidStatusError(ValidationError):
    def __init__(self, provider: str, status: str):
        self.provider = provider
        self.status = status
        super().__init__(f"Status '{status}' is not recognised by provider {provider}")


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class NotFoundError(MCPManagerError):
    pass


class IntegrationNotFoundError(NotFoundError):
    def __init__(self, integration_id: Optional[str] = None):
        self.integration_id = integration_id
        super().__init__("Integration not found")


class ConnectionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Connection not found"):
        super().__init__(message)


class ProviderNotFoundError(NotFoundError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Provider {provider} not found")


class ConflictError(MCPManagerError):
    """The request conflicts with the current state of the resource."""


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthError(MCPManagerError):
    """Base class for failures talking to an OAuth authorization server."""


class OAuthDiscoveryError(OAuthError):
    pass


class OAuthRegistrationError(OAuthError):
    pass


class OAuthTokenError(OAuthError):
    pass


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class DecryptionError(MCPManagerError):
    """Ciphertext could not be decrypted. Deliberately carries no detail."""

    def __init__(self):
        super().__init__("Decryption failed")


# ---------------------------------------------------------------------------
# Remote services
# ---------------------------------------------------------------------------


class RemoteServiceError(MCPManagerError):
    """A provider backend or MCP server call failed."""


class MCPConnectionError(RemoteServiceError):
    """Could not reach an MCP server or it answered with an error."""

    def __init__(self, server_name: str, url: Optional[str], original_error: Any = None):
        self.server_name = server_name
        self.url = url
        self.original_error = original_error
        message = f"Failed to connect to MCP server '{server_name}' at {url}"
        if original_error:
            message += f": {original_error}"
        super().__init__(message)


class MCPAuthenticationError(RemoteServiceError):
    def __init__(self, server_name: str, details: str = "Authentication failed"):
        self.server_name = server_name
        super().__init__(f"Authentication failed for MCP server '{server_name}': {details}")


class ProviderRequestError(RemoteServiceError):
    """A provider REST API returned an error status."""

    def __init__(self, provider: str, status_code: Optional[int], details: str = ""):
        self.provider = provider
        self.status_code = status_code
        message = f"{provider} request failed"
        if status_code is not None:
            message += f" with status {status_code}"
        if details:
            message += f": {details}"
        super().__init__(message)
