"""Centralised configuration helper.

Every component reads its configuration from a :class:`Settings` instance
returned by :func:`get_settings` instead of calling ``os.getenv`` directly.

We intentionally avoid *pydantic-settings*: a small dataclass populated from
the environment (after python-dotenv loads ``.env``) covers all current needs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_PROVIDERS = "composio,kodusmcp,custom"
DEFAULT_COMPOSIO_BASE_URL = "https://backend.composio.dev/api/v3"


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    port: int

    # Database ---------------------------------------------------------
    database_url: str

    # Cryptography -----------------------------------------------------
    encryption_secret: str

    # OAuth ------------------------------------------------------------
    redirect_uri: str | None

    # Providers --------------------------------------------------------
    mcp_providers: str  # comma-separated list
    composio_api_key: str | None
    composio_base_url: str
    managed_servers_path: str | None

    # Outbound HTTP ------------------------------------------------------
    http_timeout: float

    # Misc
    log_level: str

    @property
    def enabled_providers(self) -> list[str]:
        """Return the configured provider names, trimmed and without blanks."""
        return [name.strip() for name in self.mcp_providers.split(",") if name.strip()]

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loading & validation
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    env_path = _PROJECT_ROOT / ".env"
    if env_path.exists():
        # Never clobber values that were exported explicitly (tests, containers).
        load_dotenv(env_path, override=False)

    return Settings(
        testing=_truthy(os.getenv("TESTING")),
        port=int(os.getenv("API_MCP_MANAGER_PORT", "3101")),
        database_url=os.getenv("API_MCP_MANAGER_DATABASE_URL", "sqlite:///./mcp_manager.db"),
        encryption_secret=os.getenv("API_MCP_MANAGER_ENCRYPTION_SECRET", ""),
        redirect_uri=os.getenv("API_MCP_MANAGER_REDIRECT_URI") or None,
        mcp_providers=os.getenv("API_MCP_MANAGER_MCP_PROVIDERS", DEFAULT_PROVIDERS),
        composio_api_key=os.getenv("API_MCP_MANAGER_COMPOSIO_API_KEY") or None,
        composio_base_url=os.getenv("API_MCP_MANAGER_COMPOSIO_BASE_URL", DEFAULT_COMPOSIO_BASE_URL),
        managed_servers_path=os.getenv("API_MCP_MANAGER_MANAGED_SERVERS_PATH") or None,
        http_timeout=float(os.getenv("API_MCP_MANAGER_HTTP_TIMEOUT", "30.0")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def _validate_required(settings: Settings) -> None:
    """Fail fast when critical configuration is missing outside of tests."""

    if settings.testing:
        return

    missing_vars = []

    if not settings.encryption_secret:
        missing_vars.append("API_MCP_MANAGER_ENCRYPTION_SECRET")

    if not settings.database_url:
        missing_vars.append("API_MCP_MANAGER_DATABASE_URL")

    if "composio" in settings.enabled_providers and not settings.composio_api_key:
        missing_vars.append("API_MCP_MANAGER_COMPOSIO_API_KEY (required when the composio provider is enabled)")

    if missing_vars:
        raise RuntimeError(
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            f"Set these in your .env file or deployment environment."
        )


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "DEFAULT_COMPOSIO_BASE_URL",
    "DEFAULT_PROVIDERS",
    "Settings",
    "get_settings",
]
