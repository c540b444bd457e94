"""Name → provider adapter registry, built once at startup."""

import logging
from typing import Dict
from typing import List
from typing import Optional
from typing import Type

import httpx
from sqlalchemy.orm import sessionmaker

from mcp_manager.config import Settings
from mcp_manager.config import get_settings
from mcp_manager.exceptions import ProviderConfigError
from mcp_manager.exceptions import ProviderNotFoundError
from mcp_manager.providers.base import BaseProvider
from mcp_manager.providers.composio import ComposioProvider
from mcp_manager.providers.custom import CustomProvider
from mcp_manager.providers.kodusmcp import KodusMCPProvider
from mcp_manager.providers.smithery import SmitheryProvider
from mcp_manager.providers.types import ProviderType

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BaseProvider]] = {
    ProviderType.COMPOSIO.value: ComposioProvider,
    ProviderType.KODUSMCP.value: KodusMCPProvider,
    ProviderType.CUSTOM.value: CustomProvider,
    ProviderType.SMITHERY.value: SmitheryProvider,
}


class ProviderFactory:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._providers: Dict[str, BaseProvider] = {}

        for name in self.settings.enabled_providers:
            provider_cls = PROVIDER_CLASSES.get(name)
            if provider_cls is None:
                raise ProviderConfigError(name)
            self._providers[name] = provider_cls(self.settings, session_factory, http_client)

        logger.info(f"Enabled MCP providers: {', '.join(self._providers) or 'none'}")

    def get_provider(self, name: str) -> BaseProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    def get_providers(self) -> List[BaseProvider]:
        return list(self._providers.values())

    def has_provider(self, name: str) -> bool:
        return name in self._providers
