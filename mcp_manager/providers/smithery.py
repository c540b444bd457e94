"""Curated Smithery-hosted MCP servers.

Each template describes a public server plus the credentials it needs. A
connection turns the template into a stored custom integration for the
organization, with the template's auth headers baked in.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from urllib.parse import urlparse

from mcp_manager.clients.mcp_client import MCPClient
from mcp_manager.database import db_session
from mcp_manager.exceptions import IntegrationNotFoundError
from mcp_manager.exceptions import MCPManagerError
from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.models.enums import IntegrationProtocol
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
from mcp_manager.schemas.integration import NoAuth
from mcp_manager.schemas.mcp import HeaderEntry
from mcp_manager.schemas.mcp import IntegrationCreate
from mcp_manager.services.integrations import IntegrationService

logger = logging.getLogger(__name__)

SMITHERY_DOMAINS = ("mcp.exa.ai", "server.smithery.ai")


@dataclass(frozen=True)
class SmitheryTemplate:
    integration_id: str
    app_name: str
    display_name: str
    description: str
    base_url: str
    logo: str
    auth_type: IntegrationAuthType
    required_params: List[MCPRequiredParam] = field(default_factory=list)
    # Builds the IntegrationCreate auth fields and headers from the caller's params.
    credentials: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None


def _param(name: str, display_name: str, description: str) -> MCPRequiredParam:
    return MCPRequiredParam(name=name, display_name=display_name, description=description, type="string")


def _exa_credentials(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "api_key": params["api_key"],
        "api_key_header": "x-api-key",
        "headers": [HeaderEntry(key="x-api-key", value=params["api_key"])],
    }


def _mem0_credentials(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "api_key": params["api_key"],
        "api_key_header": "Authorization",
        "headers": [HeaderEntry(key="Authorization", value=f"Bearer {params['api_key']}")],
    }


def _browserbase_credentials(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "api_key": params["api_key"],
        "api_key_header": "x-api-key",
        "headers": [
            HeaderEntry(key="x-api-key", value=params["api_key"]),
            HeaderEntry(key="x-project-id", value=params["project_id"]),
        ],
    }


def _bearer_credentials(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "bearer_token": params["bearer_token"],
        "headers": [HeaderEntry(key="Authorization", value=f"Bearer {params['bearer_token']}")],
    }


def _azure_credentials(params: Dict[str, Any]) -> Dict[str, Any]:
    credentials = _bearer_credentials(params)
    credentials["headers"].append(HeaderEntry(key="X-Azure-Organization", value=params["organization"]))
    return credentials


TEMPLATES: List[SmitheryTemplate] = [
    SmitheryTemplate(
        integration_id="smithery-exa-search",
        app_name="exa-search",
        display_name="Exa Search",
        description="Web search, crawling and research through the Exa API.",
        base_url="https://mcp.exa.ai/mcp",
        logo="https://avatars.githubusercontent.com/u/82182631?s=200&v=4",
        auth_type=IntegrationAuthType.API_KEY,
        required_params=[_param("api_key", "Exa API Key", "API key from the Exa dashboard")],
        credentials=_exa_credentials,
    ),
    SmitheryTemplate(
        integration_id="smithery-sequential-thinking",
        app_name="sequential-thinking",
        display_name="Sequential Thinking",
        description="Structured, step by step problem solving through revisable thought sequences.",
        base_url="https://server.smithery.ai/@smithery-ai/server-sequential-thinking/mcp",
        logo="https://smithery.ai/favicon.ico",
        auth_type=IntegrationAuthType.NONE,
    ),
    SmitheryTemplate(
        integration_id="smithery-azure-devops",
        app_name="azure-devops",
        display_name="Azure DevOps",
        description="Work items, repositories and pipelines in Azure DevOps.",
        base_url="https://server.smithery.ai/@magemaclean/azure-devops-mcp/mcp",
        logo="https://cdn.jsdelivr.net/npm/simple-icons@v9/icons/azuredevops.svg",
        auth_type=IntegrationAuthType.BEARER_TOKEN,
        required_params=[
            _param("bearer_token", "Azure DevOps PAT", "Personal access token with the required scopes"),
            _param("organization", "Organization Name", "Azure DevOps organization name"),
        ],
        credentials=_azure_credentials,
    ),
    SmitheryTemplate(
        integration_id="smithery-supermemory",
        app_name="supermemory",
        display_name="Supermemory",
        description="Long-term memory storage and retrieval with Supermemory.",
        base_url="https://server.smithery.ai/supermemory/mcp",
        logo="https://supermemory.ai/logo.png",
        auth_type=IntegrationAuthType.BEARER_TOKEN,
        required_params=[_param("bearer_token", "Supermemory API Key", "API key from the Supermemory console")],
        credentials=_bearer_credentials,
    ),
    SmitheryTemplate(
        integration_id="smithery-mem0",
        app_name="mem0",
        display_name="Mem0",
        description="Persistent memory for agents backed by Mem0.",
        base_url="https://server.smithery.ai/@mem0ai/mem0-memory-mcp/mcp",
        logo="https://avatars.githubusercontent.com/u/157014308?s=200&v=4",
        auth_type=IntegrationAuthType.API_KEY,
        required_params=[_param("api_key", "Mem0 API Key", "API key from the Mem0 dashboard")],
        credentials=_mem0_credentials,
    ),
    SmitheryTemplate(
        integration_id="smithery-fetch",
        app_name="fetch",
        display_name="Fetch",
        description="Fetch web pages and convert them to markdown.",
        base_url="https://server.smithery.ai/@smithery-ai/fetch/mcp",
        logo="https://smithery.ai/favicon.ico",
        auth_type=IntegrationAuthType.NONE,
    ),
    SmitheryTemplate(
        integration_id="smithery-browserbase",
        app_name="browserbase",
        display_name="Browserbase",
        description="Headless browser sessions for navigation, screenshots and extraction.",
        base_url="https://server.smithery.ai/@browserbasehq/mcp-browserbase/mcp",
        logo="https://avatars.githubusercontent.com/u/145268778?s=200&v=4",
        auth_type=IntegrationAuthType.API_KEY,
        required_params=[
            _param("api_key", "Browserbase API Key", "API key from the Browserbase dashboard"),
            _param("project_id", "Project ID", "Browserbase project identifier"),
        ],
        credentials=_browserbase_credentials,
    ),
]

TEMPLATES_BY_ID: Dict[str, SmitheryTemplate] = {template.integration_id: template for template in TEMPLATES}


def is_smithery_url(base_url: Optional[str]) -> bool:
    host = urlparse(base_url or "").hostname or ""
    return host in SMITHERY_DOMAINS


class SmitheryProvider(BaseProvider):
    name = ProviderType.SMITHERY.value

    def _service(self, db) -> IntegrationService:
        return IntegrationService(db, self.settings, http_client=self.http_client)

    def _from_template(self, template: SmitheryTemplate) -> MCPIntegration:
        return MCPIntegration(
            id=template.integration_id,
            name=template.display_name,
            provider=self.name,
            app_name=template.app_name,
            description=template.description,
            auth_scheme=template.auth_type.value,
            logo=template.logo,
            base_url=template.base_url,
            protocol=IntegrationProtocol.HTTP.value,
            is_connected=False,
        )

    def _from_view(self, view: IntegrationView) -> MCPIntegration:
        template = next((t for t in TEMPLATES if t.base_url == view.base_url), None)
        return MCPIntegration(
            id=view.id,
            name=view.name,
            provider=self.name,
            app_name=template.app_name if template else view.name,
            description=view.description or "",
            auth_scheme=view.auth_type.value,
            logo=view.logo_url,
            base_url=view.base_url,
            protocol=view.protocol,
            active=view.active,
            is_connected=True,
        )

    def _stored(self, organization_id: str) -> List[IntegrationView]:
        with db_session(self.session_factory) as db:
            views = self._service(db).find(organization_id=organization_id, active=True)
        return [view for view in views if is_smithery_url(view.base_url)]

    async def _resolve_view(self, integration_id: str, organization_id: Optional[str]) -> Optional[IntegrationView]:
        """Stored integration by id, or the one created from the template with that id."""
        if not organization_id:
            return None
        with db_session(self.session_factory) as db:
            service = self._service(db)
            view = await service.get_integration_by_id(integration_id, organization_id)
            if view is None and integration_id in TEMPLATES_BY_ID:
                base_url = TEMPLATES_BY_ID[integration_id].base_url
                view = next(
                    (v for v in service.find(organization_id=organization_id, active=True) if v.base_url == base_url),
                    None,
                )
        return view

    def _template(self, integration_id: str) -> SmitheryTemplate:
        template = TEMPLATES_BY_ID.get(integration_id)
        if template is None:
            raise IntegrationNotFoundError(integration_id)
        return template

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
        organization_id = filters.get("organization_id")

        connected: List[MCPIntegration] = []
        if organization_id:
            try:
                connected = [self._from_view(view) for view in self._stored(organization_id)]
            except MCPManagerError as exc:
                logger.error(f"Smithery: failed to load stored integrations for organization={organization_id}: {exc}")

        connected_urls = {item.base_url for item in connected}
        available = [self._from_template(t) for t in TEMPLATES if t.base_url not in connected_urls]

        items = connected + available
        app_name = filters.get("app_name")
        if app_name:
            items = [item for item in items if item.app_name == app_name]
        return items

    async def get_integration(self, integration_id: str, organization_id: Optional[str] = None) -> MCPIntegration:
        self.validate_id(integration_id, "Integration")
        view = await self._resolve_view(integration_id, organization_id)
        if view is not None:
            return self._from_view(view)
        return self._from_template(self._template(integration_id))

    async def get_integration_required_params(self, integration_id: str) -> List[MCPRequiredParam]:
        template = TEMPLATES_BY_ID.get(integration_id)
        return list(template.required_params) if template else []

    async def get_integration_tools(self, integration_id: str, organization_id: str) -> List[MCPTool]:
        self.validate_id(integration_id, "Integration")
        try:
            view = await self._resolve_view(integration_id, organization_id)
            if view is None:
                # Templates without credentials can be listed before connecting.
                template = self._template(integration_id)
                if template.required_params:
                    return []
                view = IntegrationView(
                    id=template.integration_id,
                    organization_id=organization_id,
                    base_url=template.base_url,
                    name=template.display_name,
                    auth=NoAuth(),
                )
            async with MCPClient(view, http_client=self.http_client, timeout=self.settings.http_timeout) as client:
                raw_tools = await client.list_tools()
        except MCPManagerError as exc:
            logger.error(
                f"Smithery: failed to list tools for integration={integration_id} organization={organization_id}: {exc}"
            )
            return []
        return self.tools_from_mcp(raw_tools)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _integration_payload(self, template: SmitheryTemplate, params: Dict[str, Any]) -> IntegrationCreate:
        credentials = template.credentials(params) if template.credentials else {}
        return IntegrationCreate(
            base_url=template.base_url,
            protocol=IntegrationProtocol.HTTP,
            name=template.display_name,
            description=template.description,
            logo_url=template.logo,
            auth_type=template.auth_type,
            **credentials,
        )

    async def initiate_connection(self, config: MCPConnectionConfig) -> MCPConnection:
        self.validate_id(config.integration_id, "Integration")
        self.validate_id(config.organization_id, "Organization")

        template = self._template(config.integration_id)
        self.check_required_params(template.required_params, config.params)

        data = self._integration_payload(template, config.params)
        existing = await self._resolve_view(template.integration_id, config.organization_id)
        with db_session(self.session_factory) as db:
            service = self._service(db)
            if existing is not None:
                view = await service.edit_integration(config.organization_id, existing.id, data)
            else:
                view = await service.create_integration(config.organization_id, data)

        async with MCPClient(view, http_client=self.http_client, timeout=self.settings.http_timeout) as client:
            tools = self.tools_from_mcp(await client.list_tools())

        allowed_tools = list(config.allowed_tools) or [tool.slug for tool in tools]
        logger.info(
            f"Smithery: connected {template.app_name} as integration={view.id} "
            f"organization={config.organization_id} with {len(allowed_tools)} tools"
        )
        return MCPConnection(
            id=view.id,
            app_name=template.app_name,
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
        return ConnectionPage()
