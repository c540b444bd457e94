"""Thin async wrapper around the Composio v3 REST API.

Only the endpoints the Composio provider needs are exposed. Every call raises
:class:`~mcp_manager.exceptions.ProviderRequestError` on transport failures and
non-2xx answers; callers decide whether to degrade.
"""

import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx

from mcp_manager.config import DEFAULT_COMPOSIO_BASE_URL
from mcp_manager.exceptions import ConfigurationError
from mcp_manager.exceptions import ProviderRequestError

logger = logging.getLogger(__name__)

PROVIDER_NAME = "composio"
MCP_SERVER_URL = "https://mcp.composio.dev/composio/server/{server_id}/mcp?connected_account_ids={account_id}"
MAX_SERVER_NAME_LENGTH = 25


def mcp_server_name(app_name: str, organization_id: str) -> str:
    """Composio server names are short and may not contain spaces."""
    name = f"{app_name}-{organization_id.strip()}".replace(" ", "-")
    return name[:MAX_SERVER_NAME_LENGTH]


def auth_state(auth_scheme: Optional[str], params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Connection ``state`` block: OAuth schemes start initializing, the rest are active."""
    scheme = (auth_scheme or "OAUTH2").upper()
    status = "INITIALIZING" if scheme.startswith("OAUTH") else "ACTIVE"
    return {"authScheme": scheme, "val": {"status": status, **(params or {})}}


class ComposioClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_COMPOSIO_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self.api_key:
            raise ConfigurationError("Composio API key is not configured")

        url = f"{self.base_url}{path}"
        query = {key: value for key, value in (params or {}).items() if value not in (None, "", [])}
        headers = {"x-api-key": self.api_key, "Accept": "application/json"}

        try:
            if self.http_client is not None:
                response = await self.http_client.request(method, url, params=query, json=json, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, params=query, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderRequestError(PROVIDER_NAME, None, str(exc)) from exc

        if response.status_code >= 400:
            logger.debug(f"Composio {method} {path} answered {response.status_code}: {response.text[:200]}")
            raise ProviderRequestError(PROVIDER_NAME, response.status_code, response.text[:200])

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderRequestError(PROVIDER_NAME, response.status_code, "Invalid JSON response") from exc

    # ------------------------------------------------------------------
    # Auth configs (integrations)
    # ------------------------------------------------------------------

    async def list_auth_configs(
        self,
        *,
        app_name: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/auth_configs",
            params={"toolkit_slug": app_name, "limit": limit, "cursor": cursor},
        )

    async def get_auth_config(self, auth_config_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/auth_configs/{auth_config_id}")

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def list_tools(
        self,
        *,
        app_name: Optional[str] = None,
        tool_slugs: Optional[List[str]] = None,
        limit: int = 500,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/tools",
            params={
                "toolkit_slug": app_name,
                "tool_slugs": ",".join(tool_slugs) if tool_slugs else None,
                "limit": limit,
                "cursor": cursor,
            },
        )

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def list_connected_accounts(
        self,
        *,
        auth_config_ids: Optional[List[str]] = None,
        app_names: Optional[List[str]] = None,
        user_ids: Optional[List[str]] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/connected_accounts",
            params={
                "auth_config_ids": ",".join(auth_config_ids) if auth_config_ids else None,
                "toolkit_slugs": ",".join(app_names) if app_names else None,
                "user_ids": ",".join(user_ids) if user_ids else None,
                "limit": limit,
                "cursor": cursor,
            },
        )

    async def create_connected_account(
        self,
        *,
        auth_config_id: str,
        user_id: str,
        auth_scheme: Optional[str] = None,
        callback_url: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        connection: Dict[str, Any] = {"user_id": user_id, "state": auth_state(auth_scheme, params)}
        if callback_url:
            connection["callback_url"] = callback_url
        return await self._request(
            "POST",
            "/connected_accounts",
            json={"auth_config": {"id": auth_config_id}, "connection": connection},
        )

    async def delete_connected_account(self, account_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/connected_accounts/{account_id}")

    # ------------------------------------------------------------------
    # MCP servers
    # ------------------------------------------------------------------

    async def get_mcp_server(self, auth_config_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request("GET", "/mcp/servers", params={"auth_config_ids": auth_config_id})
        items = body.get("items") or []
        return items[0] if items else None

    async def create_mcp_server(
        self,
        *,
        app_name: str,
        organization_id: str,
        auth_config_id: str,
        allowed_tools: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": mcp_server_name(app_name, organization_id),
            "auth_config_ids": [auth_config_id],
        }
        if allowed_tools:
            payload["allowed_tools"] = list(allowed_tools)
        return await self._request("POST", "/mcp/servers", json=payload)

    @staticmethod
    def mcp_url(server_id: str, account_id: str) -> str:
        return MCP_SERVER_URL.format(server_id=server_id, account_id=account_id)
