"""MCP connection and integration routes."""

import logging
from contextlib import contextmanager
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Query
from fastapi import status

from mcp_manager.dependencies.auth import get_organization_id
from mcp_manager.dependencies.services import get_connection_service
from mcp_manager.exceptions import ConfigurationError
from mcp_manager.exceptions import ConflictError
from mcp_manager.exceptions import ConnectionNotFoundError
from mcp_manager.exceptions import DecryptionError
from mcp_manager.exceptions import MCPAuthenticationError
from mcp_manager.exceptions import MCPManagerError
from mcp_manager.exceptions import NotFoundError
from mcp_manager.exceptions import OAuthError
from mcp_manager.exceptions import RemoteServiceError
from mcp_manager.exceptions import ValidationError
from mcp_manager.schemas.integration import IntegrationView
from mcp_manager.schemas.mcp import FinalizeOAuthRequest
from mcp_manager.schemas.mcp import InitiateConnectionRequest
from mcp_manager.schemas.mcp import InitiateOAuthRequest
from mcp_manager.schemas.mcp import IntegrationCreate
from mcp_manager.schemas.mcp import UpdateAllowedToolsRequest
from mcp_manager.schemas.mcp import UpdateConnectionRequest
from mcp_manager.schemas.mcp import UpdateSelectedToolsRequest
from mcp_manager.services.connections import ConnectionService
from mcp_manager.services.connections import connection_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/mcp",
    tags=["mcp"],
    dependencies=[Depends(get_organization_id)],
)


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def _http_error(exc: MCPManagerError, operation: str) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        logger.error(f"Configuration error during {operation}: {exc}")
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server configuration error")
    if isinstance(exc, DecryptionError):
        logger.error(f"Stored credentials could not be decrypted during {operation}")
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    if isinstance(exc, OAuthError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, MCPAuthenticationError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, RemoteServiceError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    logger.exception(f"Unhandled error during {operation}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@contextmanager
def _handle_errors(operation: str):
    try:
        yield
    except HTTPException:
        raise
    except MCPManagerError as e:
        raise _http_error(e, operation) from e
    except Exception as e:
        logger.exception(f"Failed to {operation}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from e


def _serialize(result: Any) -> Any:
    if isinstance(result, IntegrationView):
        return result.to_dict()
    return result


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@router.get("/connections")
async def list_connections(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, alias="pageSize"),
    provider: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    integration_id: Optional[str] = Query(None, alias="integrationId"),
    app_name: Optional[str] = Query(None, alias="appName"),
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    """List the organization's connections, newest last."""
    with _handle_errors("list connections"):
        return service.get_connections(
            organization_id,
            page,
            page_size,
            provider=provider or None,
            status=status_filter or None,
            integration_id=integration_id or None,
            app_name=app_name or None,
        )


@router.get("/connections/{connection_id}")
async def get_connection(
    connection_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get connection"):
        connection = service.get_connection(connection_id, organization_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection with ID {connection_id} not found")
        return connection_to_dict(connection)


@router.patch("/connections")
async def update_connection(
    body: UpdateConnectionRequest,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("update connection"):
        return service.update_connection(organization_id, body)


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("delete connection"):
        return await service.delete_connection(connection_id, organization_id)


@router.put("/connections/{integration_id}/allowed-tools")
async def update_allowed_tools(
    integration_id: str,
    body: UpdateAllowedToolsRequest,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("update allowed tools"):
        return service.update_allowed_tools(integration_id, organization_id, body.allowed_tools)


# ---------------------------------------------------------------------------
# Integration catalog
# ---------------------------------------------------------------------------


@router.get("/integrations")
async def list_integrations(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, alias="pageSize"),
    app_name: Optional[str] = Query(None, alias="appName"),
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
) -> List[Dict[str, Any]]:
    """Integrations of every enabled provider, flagged with the organization's connection state."""
    with _handle_errors("list integrations"):
        items = await service.get_integrations(organization_id, page, page_size, app_name or None)
        return [item.to_dict() for item in items]


# ---------------------------------------------------------------------------
# Custom integrations and OAuth (declared before the /{provider} routes)
# ---------------------------------------------------------------------------


@router.get("/integration/custom")
async def list_custom_integrations(
    active: Optional[bool] = True,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("list custom integrations"):
        return [view.to_dict() for view in service.get_custom_integrations(organization_id, active)]


@router.post("/integration/custom/validate")
async def validate_custom_integration(
    body: IntegrationCreate,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    """Check that the server lists its tools with the supplied credentials, without storing anything."""
    with _handle_errors("validate custom integration"):
        return await service.validate_custom_integration(body)


@router.get("/integration/custom/{integration_id}")
async def get_custom_integration(
    integration_id: str,
    active: Optional[bool] = True,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get custom integration"):
        view = await service.get_custom_integration(organization_id, integration_id, active)
        return view.to_dict()


@router.get("/integration/custom/{integration_id}/connection-config")
async def get_custom_integration_connection_config(
    integration_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    """Server URL and ready-to-send auth headers, refreshing OAuth tokens first."""
    with _handle_errors("get custom integration connection config"):
        return await service.get_custom_integration_connection_config(organization_id, integration_id)


@router.get("/integration/custom/{integration_id}/access-token")
async def get_custom_integration_access_token(
    integration_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get custom integration access token"):
        return await service.get_custom_integration_access_token(organization_id, integration_id)


@router.post("/integration/{provider}/oauth/initialize")
async def initiate_oauth_integration(
    provider: str,
    body: InitiateOAuthRequest,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("initialize OAuth"):
        return await service.initiate_oauth_integration(organization_id, provider, body.integration_id)


@router.post("/integration/{provider}/oauth/finalize")
async def finalize_oauth_integration(
    provider: str,
    body: FinalizeOAuthRequest,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("finalize OAuth"):
        return await service.finalize_oauth_integration(organization_id, provider, body)


@router.post("/integration/{provider}", status_code=status.HTTP_201_CREATED)
async def create_integration(
    provider: str,
    body: IntegrationCreate,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    """Register an integration. OAuth2 integrations answer with the URL to authorize at."""
    with _handle_errors("create integration"):
        return _serialize(await service.create_integration(organization_id, provider, body))


@router.put("/integration/{provider}/{integration_id}")
async def edit_integration(
    provider: str,
    integration_id: str,
    body: IntegrationCreate,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("edit integration"):
        return _serialize(await service.edit_integration(organization_id, provider, integration_id, body))


@router.delete("/integration/{provider}/{integration_id}")
async def delete_integration(
    provider: str,
    integration_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("delete integration"):
        return service.delete_integration(organization_id, provider, integration_id)


# ---------------------------------------------------------------------------
# Per-provider catalog
# ---------------------------------------------------------------------------


@router.get("/{provider}/integrations/{integration_id}")
async def get_integration(
    provider: str,
    integration_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get integration"):
        item = await service.get_integration(integration_id, provider, organization_id)
        return item.to_dict()


@router.get("/{provider}/integrations/{integration_id}/required-params")
async def get_integration_required_params(
    provider: str,
    integration_id: str,
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get integration required params"):
        params = await service.get_integration_required_params(integration_id, provider)
        return [param.to_dict() for param in params]


@router.get("/{provider}/integrations/{integration_id}/tools")
async def get_integration_tools(
    provider: str,
    integration_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get integration tools"):
        tools = await service.get_integration_tools(integration_id, provider, organization_id)
        return [tool.to_dict() for tool in tools]


@router.get("/{provider}/integrations/{integration_id}/selected-tools")
async def get_selected_tools(
    provider: str,
    integration_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("get selected tools"):
        return {"selected_tools": service.get_selected_tools(integration_id, provider, organization_id)}


@router.put("/{provider}/integrations/{integration_id}/selected-tools")
async def update_selected_tools(
    provider: str,
    integration_id: str,
    body: UpdateSelectedToolsRequest,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    with _handle_errors("update selected tools"):
        return await service.update_selected_tools(integration_id, provider, organization_id, body.selected_tools)


@router.post("/{provider}/connect")
async def initiate_connection(
    provider: str,
    body: InitiateConnectionRequest,
    organization_id: str = Depends(get_organization_id),
    service: ConnectionService = Depends(get_connection_service),
):
    """Connect the organization to an integration; answers with the stored connection."""
    with _handle_errors("initiate connection"):
        return await service.initiate_connection(organization_id, provider, body)
