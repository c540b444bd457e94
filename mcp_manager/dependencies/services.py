"""Per-request service wiring."""

from fastapi import Depends
from fastapi import Request
from sqlalchemy.orm import Session

from mcp_manager.database import get_db
from mcp_manager.providers.factory import ProviderFactory
from mcp_manager.services.connections import ConnectionService


def get_provider_factory(request: Request) -> ProviderFactory:
    """The factory built at startup (see ``main.lifespan``)."""
    return request.app.state.provider_factory


def get_connection_service(
    db: Session = Depends(get_db),
    factory: ProviderFactory = Depends(get_provider_factory),
) -> ConnectionService:
    return ConnectionService(db, factory)
