"""CRUD operations for Connections."""

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy.orm import Query
from sqlalchemy.orm import Session

from mcp_manager.models.connection import Connection

_UNSET = object()


def create_connection(
    db: Session,
    *,
    organization_id: str,
    integration_id: str,
    provider: str,
    status: str,
    app_name: str,
    mcp_url: Optional[str] = None,
    allowed_tools: Optional[List[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Connection:
    connection = Connection(
        organization_id=organization_id,
        integration_id=integration_id,
        provider=provider,
        status=status,
        app_name=app_name,
        mcp_url=mcp_url,
        allowed_tools=list(allowed_tools or []),
        metadata_=metadata or {},
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def _live(db: Session) -> Query:
    return db.query(Connection).filter(Connection.deleted_at.is_(None))


def get_connection(db: Session, connection_id: str, organization_id: str) -> Optional[Connection]:
    return _live(db).filter(Connection.id == connection_id, Connection.organization_id == organization_id).first()


def get_connection_for_integration(
    db: Session,
    organization_id: str,
    integration_id: str,
    provider: Optional[str] = None,
) -> Optional[Connection]:
    q = _live(db).filter(
        Connection.organization_id == organization_id,
        Connection.integration_id == integration_id,
    )
    if provider is not None:
        q = q.filter(Connection.provider == provider)
    return q.order_by(Connection.created_at).first()


def get_connection_by_remote_id(db: Session, organization_id: str, remote_id: str) -> Optional[Connection]:
    """Find a connection whose ``metadata.connection.id`` equals *remote_id*.

    JSON path operators differ between backends, so the match is done in Python
    over the organization's rows.
    """
    for connection in _live(db).filter(Connection.organization_id == organization_id).all():
        remote = (connection.metadata_ or {}).get("connection") or {}
        if isinstance(remote, dict) and remote.get("id") == remote_id:
            return connection
    return None


def get_connections(
    db: Session,
    *,
    organization_id: str,
    provider: Optional[str] = None,
    status: Optional[str] = None,
    integration_id: Optional[str] = None,
    app_name: Optional[str] = None,
    skip: int = 0,
    limit: Optional[int] = None,
) -> Tuple[List[Connection], int]:
    q = _live(db).filter(Connection.organization_id == organization_id)
    if provider is not None:
        q = q.filter(Connection.provider == provider)
    if status is not None:
        q = q.filter(Connection.status == status)
    if integration_id is not None:
        q = q.filter(Connection.integration_id == integration_id)
    if app_name is not None:
        q = q.filter(Connection.app_name == app_name)

    total = q.count()
    q = q.order_by(Connection.created_at, Connection.id).offset(skip)
    if limit is not None:
        q = q.limit(limit)
    return q.all(), total


def update_connection(
    db: Session,
    connection: Connection,
    *,
    status=_UNSET,
    provider=_UNSET,
    app_name=_UNSET,
    mcp_url=_UNSET,
    allowed_tools=_UNSET,
    metadata=_UNSET,
) -> Connection:
    if status is not _UNSET:
        connection.status = status
    if provider is not _UNSET:
        connection.provider = provider
    if app_name is not _UNSET:
        connection.app_name = app_name
    if mcp_url is not _UNSET:
        connection.mcp_url = mcp_url
    if allowed_tools is not _UNSET:
        connection.allowed_tools = list(allowed_tools or [])
    if metadata is not _UNSET:
        connection.metadata_ = metadata
    db.commit()
    db.refresh(connection)
    return connection


def delete_connection(db: Session, connection: Connection) -> None:
    """Soft delete."""
    connection.deleted_at = datetime.now(timezone.utc)
    db.commit()
