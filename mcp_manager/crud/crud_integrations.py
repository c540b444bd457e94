"""CRUD operations for Integrations.

Values for ``auth`` and ``headers`` arrive here already encrypted; this layer
never sees plaintext secrets.
"""

from datetime import datetime
from datetime import timezone
from typing import List
from typing import Optional

from sqlalchemy.orm import Query
from sqlalchemy.orm import Session

from mcp_manager.models.integration import Integration

_UNSET = object()


def create_integration(
    db: Session,
    *,
    organization_id: str,
    base_url: str,
    name: str,
    auth_type: str,
    protocol: str,
    auth: Optional[str],
    headers: Optional[str],
    description: Optional[str] = None,
    logo_url: Optional[str] = None,
    provider: str = "custom",
    active: bool = True,
) -> Integration:
    integration = Integration(
        organization_id=organization_id,
        base_url=base_url,
        name=name,
        description=description,
        logo_url=logo_url,
        auth_type=auth_type,
        protocol=protocol,
        auth=auth,
        headers=headers,
        provider=provider,
        active=active,
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


def _live(db: Session) -> Query:
    return db.query(Integration).filter(Integration.deleted_at.is_(None))


def get_integration(db: Session, integration_id: str, organization_id: str) -> Optional[Integration]:
    return (
        _live(db)
        .filter(Integration.id == integration_id, Integration.organization_id == organization_id)
        .first()
    )


def _filtered(
    db: Session,
    *,
    id: Optional[str] = None,
    organization_id: Optional[str] = None,
    active: Optional[bool] = None,
    name: Optional[str] = None,
    auth_type: Optional[str] = None,
) -> Query:
    q = _live(db)
    if id is not None:
        q = q.filter(Integration.id == id)
    if organization_id is not None:
        q = q.filter(Integration.organization_id == organization_id)
    if active is not None:
        q = q.filter(Integration.active == active)
    if name is not None:
        q = q.filter(Integration.name == name)
    if auth_type is not None:
        q = q.filter(Integration.auth_type == auth_type)
    return q


def get_integrations(db: Session, **filters) -> List[Integration]:
    """Conjunctive equality filter over id, organization_id, active, name and auth_type."""
    return _filtered(db, **filters).order_by(Integration.created_at, Integration.id).all()


def find_integration(db: Session, **filters) -> Optional[Integration]:
    return _filtered(db, **filters).order_by(Integration.created_at, Integration.id).first()


def update_integration(
    db: Session,
    integration: Integration,
    *,
    base_url=_UNSET,
    name=_UNSET,
    description=_UNSET,
    logo_url=_UNSET,
    auth_type=_UNSET,
    protocol=_UNSET,
    auth=_UNSET,
    headers=_UNSET,
    active=_UNSET,
) -> Integration:
    changes = {
        "base_url": base_url,
        "name": name,
        "description": description,
        "logo_url": logo_url,
        "auth_type": auth_type,
        "protocol": protocol,
        "auth": auth,
        "headers": headers,
        "active": active,
    }
    for attr, value in changes.items():
        if value is not _UNSET:
            setattr(integration, attr, value)
    db.commit()
    db.refresh(integration)
    return integration


def delete_integration(db: Session, integration_id: str, organization_id: str) -> bool:
    """Soft delete; returns False when nothing matched."""
    integration = get_integration(db, integration_id, organization_id)
    if not integration:
        return False
    integration.deleted_at = datetime.now(timezone.utc)
    db.commit()
    return True
