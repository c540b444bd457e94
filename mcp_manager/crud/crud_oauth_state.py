"""CRUD operations for per-integration OAuth state rows."""

from typing import Optional

from sqlalchemy.orm import Session

from mcp_manager.models.integration import IntegrationOAuthState


def get_oauth_state(db: Session, organization_id: str, integration_id: str) -> Optional[IntegrationOAuthState]:
    return (
        db.query(IntegrationOAuthState)
        .filter(
            IntegrationOAuthState.organization_id == organization_id,
            IntegrationOAuthState.integration_id == integration_id,
        )
        .first()
    )


def upsert_oauth_state(
    db: Session,
    *,
    organization_id: str,
    integration_id: str,
    status: str,
    auth: str,
) -> IntegrationOAuthState:
    row = get_oauth_state(db, organization_id, integration_id)
    if row is None:
        row = IntegrationOAuthState(
            organization_id=organization_id,
            integration_id=integration_id,
            status=status,
            auth=auth,
        )
        db.add(row)
    else:
        row.status = status
        row.auth = auth
    db.commit()
    db.refresh(row)
    return row


def delete_oauth_state(db: Session, organization_id: str, integration_id: str) -> bool:
    deleted = (
        db.query(IntegrationOAuthState)
        .filter(
            IntegrationOAuthState.organization_id == organization_id,
            IntegrationOAuthState.integration_id == integration_id,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)
