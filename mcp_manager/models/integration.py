"""Integration configuration and OAuth session state models."""

import uuid

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.sql import func

from mcp_manager.database import Base
from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.models.enums import IntegrationProtocol
from mcp_manager.models.enums import OAuthStatus
from mcp_manager.models.enums import ProviderType


def _uuid() -> str:
    return str(uuid.uuid4())


class Integration(Base):
    """An external MCP server registered by an organization.

    ``auth`` and ``headers`` hold encrypted JSON (``iv_hex:base64``). The shape
    of the decrypted ``auth`` payload depends on ``auth_type``; see
    :mod:`mcp_manager.services.integrations` for the typed view.
    """

    __tablename__ = "mcp_integrations"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)

    protocol = Column(String, nullable=False, default=IntegrationProtocol.HTTP.value)
    base_url = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    logo_url = Column(Text, nullable=True)
    provider = Column(String, nullable=False, default=ProviderType.CUSTOM.value)

    auth_type = Column(String, nullable=False, default=IntegrationAuthType.NONE.value)
    auth = Column(Text, nullable=True)
    headers = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime, nullable=True)


class IntegrationOAuthState(Base):
    """Per (organization, integration) OAuth working state, kept apart from the config row."""

    __tablename__ = "mcp_integration_oauth"
    __table_args__ = (UniqueConstraint("organization_id", "integration_id", name="uix_oauth_org_integration"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    integration_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=OAuthStatus.PENDING.value)

    # Encrypted JSON, same keys as the oauth2 integration payload
    auth = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
