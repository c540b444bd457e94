"""Connection model: an organization has installed an integration through a provider."""

import uuid

from sqlalchemy import JSON
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.sql import func

from mcp_manager.database import Base


class Connection(Base):
    """Installed integration for an organization.

    There is deliberately no unique constraint on (organization_id,
    integration_id); the connection service looks up the live row before
    inserting.
    """

    __tablename__ = "mcp_connections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)
    integration_id = Column(String, nullable=False, index=True)

    # composio | kodusmcp | custom | smithery | ...
    provider = Column(String, nullable=False)
    status = Column(String, nullable=False)
    app_name = Column(String, nullable=False)
    mcp_url = Column(Text, nullable=True)

    # Insertion order is the user's selection order
    allowed_tools = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    # Provider response and other opaque data. ``metadata`` is reserved by SQLAlchemy.
    metadata_ = Column("metadata", MutableDict.as_mutable(JSON), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime, nullable=True)
