"""Request bodies for the ``/mcp`` API."""

from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

from mcp_manager.models.enums import IntegrationAuthType
from mcp_manager.models.enums import IntegrationProtocol


class HeaderEntry(BaseModel):
    key: str
    value: str


class IntegrationCreate(BaseModel):
    """Create or edit an integration.

    Only the auth fields matching ``auth_type`` are used; the others are ignored.
    """

    base_url: str
    integration_id: Optional[str] = Field(None, description="Only used by the kodusmcp provider")
    protocol: IntegrationProtocol = IntegrationProtocol.HTTP
    name: Optional[str] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    headers: List[HeaderEntry] = Field(default_factory=list)
    auth_type: IntegrationAuthType = IntegrationAuthType.NONE

    bearer_token: Optional[str] = None
    api_key: Optional[str] = None
    api_key_header: Optional[str] = None
    basic_user: Optional[str] = None
    basic_password: Optional[str] = None

    oauth_scopes: List[str] = Field(default_factory=list)
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    dynamic_registration: bool = False

    def headers_dict(self) -> Dict[str, str]:
        return {entry.key: entry.value for entry in self.headers}


class InitiateConnectionRequest(BaseModel):
    integration_id: str = Field(..., min_length=1)
    allowed_tools: List[str] = Field(default_factory=list)
    auth_params: Dict[str, Any] = Field(default_factory=dict)


class UpdateConnectionRequest(BaseModel):
    integration_id: str = Field(..., min_length=1)
    status: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateAllowedToolsRequest(BaseModel):
    allowed_tools: List[str]


class UpdateSelectedToolsRequest(BaseModel):
    selected_tools: List[str]


class InitiateOAuthRequest(BaseModel):
    integration_id: str


class FinalizeOAuthRequest(BaseModel):
    integration_id: str
    code: str
    state: str
