"""Typed, decrypted view of a stored integration.

The ``mcp_integrations`` row is flat: one ``auth_type`` column and one
encrypted ``auth`` blob. Application code works with :class:`IntegrationView`,
whose ``auth`` attribute is exactly one of the variants below, chosen by
``auth_type``.
"""

from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import ClassVar
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from mcp_manager.models.enums import IntegrationAuthType


@dataclass
class NoAuth:
    auth_type: ClassVar[IntegrationAuthType] = IntegrationAuthType.NONE

    def to_payload(self) -> Dict[str, Any]:
        return {}


@dataclass
class BearerTokenAuth:
    bearer_token: str
    auth_type: ClassVar[IntegrationAuthType] = IntegrationAuthType.BEARER_TOKEN

    def to_payload(self) -> Dict[str, Any]:
        return {"bearer_token": self.bearer_token}


@dataclass
class ApiKeyAuth:
    api_key: str
    api_key_header: str
    auth_type: ClassVar[IntegrationAuthType] = IntegrationAuthType.API_KEY

    def to_payload(self) -> Dict[str, Any]:
        return {"api_key": self.api_key, "api_key_header": self.api_key_header}


@dataclass
class BasicAuth:
    basic_user: str
    basic_password: Optional[str] = None
    auth_type: ClassVar[IntegrationAuthType] = IntegrationAuthType.BASIC

    def to_payload(self) -> Dict[str, Any]:
        return {"basic_user": self.basic_user, "basic_password": self.basic_password}


@dataclass
class OAuth2Auth:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    oauth_scopes: List[str] = field(default_factory=list)
    dynamic_registration: bool = False
    as_metadata: Dict[str, Any] = field(default_factory=dict)
    rs_metadata: Dict[str, Any] = field(default_factory=dict)
    issuer: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_challenge: Optional[str] = None
    code_verifier: Optional[str] = None
    state: Optional[str] = None
    token: Optional[Dict[str, Any]] = None
    auth_type: ClassVar[IntegrationAuthType] = IntegrationAuthType.OAUTH2

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OAuth2Auth":
        return cls(
            client_id=payload.get("client_id"),
            client_secret=payload.get("client_secret"),
            oauth_scopes=list(payload.get("oauth_scopes") or []),
            dynamic_registration=bool(payload.get("dynamic_registration")),
            as_metadata=dict(payload.get("as_metadata") or {}),
            rs_metadata=dict(payload.get("rs_metadata") or {}),
            issuer=payload.get("issuer"),
            redirect_uri=payload.get("redirect_uri"),
            code_challenge=payload.get("code_challenge"),
            code_verifier=payload.get("code_verifier"),
            state=payload.get("state"),
            token=payload.get("token"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def token_endpoint(self) -> Optional[str]:
        return self.as_metadata.get("token_endpoint")

    @property
    def access_token(self) -> Optional[str]:
        return (self.token or {}).get("access_token")


AuthConfig = Union[NoAuth, BearerTokenAuth, ApiKeyAuth, BasicAuth, OAuth2Auth]


@dataclass
class IntegrationView:
    id: str
    organization_id: str
    base_url: str
    name: str
    auth: AuthConfig
    active: bool = True
    protocol: str = "http"
    provider: str = "custom"
    description: Optional[str] = None
    logo_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def auth_type(self) -> IntegrationAuthType:
        return self.auth.auth_type

    def to_dict(self) -> Dict[str, Any]:
        """Public representation; secrets and OAuth working state are left out."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "active": self.active,
            "protocol": self.protocol,
            "base_url": self.base_url,
            "name": self.name,
            "description": self.description,
            "logo_url": self.logo_url,
            "provider": self.provider,
            "auth_type": self.auth_type.value,
            "header_names": sorted(self.headers),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
