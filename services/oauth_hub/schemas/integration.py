"""
Pydantic schemas for the OAuth core and its HTTP surface.

Result models returned by the orchestrator never carry raw exceptions or
token material; the routers serialize them directly.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.oauth_hub.models.connection import ConnectionHealth, ConnectionStatus
from services.oauth_hub.schemas.errors import ClassifiedError, ErrorKind, RecoveryAction


class OAuthCallbackResult(BaseModel):
    """Outcome of completing an authorization-code callback."""

    success: bool = Field(..., description="Whether the connection was established")
    integration_id: Optional[str] = Field(None, description="Integration from state")
    user_id: Optional[str] = Field(None, description="User from state")
    return_url: Optional[str] = Field(None, description="Where to send the user next")
    error: Optional[ClassifiedError] = Field(None, description="Classified failure")
    error_code: Optional[ErrorKind] = Field(None, description="Failure kind")

    @classmethod
    def failure(
        cls,
        error: ClassifiedError,
        integration_id: Optional[str] = None,
        user_id: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> "OAuthCallbackResult":
        return cls(
            success=False,
            integration_id=integration_id,
            user_id=user_id,
            return_url=return_url,
            error=error,
            error_code=error.kind,
        )


class TokenRefreshResult(BaseModel):
    success: bool
    integration_id: str
    status: ConnectionStatus
    expires_at: Optional[datetime] = None
    error: Optional[ClassifiedError] = None
    error_code: Optional[ErrorKind] = None
    message: Optional[str] = None


class DisconnectResult(BaseModel):
    success: bool = Field(..., description="Disconnect completed (always true)")
    found: bool = Field(..., description="Whether a connection existed")
    integration_id: str
    token_revoked: bool = Field(default=False)


class ConnectionTestResult(BaseModel):
    """Outcome of a lightweight authenticated health check."""

    integration_id: str
    healthy: bool
    tested: bool = Field(
        True, description="False when the integration has no health endpoint"
    )
    error: Optional[ClassifiedError] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None


class ConnectionStatusView(BaseModel):
    """Read-only projection of a ConnectionRecord without token material."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    integration_id: str
    status: ConnectionStatus
    connection_health: ConnectionHealth = ConnectionHealth.UNKNOWN
    connected_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    has_refresh_token: bool = False
    scope: Optional[str] = None
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    error_count: int = 0
    provider_user_id: Optional[str] = None
    provider_username: Optional[str] = None
    provider_email: Optional[str] = None


class RecoveryResult(BaseModel):
    success: bool
    integration_id: str
    action: RecoveryAction
    message: str
    error_kind: Optional[ErrorKind] = None
    retry_after: Optional[float] = Field(
        None, description="Seconds to wait before the next attempt"
    )
    requires_user_action: bool = False


class BulkRecoveryResult(BaseModel):
    user_id: str
    total: int
    recovered: int
    failed: int
    results: List[RecoveryResult] = Field(default_factory=list)


# HTTP request / response models


class ConnectRequest(BaseModel):
    """Body of ``POST /api/integrations/{integration_id}/connect``."""

    user_id: str = Field(..., min_length=1, max_length=255)
    return_url: Optional[str] = Field(None, max_length=2048)
    shop: Optional[str] = Field(None, max_length=255, description="Shopify shop domain")

    @field_validator("user_id")
    @classmethod
    def strip_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("user_id must not be blank")
        return value


class ConnectResponse(BaseModel):
    authorization_url: str
    integration_id: str
    requires_pkce: bool


class IntegrationInfoResponse(BaseModel):
    id: str
    name: str
    description: str
    category: str
    auth_type: str
    scopes: List[str] = Field(default_factory=list)
    requires_pkce: bool = False
    required_fields: List[str] = Field(default_factory=list)
    production_ready: bool = False
    configured: bool = False
    requirements: Dict[str, Any] = Field(default_factory=dict)


class ConnectionListResponse(BaseModel):
    user_id: str
    connections: List[ConnectionStatusView] = Field(default_factory=list)
    total: int


class ConnectionHealthIssue(BaseModel):
    integration_id: str
    issue: str
    severity: str


class UserHealthResponse(BaseModel):
    user_id: str
    healthy: int
    unhealthy: int
    total: int
    issues: List[ConnectionHealthIssue] = Field(default_factory=list)


class ConnectionTestSuiteResponse(BaseModel):
    user_id: str
    total: int
    passed: int
    failed: int
    results: List[ConnectionTestResult] = Field(default_factory=list)


class WebhookAck(BaseModel):
    received: bool = True
    provider: str
    topic: Optional[str] = None
