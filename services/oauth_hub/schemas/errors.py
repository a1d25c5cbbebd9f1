"""
OAuth error taxonomy shared by the classifier, the orchestrator and the
recovery service.

Kept free of service imports so every layer can depend on it.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Closed set of OAuth failure kinds."""

    INVALID_STATE = "INVALID_STATE"
    EXPIRED_STATE = "EXPIRED_STATE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    OAUTH_NOT_CONFIGURED = "OAUTH_NOT_CONFIGURED"
    INVALID_CLIENT = "INVALID_CLIENT"
    INVALID_GRANT = "INVALID_GRANT"
    INVALID_SCOPE = "INVALID_SCOPE"
    ACCESS_DENIED = "ACCESS_DENIED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RecoveryAction(str, Enum):
    """Recovery strategies the RecoveryService knows how to execute."""

    REFRESH_TOKEN = "refresh_token"
    RETRY = "retry"
    RECONNECT = "reconnect"
    MANUAL_INTERVENTION = "manual_intervention"
    REJECT = "reject"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ClassifiedError(BaseModel):
    """A raw failure mapped into the taxonomy."""

    kind: ErrorKind = Field(..., description="Error kind")
    retryable: bool = Field(..., description="Whether retrying may succeed")
    action: RecoveryAction = Field(..., description="Suggested recovery action")
    severity: ErrorSeverity = Field(default=ErrorSeverity.MEDIUM)
    message: str = Field(..., description="Diagnostic message (never shown to users)")
    user_message: str = Field(..., description="Safe message for end users")
    provider_error: Optional[str] = Field(
        None, description="Provider's own error code, if any"
    )
    status_code: Optional[int] = Field(None, description="HTTP status, if any")
    retry_after: Optional[float] = Field(
        None, description="Provider-informed retry delay in seconds"
    )
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_audit_details(self) -> Dict[str, Any]:
        return {
            "error_kind": self.kind.value,
            "retryable": self.retryable,
            "action": self.action.value,
            "severity": self.severity.value,
            "message": self.message,
            "provider_error": self.provider_error,
            "status_code": self.status_code,
        }
