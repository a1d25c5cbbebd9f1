"""
Custom exceptions for the OAuth Integration Hub.

Defines application-specific exceptions with structured error responses.
The HTTP layer translates them into status codes; the OAuth core converts
them into classified results at its boundary.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from services.oauth_hub.schemas.errors import ClassifiedError


class OAuthHubException(Exception):
    """Base exception for the OAuth Integration Hub."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_type: str = "internal_error",
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        self.error_type = error_type
        self.error_code = error_code
        self.timestamp = datetime.now(timezone.utc).isoformat()
        # Matches the X-Request-Id of the request being served, when there is one
        self.request_id = structlog.contextvars.get_contextvars().get(
            "request_id"
        ) or str(uuid.uuid4())
        super().__init__(self.message)

    def to_error_response(self) -> Dict[str, Any]:
        """Convert exception to standardized error response format."""
        return {
            "error": {
                "type": self.error_type,
                "message": self.message,
                "user_message": self._get_user_friendly_message(),
                "details": {
                    **self.details,
                    **({"code": self.error_code} if self.error_code else {}),
                },
                "timestamp": self.timestamp,
                "request_id": self.request_id,
            }
        }

    def _get_user_friendly_message(self) -> str:
        user_friendly_messages = {
            "VALIDATION_FAILED": "Please check your input and try again.",
            "NOT_FOUND": "The requested resource could not be found.",
            "INTEGRATION_NOT_FOUND": "The integration you're looking for doesn't exist.",
            "OAUTH_NOT_CONFIGURED": "This integration is not available yet. Please contact support.",
            "INVALID_CONFIGURATION": "This integration is misconfigured. Please contact support.",
            "INVALID_STATE": "The authorization request is invalid. Please start the connection again.",
            "EXPIRED_STATE": "The authorization request expired. Please start the connection again.",
            "ENCRYPTION_FAILED": "A security error occurred. Please try again later.",
            "TOKEN_ERROR": "The connection needs attention. Please reconnect the integration.",
            "RATE_LIMITED": "Too many requests. Please wait a moment and try again.",
            "WEBHOOK_ERROR": "There was an issue processing the webhook.",
        }
        if self.error_code and self.error_code in user_friendly_messages:
            return user_friendly_messages[self.error_code]
        return "An unexpected error occurred. Please try again later."


class ValidationError(OAuthHubException):
    """Raised when request input fails validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        validation_details = details or {}
        if field:
            validation_details["field"] = field
        if value is not None:
            validation_details["value"] = str(value)
        super().__init__(
            message=message,
            details=validation_details,
            error_type="validation_error",
            error_code="VALIDATION_FAILED",
        )
        self.field = field
        self.value = value


class NotFoundError(OAuthHubException):
    """Raised when a resource does not exist."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        error_code: str = "NOT_FOUND",
    ):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            message=message,
            details={"resource": resource, "identifier": identifier},
            error_type="not_found",
            error_code=error_code,
        )
        self.resource = resource
        self.identifier = identifier


class IntegrationNotFoundError(NotFoundError):
    """Unknown integration id, or an integration that is not OAuth based."""

    def __init__(self, integration_id: str):
        super().__init__(
            "Integration", integration_id, error_code="INTEGRATION_NOT_FOUND"
        )
        self.integration_id = integration_id


class OAuthNotConfiguredError(OAuthHubException):
    """No client credentials are deployed for the integration."""

    def __init__(self, integration_id: str):
        super().__init__(
            message=f"OAuth is not configured for integration '{integration_id}'",
            details={"integration_id": integration_id},
            error_type="configuration_error",
            error_code="OAUTH_NOT_CONFIGURED",
        )
        self.integration_id = integration_id


class InvalidConfigurationError(OAuthHubException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_type="configuration_error",
            error_code="INVALID_CONFIGURATION",
        )


class InvalidStateError(OAuthHubException):
    """OAuth state token is undecodable or structurally incomplete."""

    def __init__(self, message: str = "Invalid OAuth state", reason: str = ""):
        super().__init__(
            message=message,
            details={"reason": reason} if reason else {},
            error_type="security_error",
            error_code="INVALID_STATE",
        )
        self.reason = reason


class ExpiredStateError(OAuthHubException):
    """OAuth state token is older than the maximum lifetime."""

    def __init__(self, age_ms: int, max_age_ms: int):
        super().__init__(
            message="OAuth state has expired",
            details={"age_ms": age_ms, "max_age_ms": max_age_ms},
            error_type="security_error",
            error_code="EXPIRED_STATE",
        )
        self.age_ms = age_ms
        self.max_age_ms = max_age_ms


class EncryptionError(OAuthHubException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_type="encryption_error",
            error_code="ENCRYPTION_FAILED",
        )


class TokenError(OAuthHubException):
    """A usable access token cannot be produced for a connection."""

    def __init__(
        self,
        message: str,
        integration_id: Optional[str] = None,
        classified: Optional[ClassifiedError] = None,
    ):
        details: Dict[str, Any] = {"integration_id": integration_id}
        if classified is not None:
            details["error_kind"] = classified.kind.value
        super().__init__(
            message=message,
            details=details,
            error_type="token_error",
            error_code="TOKEN_ERROR",
        )
        self.integration_id = integration_id
        self.classified = classified


class RateLimitExceededError(OAuthHubException):
    def __init__(self, key: str, retry_after: int, limit: int, reset_time: float):
        super().__init__(
            message="Rate limit exceeded",
            details={"retry_after": retry_after},
            error_type="rate_limit_error",
            error_code="RATE_LIMITED",
        )
        self.key = key
        self.retry_after = retry_after
        self.limit = limit
        self.reset_time = reset_time


class WebhookValidationError(OAuthHubException):
    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(
            message=message,
            details={"provider": provider} if provider else {},
            error_type="webhook_error",
            error_code="WEBHOOK_ERROR",
        )
        self.provider = provider


class ServiceError(OAuthHubException):
    """Unexpected internal failure (storage, programming errors)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_type="internal_error",
            error_code="INTERNAL_ERROR",
        )


class OAuthError(OAuthHubException):
    """A provider interaction failed; carries the classified error."""

    def __init__(self, classified: ClassifiedError):
        super().__init__(
            message=classified.message,
            details=classified.to_audit_details(),
            error_type="oauth_error",
            error_code=classified.kind.value,
        )
        self.classified = classified

    @property
    def kind(self):
        return self.classified.kind

    @property
    def retryable(self) -> bool:
        return self.classified.retryable
