"""
Error classification for OAuth failures.

Maps HTTP responses, provider error bodies and raised exceptions onto the
closed ErrorKind taxonomy. Provider error codes are resolved through an
extensible lookup so new providers only register their codes.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from services.oauth_hub.exceptions import (
    EncryptionError,
    ExpiredStateError,
    IntegrationNotFoundError,
    InvalidConfigurationError,
    InvalidStateError,
    OAuthError,
    OAuthNotConfiguredError,
    ValidationError,
)
from services.oauth_hub.schemas.errors import (
    ClassifiedError,
    ErrorKind,
    ErrorSeverity,
    RecoveryAction,
)
from services.oauth_hub.utils.retry import compute_backoff_delay

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ErrorProfile:
    retryable: bool
    action: RecoveryAction
    severity: ErrorSeverity
    user_message: str
    description: str


ERROR_PROFILES: Dict[ErrorKind, ErrorProfile] = {
    ErrorKind.INVALID_STATE: ErrorProfile(
        False,
        RecoveryAction.REJECT,
        ErrorSeverity.HIGH,
        "The connection request was invalid. Please try connecting again.",
        "OAuth state parameter is missing, malformed or does not match the session",
    ),
    ErrorKind.EXPIRED_STATE: ErrorProfile(
        False,
        RecoveryAction.REJECT,
        ErrorSeverity.MEDIUM,
        "The connection request timed out. Please try connecting again.",
        "OAuth state parameter is older than the maximum lifetime",
    ),
    ErrorKind.INVALID_SIGNATURE: ErrorProfile(
        False,
        RecoveryAction.REJECT,
        ErrorSeverity.HIGH,
        "The connection request could not be verified. Please try connecting again.",
        "Provider callback signature did not verify",
    ),
    ErrorKind.INVALID_CONFIGURATION: ErrorProfile(
        False,
        RecoveryAction.MANUAL_INTERVENTION,
        ErrorSeverity.HIGH,
        "This integration is misconfigured. Our team has been notified.",
        "Integration definition is unknown or incomplete",
    ),
    ErrorKind.OAUTH_NOT_CONFIGURED: ErrorProfile(
        False,
        RecoveryAction.MANUAL_INTERVENTION,
        ErrorSeverity.HIGH,
        "This integration is not available yet. Please contact support.",
        "No client credentials are deployed for the integration",
    ),
    ErrorKind.INVALID_CLIENT: ErrorProfile(
        False,
        RecoveryAction.RECONNECT,
        ErrorSeverity.HIGH,
        "The integration rejected our application credentials. Please reconnect.",
        "Provider rejected the client id or secret",
    ),
    ErrorKind.INVALID_GRANT: ErrorProfile(
        False,
        RecoveryAction.RECONNECT,
        ErrorSeverity.MEDIUM,
        "Your authorization is no longer valid. Please reconnect the integration.",
        "Authorization code or refresh token is invalid, expired or revoked",
    ),
    ErrorKind.INVALID_SCOPE: ErrorProfile(
        False,
        RecoveryAction.RECONNECT,
        ErrorSeverity.MEDIUM,
        "The requested permissions were not granted. Please reconnect.",
        "Provider rejected the requested scopes",
    ),
    ErrorKind.ACCESS_DENIED: ErrorProfile(
        False,
        RecoveryAction.RECONNECT,
        ErrorSeverity.LOW,
        "Access was denied. Please approve the requested permissions to connect.",
        "User or provider denied the authorization request",
    ),
    ErrorKind.INSUFFICIENT_PERMISSIONS: ErrorProfile(
        False,
        RecoveryAction.RECONNECT,
        ErrorSeverity.MEDIUM,
        "The connection lacks required permissions. Please reconnect.",
        "Access token lacks the scope required by the API call",
    ),
    ErrorKind.RATE_LIMITED: ErrorProfile(
        True,
        RecoveryAction.RETRY,
        ErrorSeverity.LOW,
        "The service is busy. We'll retry automatically.",
        "Provider rate limit reached",
    ),
    ErrorKind.PROVIDER_ERROR: ErrorProfile(
        True,
        RecoveryAction.RETRY,
        ErrorSeverity.MEDIUM,
        "The integration is having problems. We'll retry automatically.",
        "Provider returned a server error or a malformed response",
    ),
    ErrorKind.NETWORK_ERROR: ErrorProfile(
        True,
        RecoveryAction.RETRY,
        ErrorSeverity.MEDIUM,
        "We couldn't reach the integration. We'll retry automatically.",
        "Connection to the provider failed",
    ),
    ErrorKind.TIMEOUT: ErrorProfile(
        True,
        RecoveryAction.RETRY,
        ErrorSeverity.MEDIUM,
        "The integration took too long to respond. We'll retry automatically.",
        "Provider call exceeded its timeout",
    ),
    ErrorKind.TOKEN_EXPIRED: ErrorProfile(
        False,
        RecoveryAction.RECONNECT,
        ErrorSeverity.MEDIUM,
        "Your connection has expired. Please reconnect the integration.",
        "Access token expired and no refresh token is available",
    ),
    ErrorKind.UNAUTHORIZED: ErrorProfile(
        True,
        RecoveryAction.REFRESH_TOKEN,
        ErrorSeverity.LOW,
        "Refreshing your connection.",
        "Provider rejected the access token; a refresh token is on file",
    ),
    ErrorKind.UNKNOWN_ERROR: ErrorProfile(
        False,
        RecoveryAction.MANUAL_INTERVENTION,
        ErrorSeverity.MEDIUM,
        "An unexpected error occurred. Our team has been notified.",
        "Failure did not match any known error kind",
    ),
}

DEFAULT_PROVIDER_ERROR_CODES: Dict[str, ErrorKind] = {
    "invalid_client": ErrorKind.INVALID_CLIENT,
    "unauthorized_client": ErrorKind.INVALID_CLIENT,
    "invalid_client_id": ErrorKind.INVALID_CLIENT,
    "bad_client_secret": ErrorKind.INVALID_CLIENT,
    "invalid_grant": ErrorKind.INVALID_GRANT,
    "invalid_code": ErrorKind.INVALID_GRANT,
    "code_already_used": ErrorKind.INVALID_GRANT,
    "invalid_refresh_token": ErrorKind.INVALID_GRANT,
    "token_revoked": ErrorKind.INVALID_GRANT,
    "invalid_scope": ErrorKind.INVALID_SCOPE,
    "access_denied": ErrorKind.ACCESS_DENIED,
    "insufficient_scope": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "missing_scope": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "invalid_token": ErrorKind.UNAUTHORIZED,
    "token_expired": ErrorKind.UNAUTHORIZED,
    "expired_token": ErrorKind.UNAUTHORIZED,
    "slow_down": ErrorKind.RATE_LIMITED,
    "rate_limited": ErrorKind.RATE_LIMITED,
    "ratelimited": ErrorKind.RATE_LIMITED,
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "server_error": ErrorKind.PROVIDER_ERROR,
    "temporarily_unavailable": ErrorKind.PROVIDER_ERROR,
}

# Fallback delays (seconds) for retryable kinds without provider guidance
DEFAULT_RETRY_DELAYS: Dict[ErrorKind, float] = {
    ErrorKind.RATE_LIMITED: 60.0,
    ErrorKind.NETWORK_ERROR: 30.0,
    ErrorKind.TIMEOUT: 15.0,
}


def is_retryable_kind(code: Optional[str]) -> bool:
    """Whether a stored ``last_error_code`` names a transient failure."""
    if not code:
        return False
    try:
        kind = ErrorKind(code)
    except ValueError:
        return False
    return ERROR_PROFILES[kind].retryable


def extract_provider_error(body: Any) -> tuple[Optional[str], Optional[str]]:
    """Pull ``(error_code, description)`` out of a provider error body."""
    if not isinstance(body, Mapping):
        return None, None

    error = body.get("error")
    description = body.get("error_description") or body.get("message")
    if isinstance(error, Mapping):
        # Graph-style {"error": {"code": ..., "type": ..., "message": ...}}
        description = description or error.get("message")
        error = error.get("code") or error.get("type") or error.get("status")
    elif error is None and isinstance(body.get("errors"), list) and body["errors"]:
        first = body["errors"][0]
        if isinstance(first, Mapping):
            error = first.get("code") or first.get("type")
            description = description or first.get("message")

    code = str(error).strip().lower() if error not in (None, "") else None
    return code, str(description) if description else None


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """Seconds from a Retry-After header (delta-seconds or HTTP date)."""
    if not headers:
        return None
    value = None
    for key, header_value in headers.items():
        if key.lower() == "retry-after":
            value = header_value
            break
    if value is None:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


class ErrorClassifier:
    """
    Classifies raw failures into ClassifiedError values.

    Every input maps to exactly one kind; anything unrecognised becomes
    UNKNOWN_ERROR rather than propagating.
    """

    def __init__(
        self,
        provider_error_codes: Optional[Mapping[str, ErrorKind]] = None,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        retry_multiplier: float = 2.0,
    ):
        self._provider_codes: Dict[str, ErrorKind] = dict(DEFAULT_PROVIDER_ERROR_CODES)
        if provider_error_codes:
            self._provider_codes.update(
                {code.lower(): kind for code, kind in provider_error_codes.items()}
            )
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.retry_multiplier = retry_multiplier

    def register_provider_error(self, code: str, kind: ErrorKind) -> None:
        self._provider_codes[code.lower()] = kind

    def kind_for_provider_code(self, code: Optional[str]) -> Optional[ErrorKind]:
        if not code:
            return None
        return self._provider_codes.get(code.lower())

    def build(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        provider_error: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ClassifiedError:
        profile = ERROR_PROFILES[kind]
        return ClassifiedError(
            kind=kind,
            retryable=profile.retryable,
            action=profile.action,
            severity=profile.severity,
            message=message or profile.description,
            user_message=profile.user_message,
            provider_error=provider_error,
            status_code=status_code,
            retry_after=retry_after,
            details=details or {},
        )

    def classify_provider_error(
        self,
        code: Optional[str],
        description: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> ClassifiedError:
        kind = self.kind_for_provider_code(code) or ErrorKind.UNKNOWN_ERROR
        message = description or (f"Provider error: {code}" if code else None)
        return self.build(
            kind, message, provider_error=code, status_code=status_code
        )

    def classify_http_response(
        self,
        status_code: int,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        context: str = "token",
    ) -> ClassifiedError:
        """
        Classify a non-2xx provider response.

        ``context`` is ``"token"`` for token-endpoint calls and ``"api"`` for
        authenticated API calls; it decides how bare 401/403 are read.
        """
        code, description = extract_provider_error(body)
        retry_after = parse_retry_after(headers)
        mapped = self.kind_for_provider_code(code)

        if status_code == 429:
            kind = ErrorKind.RATE_LIMITED
        elif mapped is not None:
            kind = mapped
        elif status_code >= 500:
            kind = ErrorKind.PROVIDER_ERROR
        elif status_code == 401:
            kind = ErrorKind.INVALID_CLIENT if context == "token" else ErrorKind.UNAUTHORIZED
        elif status_code == 403:
            kind = (
                ErrorKind.ACCESS_DENIED
                if context == "token"
                else ErrorKind.INSUFFICIENT_PERMISSIONS
            )
        else:
            kind = ErrorKind.UNKNOWN_ERROR

        message = f"HTTP {status_code}"
        if code:
            message = f"{message}: {code}"
        if description:
            message = f"{message} ({description})"

        classified = self.build(
            kind,
            message,
            provider_error=code,
            status_code=status_code,
            retry_after=retry_after,
        )
        logger.info(
            "provider_error_classified",
            status_code=status_code,
            provider_error=code,
            error_kind=kind.value,
            context=context,
        )
        return classified

    def classify_exception(self, exc: BaseException) -> ClassifiedError:
        if isinstance(exc, OAuthError):
            return exc.classified
        if isinstance(exc, ExpiredStateError):
            return self.build(ErrorKind.EXPIRED_STATE, exc.message)
        if isinstance(exc, InvalidStateError):
            return self.build(ErrorKind.INVALID_STATE, exc.message)
        if isinstance(exc, OAuthNotConfiguredError):
            return self.build(ErrorKind.OAUTH_NOT_CONFIGURED, exc.message)
        if isinstance(exc, (IntegrationNotFoundError, InvalidConfigurationError)):
            return self.build(ErrorKind.INVALID_CONFIGURATION, exc.message)
        if isinstance(exc, ValidationError):
            return self.build(ErrorKind.INVALID_CONFIGURATION, exc.message)
        if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
            return self.build(ErrorKind.TIMEOUT, f"Request timed out: {type(exc).__name__}")
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            try:
                body = response.json()
            except ValueError:
                body = None
            return self.classify_http_response(
                response.status_code, body, dict(response.headers)
            )
        if isinstance(exc, httpx.TransportError):
            return self.build(
                ErrorKind.NETWORK_ERROR, f"Network error: {type(exc).__name__}"
            )
        if isinstance(exc, EncryptionError):
            return self.build(ErrorKind.UNKNOWN_ERROR, f"Stored token unusable: {exc.message}")

        logger.warning(
            "unclassified_error",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return self.build(
            ErrorKind.UNKNOWN_ERROR, f"{type(exc).__name__}: {exc}"
        )

    def get_user_message(self, error: ClassifiedError) -> str:
        return ERROR_PROFILES[error.kind].user_message

    def calculate_retry_delay(self, error: ClassifiedError, attempt: int = 0) -> float:
        """
        Seconds to wait before retrying ``error``.

        A provider-supplied Retry-After wins; non-retryable errors get 0.
        """
        if not error.retryable:
            return 0.0
        if error.retry_after is not None:
            return error.retry_after
        if error.kind in DEFAULT_RETRY_DELAYS:
            return DEFAULT_RETRY_DELAYS[error.kind]
        return compute_backoff_delay(
            attempt,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            exponential_base=self.retry_multiplier,
        )
