"""
HTTP error mapping for the OAuth Integration Hub.

Translates hub exceptions into JSON error responses with stable status
codes. Generic exceptions become a safe 500 without internal detail.
"""

from datetime import datetime, timezone
from typing import Dict, Type

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from services.oauth_hub.exceptions import (
    EncryptionError,
    ExpiredStateError,
    IntegrationNotFoundError,
    InvalidConfigurationError,
    InvalidStateError,
    NotFoundError,
    OAuthError,
    OAuthHubException,
    OAuthNotConfiguredError,
    RateLimitExceededError,
    ServiceError,
    TokenError,
    ValidationError,
    WebhookValidationError,
)

logger = structlog.get_logger(__name__)

# Most specific classes first; the first isinstance match wins
STATUS_CODES: Dict[Type[OAuthHubException], int] = {
    IntegrationNotFoundError: 404,
    NotFoundError: 404,
    ValidationError: 400,
    InvalidStateError: 400,
    ExpiredStateError: 400,
    OAuthNotConfiguredError: 503,
    InvalidConfigurationError: 500,
    TokenError: 409,
    RateLimitExceededError: 429,
    WebhookValidationError: 401,
    OAuthError: 502,
    EncryptionError: 500,
    ServiceError: 500,
}


def status_code_for(exc: OAuthHubException) -> int:
    for exc_type, status_code in STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return status_code
    return 500


def _http_error_body(status_code: int, detail: object) -> Dict[str, object]:
    return {
        "error": {
            "type": "http_error",
            "message": detail if isinstance(detail, str) else "Request failed",
            "details": {"status_code": status_code}
            if isinstance(detail, str)
            else {"status_code": status_code, "detail": detail},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the hub's exception handlers on ``app``.

    - OAuthHubException: mapped status code with the structured error body
    - HTTPException: original status code and headers, normalized body
    - Exception: 500 with a generic message
    """

    @app.exception_handler(OAuthHubException)
    async def oauth_hub_exception_handler(
        request: Request, exc: OAuthHubException
    ) -> JSONResponse:
        status_code = status_code_for(exc)
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(exc.reset_time)),
            }
        if status_code >= 500:
            logger.error(
                "request_failed",
                path=request.url.path,
                error_type=exc.error_type,
                error=exc.message,
            )
        return JSONResponse(
            status_code=status_code, content=exc.to_error_response(), headers=headers
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=_http_error_body(exc.status_code, exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "type": "internal_error",
                    "message": "An unexpected error occurred",
                    "details": {"exception_type": type(exc).__name__},
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            },
        )
