"""
Structured logging for the OAuth Integration Hub.

Events are snake_case names with keyword context rendered by structlog as
JSON (or console output for local development). OAuth secrets that end up
in event context are masked before rendering.
"""

import logging
import sys
import time
import uuid
from typing import Any, Callable, List, MutableMapping, Optional

import structlog
from fastapi import Request, Response

from services.oauth_hub.settings import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "client_secret",
        "code",
        "code_verifier",
        "pkce_verifier",
        "authorization",
        "password",
    }
)
REDACTED = "[REDACTED]"


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking token-bearing keys at the top level."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    # httpx logs full request URLs, which include authorize and token endpoints
    logging.getLogger("httpx").setLevel(logging.WARNING)

    processors: List[Callable[..., Any]] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def create_request_logging_middleware() -> Callable:
    """
    HTTP middleware that tags every log line with a request id.

    Only the path is logged. OAuth callbacks carry the authorization code
    and state in the query string.
    """

    async def log_requests(request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        logger = get_logger("oauth_hub.http")
        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=elapsed_ms,
        )
        response.headers["X-Request-Id"] = request_id
        return response

    return log_requests
