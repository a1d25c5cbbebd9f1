"""
Request security middleware for the OAuth Integration Hub.

Rejects HTTP methods outside the allowlist and, in production, checks the
Origin of state-changing requests against the configured origins.
"""

from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from services.oauth_hub.dependencies import get_request_metadata
from services.oauth_hub.logging_config import get_logger
from services.oauth_hub.security.security_manager import SecurityManager
from services.oauth_hub.services.audit_service import AuditSeverity, SecurityViolations
from services.oauth_hub.settings import OAUTH_CALLBACK_PATH, Settings

logger = get_logger(__name__)

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"})
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})

# Provider-originated requests carry no browser Origin
ORIGIN_EXEMPT_PREFIXES = ("/webhooks/", OAUTH_CALLBACK_PATH, "/health")


class RequestSecurityMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        settings: Settings,
        exempt_prefixes: Iterable[str] = ORIGIN_EXEMPT_PREFIXES,
    ):
        """
        Initialize request security middleware.

        Args:
            app: FastAPI application
            settings: Service settings (environment and allowed origins)
            exempt_prefixes: Paths that skip origin validation
        """
        super().__init__(app)
        self.settings = settings
        self.exempt_prefixes = tuple(exempt_prefixes)

    def _requires_origin_check(self, request: Request) -> bool:
        if not self.settings.is_production:
            return False
        if request.method not in STATE_CHANGING_METHODS:
            return False
        return not request.url.path.startswith(self.exempt_prefixes)

    async def dispatch(self, request: Request, call_next):
        if request.method not in ALLOWED_METHODS:
            logger.warning(
                "method_not_allowed", method=request.method, path=request.url.path
            )
            return JSONResponse(
                status_code=405,
                content={
                    "error": {
                        "type": "http_error",
                        "message": f"Method {request.method} not allowed",
                    }
                },
                headers={"Allow": ", ".join(sorted(ALLOWED_METHODS))},
            )

        if self._requires_origin_check(request):
            origin = request.headers.get("origin")
            referer = request.headers.get("referer")
            if not SecurityManager.validate_request_origin(
                origin, referer, self.settings.get_allowed_origins()
            ):
                await self._audit_invalid_origin(request, origin or referer)
                return JSONResponse(
                    status_code=403,
                    content={
                        "error": {
                            "type": "security_error",
                            "message": "Request origin not allowed",
                        }
                    },
                )

        return await call_next(request)

    async def _audit_invalid_origin(self, request: Request, origin: Optional[str]) -> None:
        metadata = get_request_metadata(request)
        logger.warning("invalid_request_origin", origin=origin, path=request.url.path)
        container = getattr(request.app.state, "container", None)
        if container is None:
            return
        await container.audit_logger.log_security_event(
            violation_type=SecurityViolations.INVALID_ORIGIN,
            description="State-changing request from a disallowed origin",
            severity=AuditSeverity.MEDIUM,
            details={"origin": origin, "path": request.url.path, "method": request.method},
            ip_address=metadata["ip"],
            user_agent=metadata["user_agent"],
        )
