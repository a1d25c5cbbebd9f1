"""
OAuth integrations router.

Connect and callback endpoints for the browser flow, plus the management
surface the dashboard uses for connection status, refresh, health checks,
recovery and token maintenance.
"""

from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import RedirectResponse

from services.oauth_hub.container import ServiceContainer
from services.oauth_hub.dependencies import get_container, get_request_metadata
from services.oauth_hub.exceptions import (
    IntegrationNotFoundError,
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from services.oauth_hub.logging_config import get_logger
from services.oauth_hub.models.connection import ConnectionStatus
from services.oauth_hub.schemas.errors import ErrorKind
from services.oauth_hub.schemas.integration import (
    BulkRecoveryResult,
    ConnectionListResponse,
    ConnectionStatusView,
    ConnectionTestResult,
    ConnectionTestSuiteResponse,
    ConnectRequest,
    ConnectResponse,
    DisconnectResult,
    IntegrationInfoResponse,
    OAuthCallbackResult,
    RecoveryResult,
    TokenRefreshResult,
    UserHealthResponse,
)
from services.oauth_hub.services.audit_service import AuditSeverity, SecurityViolations
from services.oauth_hub.services.token_maintenance import MaintenanceStats

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/integrations",
    tags=["Integrations"],
    responses={
        400: {"description": "Invalid request"},
        404: {"description": "Integration or connection not found"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Integration not configured"},
    },
)

# Coarse callback failure reasons shown to the browser
CALLBACK_FAILURE_REASONS: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_STATE: "state",
    ErrorKind.EXPIRED_STATE: "state",
    ErrorKind.INVALID_SIGNATURE: "hmac",
    ErrorKind.INVALID_GRANT: "token",
    ErrorKind.TOKEN_EXPIRED: "token",
    ErrorKind.UNAUTHORIZED: "token",
    ErrorKind.INVALID_CLIENT: "config",
    ErrorKind.INVALID_CONFIGURATION: "config",
    ErrorKind.OAUTH_NOT_CONFIGURED: "config",
    ErrorKind.ACCESS_DENIED: "denied",
}


def callback_failure_reason(result: OAuthCallbackResult) -> str:
    if result.error_code is None:
        return "provider"
    return CALLBACK_FAILURE_REASONS.get(result.error_code, "provider")


def _app_url(container: ServiceContainer, path: str) -> str:
    return f"{container.settings.app_base_url.rstrip('/')}{path}"


def success_redirect_url(container: ServiceContainer, result: OAuthCallbackResult) -> str:
    if result.return_url:
        if result.return_url.startswith("/"):
            return _app_url(container, result.return_url)
        return result.return_url
    return _app_url(
        container,
        "/dashboard/integrations?" + urlencode({"success": result.integration_id or ""}),
    )


def error_redirect_url(container: ServiceContainer, result: OAuthCallbackResult) -> str:
    query = {"reason": callback_failure_reason(result)}
    if result.integration_id:
        query["integration"] = result.integration_id
    return _app_url(container, "/dashboard/integrations/error?" + urlencode(query))


async def enforce_rate_limit(
    container: ServiceContainer,
    key: str,
    metadata: Mapping[str, Optional[str]],
    response: Optional[Response] = None,
    user_id: Optional[str] = None,
    integration_id: Optional[str] = None,
    max_requests: Optional[int] = None,
) -> None:
    """
    Count a request against ``key`` and audit a breach.

    Raises:
        RateLimitExceededError: If the window is exhausted
    """
    result = container.security_manager.check_rate_limit(key, max_requests=max_requests)
    if response is not None:
        response.headers.update(result.headers())
    if result.allowed:
        return
    await container.audit_logger.log_security_event(
        violation_type=SecurityViolations.RATE_LIMIT,
        description=f"Rate limit exceeded for {key.split(':', 1)[0]}",
        severity=AuditSeverity.MEDIUM,
        user_id=user_id,
        integration_id=integration_id,
        details={
            "key_hash": container.security_manager.hash_value(key),
            "limit": result.limit,
            "retry_after": result.retry_after,
        },
        ip_address=metadata.get("ip"),
        user_agent=metadata.get("user_agent"),
    )
    raise RateLimitExceededError(
        key=key,
        retry_after=result.retry_after or 1,
        limit=result.limit,
        reset_time=result.reset_time,
    )


# Catalog


@router.get("/", response_model=List[IntegrationInfoResponse])
async def list_integrations(
    container: ServiceContainer = Depends(get_container),
) -> List[IntegrationInfoResponse]:
    """List every catalog integration with its readiness."""
    registry = container.credential_registry
    return [
        IntegrationInfoResponse(**registry.get_integration_info(integration_id))
        for integration_id in sorted(registry.definitions)
    ]


@router.get("/config-status")
async def get_config_status(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    registry = container.credential_registry
    return {
        **registry.get_configuration_status(),
        "validation": registry.validate_configuration(),
    }


# Authorization flow


@router.post("/{integration_id}/connect", response_model=ConnectResponse)
async def connect_integration(
    integration_id: str,
    payload: ConnectRequest,
    request: Request,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> ConnectResponse:
    """
    Start the OAuth authorization-code flow.

    Returns the provider authorize URL the browser should be sent to.
    Requests are rate limited per client IP and per user.
    """
    metadata = get_request_metadata(request)
    await enforce_rate_limit(
        container,
        f"connect:ip:{metadata['ip'] or 'unknown'}",
        metadata,
        user_id=payload.user_id,
        integration_id=integration_id,
    )
    await enforce_rate_limit(
        container,
        f"connect:user:{payload.user_id}",
        metadata,
        response=response,
        user_id=payload.user_id,
        integration_id=integration_id,
    )

    definition = container.credential_registry.definitions.get(integration_id)
    if definition is None or not definition.is_oauth:
        raise IntegrationNotFoundError(integration_id)

    provider_params: Dict[str, str] = {}
    if payload.shop:
        provider_params["shop"] = payload.shop
    missing = [name for name in definition.required_fields if not provider_params.get(name)]
    if missing:
        raise ValidationError(
            f"Missing required field(s) for {integration_id}: {', '.join(missing)}",
            field=missing[0],
        )

    authorization_url = container.oauth_manager.generate_auth_url(
        integration_id,
        payload.user_id,
        return_url=payload.return_url,
        provider_params=provider_params,
    )
    return ConnectResponse(
        authorization_url=authorization_url,
        integration_id=integration_id,
        requires_pkce=definition.requires_pkce,
    )


@router.get("/oauth/callback", response_class=RedirectResponse, status_code=302)
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    x_user_id: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> RedirectResponse:
    """
    Provider redirect target for every integration.

    Always answers with a redirect; failures carry only a coarse reason.
    """
    metadata = get_request_metadata(request)
    if error:
        result = await container.oauth_manager.handle_callback_error(
            state, error, error_description, request_metadata=metadata
        )
    else:
        result = await container.oauth_manager.handle_callback(
            code,
            state,
            request_metadata=metadata,
            authenticated_user_id=x_user_id,
            callback_params=dict(request.query_params),
        )

    if result.success:
        return RedirectResponse(success_redirect_url(container, result), status_code=302)
    logger.info(
        "oauth_callback_redirect_error",
        integration_id=result.integration_id,
        reason=callback_failure_reason(result),
    )
    return RedirectResponse(error_redirect_url(container, result), status_code=302)


# Connection management


@router.get("/users/{user_id}/connections", response_model=ConnectionListResponse)
async def list_connections(
    user_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionListResponse:
    connections = await container.oauth_manager.get_user_connections(user_id)
    return ConnectionListResponse(
        user_id=user_id, connections=connections, total=len(connections)
    )


@router.get(
    "/users/{user_id}/connections/{integration_id}",
    response_model=ConnectionStatusView,
)
async def get_connection(
    user_id: str,
    integration_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionStatusView:
    """Connection status; ``expired`` is computed from the stored expiry."""
    if integration_id not in container.credential_registry.definitions:
        raise IntegrationNotFoundError(integration_id)
    return await container.oauth_manager.get_connection_status(user_id, integration_id)


@router.delete(
    "/users/{user_id}/connections/{integration_id}", response_model=DisconnectResult
)
async def disconnect_connection(
    user_id: str,
    integration_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> DisconnectResult:
    return await container.oauth_manager.disconnect(
        user_id, integration_id, request_metadata=get_request_metadata(request)
    )


@router.post(
    "/users/{user_id}/connections/{integration_id}/refresh",
    response_model=TokenRefreshResult,
)
async def refresh_connection(
    user_id: str,
    integration_id: str,
    container: ServiceContainer = Depends(get_container),
) -> TokenRefreshResult:
    view = await container.oauth_manager.get_connection_status(user_id, integration_id)
    if view.status == ConnectionStatus.DISCONNECTED:
        raise NotFoundError("Connection", integration_id)
    return await container.scheduler.refresh_user_token(user_id, integration_id)


@router.post(
    "/users/{user_id}/connections/{integration_id}/test",
    response_model=ConnectionTestResult,
)
async def test_connection(
    user_id: str,
    integration_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionTestResult:
    view = await container.oauth_manager.get_connection_status(user_id, integration_id)
    if view.status == ConnectionStatus.DISCONNECTED:
        raise NotFoundError("Connection", integration_id)
    return await container.oauth_manager.test_connection(user_id, integration_id)


@router.post(
    "/users/{user_id}/connections/{integration_id}/recover",
    response_model=RecoveryResult,
)
async def recover_connection(
    user_id: str,
    integration_id: str,
    container: ServiceContainer = Depends(get_container),
) -> RecoveryResult:
    return await container.recovery_service.recover_connection(user_id, integration_id)


@router.post("/users/{user_id}/recover", response_model=BulkRecoveryResult)
async def recover_user_connections(
    user_id: str,
    container: ServiceContainer = Depends(get_container),
) -> BulkRecoveryResult:
    return await container.recovery_service.bulk_recovery(user_id)


@router.get("/users/{user_id}/health", response_model=UserHealthResponse)
async def get_user_health(
    user_id: str,
    container: ServiceContainer = Depends(get_container),
) -> UserHealthResponse:
    return await container.recovery_service.health_check(user_id)


@router.post("/users/{user_id}/test-suite", response_model=ConnectionTestSuiteResponse)
async def run_connection_test_suite(
    user_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionTestSuiteResponse:
    """Test every connection of a user (ops diagnostics)."""
    return await container.recovery_service.run_test_suite(user_id)


# Maintenance


@router.get("/maintenance/status")
async def get_maintenance_status(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    return {
        "scheduler": container.scheduler.get_health_status(),
        "recovery": container.recovery_service.get_stats(),
    }


@router.post("/maintenance/run", response_model=MaintenanceStats)
async def run_maintenance(
    container: ServiceContainer = Depends(get_container),
) -> MaintenanceStats:
    return await container.scheduler.force_maintenance_cycle()


@router.get("/{integration_id}", response_model=IntegrationInfoResponse)
async def get_integration(
    integration_id: str,
    container: ServiceContainer = Depends(get_container),
) -> IntegrationInfoResponse:
    info = container.credential_registry.get_integration_info(integration_id)
    if info is None:
        raise IntegrationNotFoundError(integration_id)
    return IntegrationInfoResponse(**info)
