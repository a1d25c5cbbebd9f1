"""
OAuth Integration Hub - FastAPI Application

Main entry point for the OAuth Integration Hub service. Provides the
authorization-code flow for third-party integrations, connection
management, webhook intake and background token maintenance.
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from services.oauth_hub.container import ServiceContainer, build_container
from services.oauth_hub.database import close_db, create_all_tables, get_engine
from services.oauth_hub.http_errors import register_exception_handlers
from services.oauth_hub.logging_config import (
    configure_logging,
    create_request_logging_middleware,
    get_logger,
)
from services.oauth_hub.middleware.security import RequestSecurityMiddleware
from services.oauth_hub.routers import integrations_router, webhooks_router
from services.oauth_hub.settings import Settings, get_settings

SERVICE_VERSION = "0.1.0"

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the service container (unless one was injected), prepares the
    database and runs the token maintenance scheduler while the app is up.
    """
    container: Optional[ServiceContainer] = getattr(app.state, "container", None)
    settings = container.settings if container else get_settings()

    configure_logging(settings)
    logger.info(
        "service_starting",
        service=settings.service_name,
        environment=settings.environment,
        debug=settings.debug,
    )

    if container is None:
        container = build_container(settings)
        app.state.container = container

    if container.uses_sql_storage:
        try:
            await create_all_tables()
            logger.info("database_connected")
        except Exception as e:
            logger.error("database_connect_failed", error=str(e))
            raise

    validation = container.credential_registry.validate_configuration()
    if not validation["valid"]:
        logger.warning("oauth_configuration_issues", issues=validation["issues"])

    if settings.maintenance_enabled:
        container.scheduler.start()

    yield

    logger.info("service_stopping", service=settings.service_name)
    await container.scheduler.stop()
    if container.uses_sql_storage:
        try:
            await close_db()
            logger.info("database_disconnected")
        except Exception as e:
            logger.error("database_disconnect_failed", error=str(e))


async def _database_status(container: ServiceContainer) -> Dict[str, Any]:
    if not container.uses_sql_storage:
        return {"status": "healthy", "connected": True, "backend": "memory"}
    start = time.perf_counter()
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {"status": "unhealthy", "connected": False, "error": "Database unavailable"}
    return {
        "status": "healthy",
        "connected": True,
        "response_time_ms": round((time.perf_counter() - start) * 1000, 2),
    }


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Factory function to create and configure the FastAPI application.

    Args:
        container: Pre-built service container (tests inject one with
            in-memory stores); built in the lifespan when omitted
        settings: Settings override; defaults to the container's settings
    """
    settings = settings or (container.settings if container else get_settings())

    app = FastAPI(
        title="OAuth Integration Hub",
        description="Connects CrewFlow users to third-party platforms over OAuth 2.0",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(RequestSecurityMiddleware, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )
    app.middleware("http")(create_request_logging_middleware())

    register_exception_handlers(app)

    app.include_router(integrations_router)
    app.include_router(webhooks_router)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request) -> JSONResponse:
        """Liveness and readiness summary for load balancers."""
        current: ServiceContainer = request.app.state.container
        database = await _database_status(current)
        configuration = current.credential_registry.validate_configuration()
        scheduler = current.scheduler.get_health_status()

        status = "healthy"
        if database["status"] != "healthy":
            status = "unhealthy"
        elif not configuration["valid"] or (
            current.settings.maintenance_enabled and not scheduler["healthy"]
        ):
            status = "degraded"

        return JSONResponse(
            status_code=503 if status == "unhealthy" else 200,
            content={
                "status": status,
                "service": current.settings.service_name,
                "version": SERVICE_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "environment": current.settings.environment,
                "checks": {
                    "database": database,
                    "configuration": {
                        "status": "healthy" if configuration["valid"] else "degraded",
                        "issues": configuration["issues"],
                        "configured": current.credential_registry.list_ready(),
                    },
                    "maintenance": scheduler,
                },
            },
        )

    return app


# Global app instance - will be created lazily
_app: FastAPI | None = None


def get_app() -> FastAPI:
    """Get the FastAPI application instance, creating it if necessary."""
    global _app
    if _app is None:
        _app = create_app()
    return _app


class AppProxy:
    """Proxy object that creates the FastAPI app on first access."""

    def __getattr__(self, name: str) -> Any:
        return getattr(get_app(), name)

    async def __call__(self, scope: Any, receive: Any, send: Any) -> Any:
        """ASGI callable interface."""
        app_instance = get_app()
        return await app_instance(scope, receive, send)


# For uvicorn compatibility, we need an app variable at module level
app = AppProxy()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "services.oauth_hub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
