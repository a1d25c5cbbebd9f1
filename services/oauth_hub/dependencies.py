"""
FastAPI dependencies shared by the OAuth Integration Hub routers.
"""

from typing import Dict, Optional

from fastapi import Request

from services.oauth_hub.container import ServiceContainer
from services.oauth_hub.exceptions import ServiceError


def get_container(request: Request) -> ServiceContainer:
    """Return the container the lifespan stored on the application."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise ServiceError("Service container is not initialized")
    return container


def get_client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def get_request_metadata(request: Request) -> Dict[str, Optional[str]]:
    return {
        "ip": get_client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }
