"""
Router package for the OAuth Integration Hub.

Exports all API routers for registration with the FastAPI application.
"""

from services.oauth_hub.routers.integrations import router as integrations_router
from services.oauth_hub.routers.webhooks import router as webhooks_router

__all__ = ["integrations_router", "webhooks_router"]
