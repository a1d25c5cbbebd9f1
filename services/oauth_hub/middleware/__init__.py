"""
HTTP middleware for the OAuth Integration Hub.
"""

from services.oauth_hub.middleware.security import RequestSecurityMiddleware

__all__ = ["RequestSecurityMiddleware"]
