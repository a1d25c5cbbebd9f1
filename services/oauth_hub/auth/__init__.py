"""
Request authentication helpers for the OAuth Integration Hub.
"""

from services.oauth_hub.auth.webhook_auth import (
    WebhookSignatureVerifier,
    verify_webhook_signature,
)

__all__ = ["WebhookSignatureVerifier", "verify_webhook_signature"]
