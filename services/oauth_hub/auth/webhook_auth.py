"""
Webhook signature verification for the OAuth Integration Hub.

Providers sign webhook bodies with HMAC-SHA256 and send the digest in an
``X-<Provider>-Hmac-SHA256`` header. Nothing in a webhook body is parsed
before the signature verifies.
"""

from typing import Optional

import structlog
from fastapi import Depends, Request

from services.oauth_hub.container import ServiceContainer
from services.oauth_hub.dependencies import get_container, get_request_metadata
from services.oauth_hub.exceptions import WebhookValidationError
from services.oauth_hub.services.audit_service import AuditSeverity, SecurityViolations

logger = structlog.get_logger(__name__)


class WebhookSignatureVerifier:
    """Resolves provider secrets and checks webhook signatures."""

    def __init__(self, container: ServiceContainer):
        self.settings = container.settings
        self.security_manager = container.security_manager
        self.credential_registry = container.credential_registry

    @staticmethod
    def signature_header(provider: str) -> str:
        return f"x-{provider.lower()}-hmac-sha256"

    def get_secret(self, provider: str) -> Optional[str]:
        """
        Shared secret for ``provider``.

        An explicit ``WEBHOOK_SECRETS`` entry wins; otherwise the
        integration's client secret is used, as Shopify does.
        """
        secret = self.settings.webhook_secrets.get(provider)
        if secret:
            return secret
        credentials = self.credential_registry.get_credentials(provider)
        return credentials.client_secret if credentials else None

    def verify(self, provider: str, payload: bytes, signature: Optional[str]) -> None:
        """
        Raises:
            WebhookValidationError: Missing secret, missing header or bad digest
        """
        secret = self.get_secret(provider)
        if not secret:
            logger.error("webhook_secret_missing", provider=provider)
            raise WebhookValidationError("Webhook secret not configured", provider=provider)
        if not signature:
            raise WebhookValidationError("Missing signature header", provider=provider)
        if not self.security_manager.verify_webhook_signature(payload, signature, secret):
            raise WebhookValidationError("Invalid webhook signature", provider=provider)
        logger.debug("webhook_signature_verified", provider=provider)


async def verify_webhook_signature(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> bytes:
    """
    FastAPI dependency that verifies the request signature.

    Returns:
        bytes: The raw, verified request body

    Raises:
        WebhookValidationError: If verification fails (rendered as 401)
    """
    verifier = WebhookSignatureVerifier(container)
    body = await request.body()
    signature = request.headers.get(verifier.signature_header(provider))
    try:
        verifier.verify(provider, body, signature)
    except WebhookValidationError as e:
        metadata = get_request_metadata(request)
        logger.warning(
            "webhook_signature_rejected", provider=provider, reason=e.message
        )
        await container.audit_logger.log_security_event(
            violation_type=SecurityViolations.INVALID_SIGNATURE,
            description=f"Webhook signature verification failed for {provider}",
            severity=AuditSeverity.HIGH,
            integration_id=provider,
            details={"reason": e.message, "has_signature": bool(signature)},
            ip_address=metadata["ip"],
            user_agent=metadata["user_agent"],
        )
        raise
    return body
