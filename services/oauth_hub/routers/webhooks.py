"""
Webhook handling router.

Receives provider webhooks (Shopify GDPR callbacks and similar). The body
is only parsed after its HMAC signature verifies.
"""

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from services.oauth_hub.auth.webhook_auth import verify_webhook_signature
from services.oauth_hub.container import ServiceContainer
from services.oauth_hub.dependencies import get_container, get_request_metadata
from services.oauth_hub.exceptions import ValidationError
from services.oauth_hub.logging_config import get_logger
from services.oauth_hub.routers.integrations import enforce_rate_limit
from services.oauth_hub.schemas.integration import WebhookAck
from services.oauth_hub.services.audit_service import AuditEvents

logger = get_logger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
    responses={
        400: {"description": "Invalid webhook payload"},
        401: {"description": "Webhook signature verification failed"},
        429: {"description": "Rate limit exceeded"},
    },
)

GDPR_TOPICS = frozenset({"customers/data_request", "customers/redact", "shop/redact"})


async def enforce_webhook_rate_limit(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> None:
    metadata = get_request_metadata(request)
    await enforce_rate_limit(
        container,
        f"webhook:{metadata['ip'] or 'unknown'}",
        metadata,
        integration_id=provider,
        max_requests=container.settings.webhook_rate_limit_max_requests,
    )


def _topic(request: Request, provider: str) -> str | None:
    return request.headers.get(f"x-{provider.lower()}-topic") or request.headers.get(
        "x-webhook-topic"
    )


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    dependencies=[Depends(enforce_webhook_rate_limit)],
)
async def receive_webhook(
    provider: str,
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    container: ServiceContainer = Depends(get_container),
) -> WebhookAck:
    """
    Acknowledge a verified provider webhook.

    GDPR topics are recorded in the audit log for the compliance trail;
    other topics are acknowledged and logged.
    """
    try:
        payload: Dict[str, Any] = json.loads(body) if body else {}
    except ValueError as e:
        raise ValidationError("Webhook payload is not valid JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    topic = _topic(request, provider)
    metadata = get_request_metadata(request)
    details: Dict[str, Any] = {"provider": provider, "topic": topic}
    if topic in GDPR_TOPICS:
        details["gdpr"] = True
        details["shop_domain"] = payload.get("shop_domain")
        customer = payload.get("customer")
        if isinstance(customer, dict) and customer.get("id") is not None:
            details["customer_id"] = str(customer["id"])

    await container.audit_logger.log_event(
        event_type=AuditEvents.WEBHOOK_RECEIVED,
        description=f"Webhook received from {provider}" + (f" ({topic})" if topic else ""),
        integration_id=provider,
        details=details,
        ip_address=metadata["ip"],
        user_agent=metadata["user_agent"],
    )
    logger.info("webhook_received", provider=provider, topic=topic)
    return WebhookAck(provider=provider, topic=topic)
