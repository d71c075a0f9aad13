"""
Billing provider webhook receiver.

SECURITY: All webhooks MUST verify the Standard Webhooks signature before
processing. Dodo Payments signs deliveries the same way Svix does, so the
svix library verifies them.

Headers:
- webhook-id: Unique message identifier (used for deduplication)
- webhook-timestamp: Unix timestamp of the message
- webhook-signature: Signature(s) to verify

Once a delivery is verified it is always acknowledged with 200, even when
processing fails or the user cannot be resolved; the provider would
otherwise retry indefinitely.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session
from svix.webhooks import Webhook, WebhookVerificationError

from entitlement_sync.api.dependencies.provider import get_optional_billing_client
from entitlement_sync.config.settings import get_settings
from entitlement_sync.database.session import get_db_session
from entitlement_sync.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = "processed"
    message: Optional[str] = None


def verify_billing_webhook(
    payload: bytes,
    webhook_id: str,
    webhook_timestamp: str,
    webhook_signature: str,
    webhook_secret: str,
) -> bool:
    """
    Verify a billing webhook signature.

    Args:
        payload: Raw request body bytes
        webhook_id: webhook-id header
        webhook_timestamp: webhook-timestamp header
        webhook_signature: webhook-signature header
        webhook_secret: Provider webhook signing secret (whsec_...)

    Returns:
        True if signature is valid, False otherwise
    """
    if not all([webhook_id, webhook_timestamp, webhook_signature, webhook_secret]):
        logger.warning("Missing webhook signature headers or secret")
        return False

    try:
        Webhook(webhook_secret).verify(
            payload,
            {
                "webhook-id": webhook_id,
                "webhook-timestamp": webhook_timestamp,
                "webhook-signature": webhook_signature,
            }
        )
        return True
    except WebhookVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return False
    except json.JSONDecodeError:
        # svix parses the body only after a signature matched
        return True


@router.post("/billing", response_model=WebhookResponse)
async def handle_billing_webhook(
    request: Request,
    webhook_id: Optional[str] = Header(None, alias="webhook-id"),
    webhook_timestamp: Optional[str] = Header(None, alias="webhook-timestamp"),
    webhook_signature: Optional[str] = Header(None, alias="webhook-signature"),
    db_session: Session = Depends(get_db_session),
    billing_client=Depends(get_optional_billing_client),
):
    """
    Handle incoming billing provider webhooks.

    Security:
    - Verifies the signature using DODO_WEBHOOK_SECRET
    - Rejects requests with invalid or missing signatures
    - Does not require user authentication (webhooks are server-to-server)

    Returns:
        WebhookResponse with processing status
    """
    webhook_secret = get_settings().webhook_secret

    if not webhook_secret:
        logger.error("DODO_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook handler not configured",
        )

    body = await request.body()

    if not verify_billing_webhook(
        payload=body,
        webhook_id=webhook_id or "",
        webhook_timestamp=webhook_timestamp or "",
        webhook_signature=webhook_signature or "",
        webhook_secret=webhook_secret,
    ):
        logger.warning(
            "Billing webhook signature verification failed",
            extra={
                "webhook_id": webhook_id,
                "has_timestamp": bool(webhook_timestamp),
                "has_signature": bool(webhook_signature),
            }
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in webhook payload: {e}", extra={"webhook_id": webhook_id})
        return WebhookResponse(status="ignored", message="Invalid JSON payload")

    if not isinstance(payload, dict):
        logger.error("Webhook payload is not an object", extra={"webhook_id": webhook_id})
        return WebhookResponse(status="ignored", message="Invalid payload")

    logger.info(
        "Received billing webhook",
        extra={
            "event_type": payload.get("type"),
            "webhook_id": webhook_id,
        }
    )

    handler = BillingWebhookHandler(db_session, billing_client=billing_client)
    result = await handler.handle_event(webhook_id, payload)

    if result.error:
        result_status = "error"
    elif result.skipped_reason:
        result_status = "skipped"
    else:
        result_status = "processed"

    return WebhookResponse(status=result_status, message=result.message)


@router.get("/billing/health")
async def billing_webhook_health():
    """
    Health check for the billing webhook endpoint.

    Does not require authentication.
    """
    return {
        "status": "healthy",
        "webhook_secret_configured": bool(get_settings().webhook_secret),
    }
