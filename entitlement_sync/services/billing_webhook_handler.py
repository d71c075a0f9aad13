"""
Billing webhook handler with idempotency support.

Processes billing provider webhooks with:
- Event deduplication using the provider's webhook message ID
- Identity resolution (metadata user ID, then account email)
- Subscription ownership checks before the engine runs
- Normalization of every event type onto the reconciliation engine

Delivery order is not guaranteed; the last applied event wins. Terminal
events (expiry, payment failure) always revoke.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.errors import SubscriptionOwnershipError
from entitlement_sync.integrations.dodo.billing_client import BillingProviderError, DodoBillingClient
from entitlement_sync.integrations.dodo.schemas import DodoWebhookPayload
from entitlement_sync.models.entitlement import PaymentType
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.models.webhook_event import BillingWebhookEvent
from entitlement_sync.reconciliation import (
    BillingSnapshot,
    EffectiveStatus,
    EntitlementState,
    ProviderEvent,
    WebhookEventType,
    direct_user_reference,
    has_live_subscription,
    normalize_event,
)
from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler, utc_now
from entitlement_sync.services.identity_resolver import IdentityResolver

logger = logging.getLogger(__name__)

PAYMENT_ID_PREFIX = "pay_"


class WebhookOutcome:
    """Outcome recorded for each processed webhook delivery."""
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    UNRESOLVED_IDENTITY = "unresolved_identity"
    IGNORED = "ignored"
    REJECTED = "rejected"


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    user_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


class BillingWebhookHandler:
    """
    Handler for billing provider webhooks with idempotency.

    Ensures each webhook message is applied at most once, and that redelivery
    under a new message ID is a no-op thanks to the idempotent engine.
    """

    def __init__(
        self,
        db_session: Session,
        billing_client: Optional[DodoBillingClient] = None,
        identity_resolver: Optional[IdentityResolver] = None,
        settings: Optional[ReconciliationSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            billing_client: Provider client, used to resolve subscription payments
            identity_resolver: Email lookup for events without a user reference
            settings: Reconciliation settings
            clock: Source of the current instant
        """
        self.db = db_session
        self.billing_client = billing_client
        self.identity_resolver = identity_resolver or IdentityResolver(db_session)
        self.settings = settings or get_settings()
        self.clock = clock
        self.reconciler = EntitlementReconciler(db_session, self.settings, clock)

    def _is_duplicate(self, provider_event_id: str) -> bool:
        """
        Check if webhook message has already been processed.

        Args:
            provider_event_id: Provider webhook message ID

        Returns:
            True if duplicate, False otherwise
        """
        existing = self.db.query(BillingWebhookEvent).filter(
            BillingWebhookEvent.provider_event_id == provider_event_id
        ).first()

        return existing is not None

    def _record_event(
        self,
        provider_event_id: str,
        event_type: str,
        outcome: str,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        """Record processed webhook message for deduplication."""
        payload_str = json.dumps(payload, sort_keys=True, default=str)
        payload_hash = hashlib.sha256(payload_str.encode()).hexdigest()

        self.db.add(BillingWebhookEvent(
            provider_event_id=provider_event_id,
            event_type=event_type or "unknown",
            user_id=user_id,
            outcome=outcome,
            payload_hash=payload_hash,
            processed_at=self.clock(),
        ))

    def _resolve_user(self, event: ProviderEvent) -> Optional[str]:
        user_id = direct_user_reference(event)
        if user_id:
            return user_id
        return self.identity_resolver.resolve_user_by_email(event.customer_email)

    def _check_ownership(self, user_id: str, current: EntitlementState, event: ProviderEvent) -> None:
        """
        Reject events for a different subscription than the user's live one.

        Raises:
            SubscriptionOwnershipError: On mismatch with an active subscription
        """
        if (
            current.status == EffectiveStatus.ACTIVE
            and current.subscription_id
            and event.subscription_id
            and event.subscription_id != current.subscription_id
        ):
            raise SubscriptionOwnershipError(user_id, event.subscription_id, current.subscription_id)

    async def _resolve_payment_subscription(self, event: ProviderEvent) -> ProviderEvent:
        """Attach the subscription a payment belongs to, asking the provider if needed."""
        if event.subscription_id or self.billing_client is None:
            return event
        if not event.payment_id or not event.payment_id.startswith(PAYMENT_ID_PREFIX):
            return event

        try:
            payment = await self.billing_client.get_payment(event.payment_id)
        except BillingProviderError as e:
            logger.warning("Payment lookup failed, using webhook data", extra={
                "payment_id": event.payment_id,
                "error": str(e),
            })
            return event

        if payment and payment.subscription_id:
            return replace(event, subscription_id=payment.subscription_id)
        return event

    async def _provider_snapshot(self, event: ProviderEvent) -> Optional[BillingSnapshot]:
        """Fetch the authoritative subscription snapshot for a subscription payment."""
        if self.billing_client is None or not event.subscription_id:
            return None
        try:
            subscription = await self.billing_client.get_subscription(event.subscription_id)
        except BillingProviderError as e:
            logger.warning("Subscription fetch failed, using webhook data", extra={
                "subscription_id": event.subscription_id,
                "error": str(e),
            })
            return None
        if subscription is None:
            return None
        return subscription.to_snapshot()

    async def handle_event(
        self,
        provider_event_id: str,
        payload: Dict[str, Any],
    ) -> WebhookProcessingResult:
        """
        Handle one webhook delivery.

        Args:
            provider_event_id: Provider webhook message ID (webhook-id header)
            payload: Parsed webhook body

        Returns:
            WebhookProcessingResult
        """
        if self._is_duplicate(provider_event_id):
            logger.info("Duplicate webhook skipped", extra={
                "provider_event_id": provider_event_id,
            })
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                skipped_reason="duplicate"
            )

        raw_type = str(payload.get("type") or "")

        try:
            event = DodoWebhookPayload.model_validate(payload).to_provider_event()
        except ValidationError as e:
            logger.warning("Invalid webhook payload", extra={
                "provider_event_id": provider_event_id,
                "event_type": raw_type,
                "errors": e.error_count(),
            })
            self._record_event(provider_event_id, raw_type, WebhookOutcome.REJECTED, payload)
            self.db.commit()
            return WebhookProcessingResult(
                processed=False,
                message="Invalid payload",
                error="invalid_payload"
            )

        if not event.is_handled:
            logger.info("Unhandled webhook event type", extra={
                "provider_event_id": provider_event_id,
                "event_type": event.event_type,
            })
            self._record_event(provider_event_id, event.event_type, WebhookOutcome.IGNORED, payload)
            self.db.commit()
            return WebhookProcessingResult(
                processed=False,
                message=f"Unhandled event type: {event.event_type}",
                skipped_reason="unhandled_event_type"
            )

        user_id = self._resolve_user(event)
        if not user_id:
            # Acknowledge so the provider stops retrying; nothing to apply
            logger.warning("Webhook dropped - no user could be resolved", extra={
                "provider_event_id": provider_event_id,
                "event_type": event.event_type,
                "reference_id": event.reference_id,
                "has_email": bool(event.customer_email),
            })
            self._record_event(
                provider_event_id, event.event_type, WebhookOutcome.UNRESOLVED_IDENTITY, payload
            )
            self.db.commit()
            return WebhookProcessingResult(
                processed=False,
                message="No user resolved",
                skipped_reason="unresolved_identity"
            )

        try:
            result = await self._apply_event(user_id, event)

            outcome = WebhookOutcome.APPLIED if result.processed else WebhookOutcome.NO_CHANGE
            self._record_event(provider_event_id, event.event_type, outcome, payload, user_id)
            self.db.commit()

            logger.info("Webhook processed successfully", extra={
                "provider_event_id": provider_event_id,
                "event_type": event.event_type,
                "user_id": user_id,
                "outcome": outcome,
            })
            return result

        except SubscriptionOwnershipError as e:
            self.db.rollback()
            logger.warning("Webhook subscription does not match user", extra={
                "provider_event_id": provider_event_id,
                "user_id": user_id,
                "event_subscription_id": e.requested_subscription_id,
                "stored_subscription_id": e.stored_subscription_id,
            })
            self._record_event(
                provider_event_id, event.event_type, WebhookOutcome.REJECTED, payload, user_id
            )
            self.db.commit()
            return WebhookProcessingResult(
                processed=False,
                message="Subscription does not belong to user",
                user_id=user_id,
                error="subscription_mismatch"
            )

        except Exception as e:
            logger.error("Error processing webhook", extra={
                "provider_event_id": provider_event_id,
                "event_type": event.event_type,
                "user_id": user_id,
                "error": str(e),
            })
            self.db.rollback()
            return WebhookProcessingResult(
                processed=False,
                message=f"Processing error: {str(e)}",
                user_id=user_id,
                error="processing_error"
            )

    async def _apply_event(self, user_id: str, event: ProviderEvent) -> WebhookProcessingResult:
        """
        Normalize an event and reconcile it into the user's record.

        Returns:
            WebhookProcessingResult; processed is True only when state was written
        """
        now = self.clock()
        snapshot: Optional[BillingSnapshot] = None

        if event.event_type == WebhookEventType.PAYMENT_SUCCEEDED:
            event = await self._resolve_payment_subscription(event)
            snapshot = await self._provider_snapshot(event)

        current = self.reconciler.read(user_id)
        self._check_ownership(user_id, current, event)

        payment_type = PaymentType.SUBSCRIPTION
        if (
            event.event_type == WebhookEventType.PAYMENT_SUCCEEDED
            and not event.subscription_id
            and not has_live_subscription(current, now)
        ):
            payment_type = PaymentType.ONE_TIME

        if snapshot is None:
            snapshot = normalize_event(event, current, now, self.settings.one_time_access)

        if snapshot is None:
            logger.info("Webhook carries no state change", extra={
                "user_id": user_id,
                "event_type": event.event_type,
                "status": current.status.value,
            })
            return WebhookProcessingResult(
                processed=False,
                message="No state change",
                user_id=user_id,
                skipped_reason="no_change"
            )

        result = self.reconciler.apply_snapshot(
            user_id,
            snapshot,
            source=EntitlementEventSource.WEBHOOK,
            provider_reference=event.reference_id,
            last_payment_id=event.payment_id,
            payment_type=payment_type,
            metadata={"event_type": event.event_type},
            now=now,
        )

        if not result.written:
            return WebhookProcessingResult(
                processed=False,
                message="No state change",
                user_id=user_id,
                skipped_reason="no_change"
            )

        return WebhookProcessingResult(
            processed=True,
            message=f"Entitlement {result.state.status.value}",
            user_id=user_id
        )


def get_webhook_handler(
    db_session: Session,
    billing_client: Optional[DodoBillingClient] = None,
) -> BillingWebhookHandler:
    """
    Factory function to create a BillingWebhookHandler.

    Args:
        db_session: Database session
        billing_client: Optional provider client

    Returns:
        Configured BillingWebhookHandler instance
    """
    return BillingWebhookHandler(db_session, billing_client=billing_client)
