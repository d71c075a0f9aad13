"""
Post-checkout payment verification.

After checkout the client reports the payment or subscription ID it was
given. The ID is looked up at the provider, its status is validated
(succeeded for payments, active for subscriptions), and the result is
reconciled into the user's record. This binds a new subscription ID even
when the activation webhook never arrived.

CRITICAL: The provider is the only source of truth here. Nothing the client
sends is trusted beyond the ID itself.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.errors import SubscriptionOwnershipError
from entitlement_sync.integrations.dodo.billing_client import DodoBillingClient
from entitlement_sync.integrations.dodo.schemas import DodoSubscription, metadata_user_id
from entitlement_sync.models.entitlement import PaymentType
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.reconciliation import (
    BillingSnapshot,
    EffectiveStatus,
    EntitlementState,
    ProviderEvent,
    WebhookEventType,
    has_live_subscription,
    normalize_event,
)
from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler, utc_now
from entitlement_sync.services.subscription_checker import is_subscription_id

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_STATUS = "succeeded"
SUBSCRIPTION_ACTIVE_STATUS = "active"


@dataclass
class PaymentVerificationResult:
    """Result of verifying a checkout reference."""
    user_id: str
    verified: bool
    state: EntitlementState
    is_subscription: bool
    provider_status: Optional[str] = None
    written: bool = False
    message: str = ""


class PaymentVerificationService:
    """Verifies a checkout with the provider and grants the matching access."""

    def __init__(
        self,
        db_session: Session,
        billing_client: DodoBillingClient,
        settings: Optional[ReconciliationSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.billing_client = billing_client
        self.settings = settings or get_settings()
        self.clock = clock
        self.reconciler = EntitlementReconciler(db_session, self.settings, clock)

    def _check_record_ownership(
        self,
        user_id: str,
        current: EntitlementState,
        subscription_id: str,
    ) -> None:
        # A live subscription is never replaced by verifying another one
        if (
            current.status == EffectiveStatus.ACTIVE
            and current.subscription_id
            and current.subscription_id != subscription_id
        ):
            logger.warning("Verification for a different subscription than the active one", extra={
                "user_id": user_id,
                "requested_subscription_id": subscription_id,
                "stored_subscription_id": current.subscription_id,
            })
            raise SubscriptionOwnershipError(user_id, subscription_id, current.subscription_id)

    def _check_checkout_owner(
        self,
        user_id: str,
        reference_id: str,
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        owner = metadata_user_id(metadata)
        if owner and owner != user_id:
            logger.warning("Checkout belongs to another user", extra={
                "user_id": user_id,
                "reference_id": reference_id,
            })
            raise SubscriptionOwnershipError(user_id, reference_id, None)

    def _rejected(
        self,
        user_id: str,
        current: EntitlementState,
        is_subscription: bool,
        provider_status: Optional[str],
        message: str,
    ) -> PaymentVerificationResult:
        logger.warning("Payment verification rejected", extra={
            "user_id": user_id,
            "provider_status": provider_status,
            "reason": message,
        })
        return PaymentVerificationResult(
            user_id=user_id,
            verified=False,
            state=current,
            is_subscription=is_subscription,
            provider_status=provider_status,
            message=message,
        )

    async def verify(self, user_id: str, reference_id: str) -> PaymentVerificationResult:
        """
        Verify a payment (pay_...) or subscription (sub_...) and grant access.

        Args:
            user_id: Authenticated user ID
            reference_id: Payment or subscription ID returned by checkout

        Returns:
            PaymentVerificationResult; verified is False for unknown IDs and
            for transactions that did not succeed

        Raises:
            SubscriptionOwnershipError: If the checkout belongs to someone else
            BillingProviderError: If the provider could not be reached
        """
        now = self.clock()
        current = self.reconciler.read(user_id)
        last_payment_id: Optional[str] = None
        snapshot: Optional[BillingSnapshot] = None

        if is_subscription_id(reference_id):
            self._check_record_ownership(user_id, current, reference_id)
            subscription = await self.billing_client.get_subscription(reference_id)
            if subscription is None:
                return self._rejected(user_id, current, True, None, "Subscription not found")
            self._check_checkout_owner(user_id, reference_id, subscription.metadata)

            provider_status = subscription.status
            if (provider_status or "").lower() != SUBSCRIPTION_ACTIVE_STATUS:
                return self._rejected(
                    user_id, current, True, provider_status,
                    f"Transaction status is {provider_status}",
                )
            snapshot = self._subscription_snapshot(subscription, reference_id)
            is_subscription = True
            payment_type = PaymentType.SUBSCRIPTION
        else:
            payment = await self.billing_client.get_payment(reference_id)
            if payment is None:
                return self._rejected(user_id, current, False, None, "Payment not found")
            self._check_checkout_owner(user_id, reference_id, payment.metadata)

            provider_status = payment.status
            if (provider_status or "").lower() != PAYMENT_SUCCEEDED_STATUS:
                return self._rejected(
                    user_id, current, False, provider_status,
                    f"Transaction status is {provider_status}",
                )
            last_payment_id = reference_id

            if payment.subscription_id:
                # First invoice of a subscription
                self._check_record_ownership(user_id, current, payment.subscription_id)
                subscription = await self.billing_client.get_subscription(payment.subscription_id)
                if subscription is None:
                    return self._rejected(user_id, current, True, provider_status, "Subscription not found")
                snapshot = self._subscription_snapshot(subscription, payment.subscription_id)
                is_subscription = True
                payment_type = PaymentType.SUBSCRIPTION
            else:
                event = ProviderEvent(
                    event_type=WebhookEventType.PAYMENT_SUCCEEDED,
                    payment_id=reference_id,
                    occurred_at=payment.created_at,
                )
                snapshot = normalize_event(event, current, now, self.settings.one_time_access)
                is_subscription = False
                payment_type = (
                    PaymentType.SUBSCRIPTION
                    if has_live_subscription(current, now)
                    else PaymentType.ONE_TIME
                )

        if snapshot is None:
            return PaymentVerificationResult(
                user_id=user_id,
                verified=True,
                state=current,
                is_subscription=is_subscription,
                provider_status=provider_status,
                message="Premium already active",
            )

        result = self.reconciler.apply_snapshot(
            user_id,
            snapshot,
            source=EntitlementEventSource.PAYMENT_VERIFICATION,
            provider_reference=reference_id,
            last_payment_id=last_payment_id,
            payment_type=payment_type,
            metadata={"provider_status": provider_status},
            now=now,
        )

        logger.info("Payment verified", extra={
            "user_id": user_id,
            "reference_id": reference_id,
            "is_subscription": is_subscription,
            "written": result.written,
        })
        return PaymentVerificationResult(
            user_id=user_id,
            verified=True,
            state=result.state,
            is_subscription=is_subscription,
            provider_status=provider_status,
            written=result.written,
            message="Premium verified",
        )

    @staticmethod
    def _subscription_snapshot(subscription: DodoSubscription, subscription_id: str) -> BillingSnapshot:
        snapshot = subscription.to_snapshot()
        if snapshot.subscription_id is None:
            snapshot = replace(snapshot, subscription_id=subscription_id)
        return snapshot
