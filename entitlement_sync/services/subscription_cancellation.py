"""
Subscription cancellation service.

Schedules cancellation at the next billing date with the provider and
reconciles the local record right away, so the user sees "cancelled" before
the confirming webhook arrives. Access is kept until the paid period ends.

CRITICAL: Ownership is checked before any provider call. A user may only
cancel the subscription bound to their own record.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.errors import SubscriptionOwnershipError
from entitlement_sync.integrations.dodo.billing_client import (
    BillingProviderAPIError,
    DodoBillingClient,
)
from entitlement_sync.models.entitlement import PaymentType
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.reconciliation import BillingSnapshot, EntitlementState, RawStatus
from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler, utc_now
from entitlement_sync.services.subscription_checker import is_subscription_id

logger = logging.getLogger(__name__)

# Provider error text that means the subscription is already over
_ALREADY_CANCELLED_MARKERS = ("already", "cancelled", "canceled", "expired")


@dataclass
class CancellationResult:
    """Result of a cancellation request."""
    user_id: str
    cancelled: bool
    state: EntitlementState
    already_cancelled: bool = False
    is_one_time_payment: bool = False
    message: str = ""


def _is_already_cancelled(error: BillingProviderAPIError) -> bool:
    if error.status_code == 400:
        return True
    text = str(error.response or "").lower()
    return any(marker in text for marker in _ALREADY_CANCELLED_MARKERS)


class SubscriptionCancellationService:
    """Cancels a user's subscription at period end."""

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

    async def cancel(self, user_id: str, subscription_id: str) -> CancellationResult:
        """
        Cancel a subscription at the end of the current billing period.

        Args:
            user_id: Authenticated user ID
            subscription_id: Subscription the user asks to cancel

        Returns:
            CancellationResult

        Raises:
            SubscriptionOwnershipError: If the user's record is bound to another subscription
            BillingProviderError: If the provider rejects the request for another reason
        """
        current = self.reconciler.read(user_id)

        if not is_subscription_id(subscription_id):
            logger.info("Cancellation requested for one-time payment", extra={
                "user_id": user_id,
                "reference_id": subscription_id,
            })
            return CancellationResult(
                user_id=user_id,
                cancelled=False,
                state=current,
                is_one_time_payment=True,
                message="This was a one-time payment - no recurring billing to cancel.",
            )

        # Records created before subscription binding have no stored ID
        if current.subscription_id and current.subscription_id != subscription_id:
            logger.warning("Cancellation ownership mismatch", extra={
                "user_id": user_id,
                "requested_subscription_id": subscription_id,
                "stored_subscription_id": current.subscription_id,
            })
            raise SubscriptionOwnershipError(user_id, subscription_id, current.subscription_id)

        already_cancelled = False
        snapshot: Optional[BillingSnapshot] = None
        try:
            subscription = await self.billing_client.cancel_subscription(subscription_id)
        except BillingProviderAPIError as e:
            if not _is_already_cancelled(e):
                raise
            logger.info("Subscription already cancelled at provider", extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
                "status_code": e.status_code,
            })
            already_cancelled = True
        else:
            if subscription is not None:
                snapshot = subscription.to_snapshot()
                # The response may predate the cancel flag being set
                if (snapshot.raw_status or "").lower() == RawStatus.ACTIVE:
                    snapshot = replace(snapshot, scheduled_cancellation=True)

        if snapshot is None:
            snapshot = BillingSnapshot(
                raw_status=RawStatus.ACTIVE,
                scheduled_cancellation=True,
                subscription_id=subscription_id,
            )

        now = self.clock()
        if not snapshot.has_dates and not (current.expires_at and current.expires_at > now):
            # A dateless snapshot against a lapsed record would grant fallback access
            return CancellationResult(
                user_id=user_id,
                cancelled=True,
                state=current,
                already_cancelled=already_cancelled,
                message="Subscription is already cancelled or expired.",
            )

        result = self.reconciler.apply_snapshot(
            user_id,
            snapshot,
            source=EntitlementEventSource.CANCEL_REQUEST,
            provider_reference=subscription_id,
            payment_type=PaymentType.SUBSCRIPTION,
            metadata={"already_cancelled": already_cancelled},
            now=now,
        )

        return CancellationResult(
            user_id=user_id,
            cancelled=True,
            state=result.state,
            already_cancelled=already_cancelled,
            message=(
                "Subscription is already cancelled or expired." if already_cancelled
                else "Subscription cancelled successfully."
            ),
        )
