"""
Subscription checker: pull-side reconciliation against the billing provider.

Recovers from missed webhooks (e.g. auto-renewals) by fetching the
subscription and running it through the same engine as webhook events.
Calls are rate-limited per user by the cooldown gate.

Provider failures are never fatal: the persisted record is left untouched
and the result reports provider_unavailable.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.errors import SubscriptionOwnershipError
from entitlement_sync.integrations.dodo.billing_client import BillingProviderError, DodoBillingClient
from entitlement_sync.models.entitlement import PaymentType
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.reconciliation import EntitlementState, should_skip_poll
from entitlement_sync.repositories.entitlement_repository import SUBSCRIPTION_ID_PREFIX
from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler, utc_now

logger = logging.getLogger(__name__)


class CheckSkipReason:
    """Why a subscription check did not reach the provider or the engine."""
    COOLDOWN = "cooldown"
    ONE_TIME_PURCHASE = "one_time_purchase"
    NO_SUBSCRIPTION = "no_subscription"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    NOT_FOUND = "subscription_not_found"


def is_subscription_id(reference: Optional[str]) -> bool:
    """One-time payment IDs never carry the subscription prefix."""
    return bool(reference) and reference.startswith(SUBSCRIPTION_ID_PREFIX)


@dataclass
class SubscriptionCheckResult:
    """Result of a subscription check."""
    user_id: str
    checked: bool
    state: EntitlementState
    written: bool = False
    is_subscription: bool = True
    skipped_reason: Optional[str] = None
    message: str = ""


class SubscriptionChecker:
    """Polls the billing provider for one user's subscription."""

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

    def verify_ownership(
        self,
        user_id: str,
        current: EntitlementState,
        subscription_id: str,
    ) -> None:
        """
        Ensure the requested subscription is the one bound to the user.

        Raises:
            SubscriptionOwnershipError: If the stored ID is missing or differs
        """
        if current.subscription_id != subscription_id:
            logger.warning("Subscription check ownership mismatch", extra={
                "user_id": user_id,
                "requested_subscription_id": subscription_id,
                "stored_subscription_id": current.subscription_id,
            })
            raise SubscriptionOwnershipError(user_id, subscription_id, current.subscription_id)

    async def check(
        self,
        user_id: str,
        subscription_id: Optional[str] = None,
        force: bool = False,
    ) -> SubscriptionCheckResult:
        """
        Reconcile a user's record against the provider's view of the subscription.

        Args:
            user_id: Authenticated user ID
            subscription_id: Subscription the client asks about; defaults to the stored one
            force: Bypass the cooldown gate

        Returns:
            SubscriptionCheckResult

        Raises:
            SubscriptionOwnershipError: If subscription_id is not the user's
        """
        now = self.clock()
        current = self.reconciler.read(user_id)

        if subscription_id and not is_subscription_id(subscription_id):
            return SubscriptionCheckResult(
                user_id=user_id,
                checked=False,
                state=current,
                is_subscription=False,
                skipped_reason=CheckSkipReason.ONE_TIME_PURCHASE,
                message="One-time payment - no renewal check needed",
            )

        if subscription_id:
            self.verify_ownership(user_id, current, subscription_id)
        else:
            subscription_id = current.subscription_id

        if not is_subscription_id(subscription_id):
            return SubscriptionCheckResult(
                user_id=user_id,
                checked=False,
                state=current,
                is_subscription=False,
                skipped_reason=CheckSkipReason.NO_SUBSCRIPTION,
                message="No subscription to check",
            )

        if not force and should_skip_poll(current.last_reconciled_at, now, self.settings.check_cooldown):
            logger.debug("Subscription check skipped by cooldown", extra={
                "user_id": user_id,
                "last_reconciled_at": current.last_reconciled_at.isoformat(),
            })
            return SubscriptionCheckResult(
                user_id=user_id,
                checked=False,
                state=current,
                skipped_reason=CheckSkipReason.COOLDOWN,
                message="Checked recently",
            )

        try:
            subscription = await self.billing_client.get_subscription(subscription_id)
        except BillingProviderError as e:
            logger.warning("Subscription check failed - provider unavailable", extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
                "error": str(e),
            })
            return SubscriptionCheckResult(
                user_id=user_id,
                checked=False,
                state=current,
                skipped_reason=CheckSkipReason.PROVIDER_UNAVAILABLE,
                message="Could not verify subscription status",
            )

        if subscription is None:
            logger.warning("Subscription not found at provider", extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
            })
            return SubscriptionCheckResult(
                user_id=user_id,
                checked=False,
                state=current,
                skipped_reason=CheckSkipReason.NOT_FOUND,
                message="Subscription not found",
            )

        result = self.reconciler.apply_snapshot(
            user_id,
            subscription.to_snapshot(),
            source=EntitlementEventSource.POLL,
            provider_reference=subscription_id,
            payment_type=PaymentType.SUBSCRIPTION,
            metadata={"provider_status": subscription.status},
            now=now,
        )

        return SubscriptionCheckResult(
            user_id=user_id,
            checked=True,
            state=result.state,
            written=result.written,
            message=f"Subscription {result.state.status.value}",
        )
