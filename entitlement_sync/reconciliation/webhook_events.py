"""
Webhook event normalizer.

Maps provider webhook event types onto canonical billing snapshots so that
every push notification flows through the same decision function as a poll.

Event handling:
- activation (created/active/renewed) -> active snapshot with event dates
- cancellation -> scheduled cancellation, keeps the known expiry
- hold/pause -> degraded to cancelled, keeps the known expiry
- expiry/payment failure -> expired snapshot, full revocation
- payment succeeded -> subscription payment or one-time purchase

Returning None means "acknowledge, but no state change".
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from entitlement_sync.reconciliation.snapshot import BillingSnapshot, EntitlementState, RawStatus

DEFAULT_ONE_TIME_ACCESS = timedelta(days=30)


class WebhookEventType:
    """Provider webhook event types."""
    PAYMENT_SUCCEEDED = "payment.succeeded"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_ON_HOLD = "subscription.on_hold"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_FAILED = "subscription.failed"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"


ACTIVATION_EVENTS = frozenset({
    WebhookEventType.SUBSCRIPTION_ACTIVE,
    WebhookEventType.SUBSCRIPTION_CREATED,
    WebhookEventType.SUBSCRIPTION_RENEWED,
})

CANCELLATION_EVENTS = frozenset({
    WebhookEventType.SUBSCRIPTION_CANCELLED,
    WebhookEventType.SUBSCRIPTION_CANCELED,
})

HOLD_EVENTS = frozenset({
    WebhookEventType.SUBSCRIPTION_ON_HOLD,
    WebhookEventType.SUBSCRIPTION_PAUSED,
})

TERMINATION_EVENTS = frozenset({
    WebhookEventType.SUBSCRIPTION_EXPIRED,
    WebhookEventType.SUBSCRIPTION_FAILED,
    WebhookEventType.SUBSCRIPTION_PAYMENT_FAILED,
})

PAYMENT_EVENTS = frozenset({WebhookEventType.PAYMENT_SUCCEEDED})

HANDLED_EVENTS = ACTIVATION_EVENTS | CANCELLATION_EVENTS | HOLD_EVENTS | TERMINATION_EVENTS | PAYMENT_EVENTS


@dataclass(frozen=True)
class ProviderEvent:
    """Provider-agnostic view of a webhook delivery."""
    event_type: str
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    billing_interval_days: Optional[int] = None
    occurred_at: Optional[datetime] = None

    @property
    def is_handled(self) -> bool:
        return self.event_type in HANDLED_EVENTS

    @property
    def reference_id(self) -> Optional[str]:
        """Payment id for payments, subscription id otherwise."""
        return self.payment_id or self.subscription_id


def direct_user_reference(event: ProviderEvent) -> Optional[str]:
    """Return the user id carried in the event metadata, if any."""
    if event.user_id and event.user_id.strip():
        return event.user_id.strip()
    return None


def _has_live_expiry(current: EntitlementState, now: datetime) -> bool:
    return current.expires_at is not None and current.expires_at > now


def has_live_subscription(current: EntitlementState, now: datetime) -> bool:
    """True when the record holds unexpired access bound to a subscription."""
    return bool(current.subscription_id) and _has_live_expiry(current, now)


def normalize_event(
    event: ProviderEvent,
    current: EntitlementState,
    now: datetime,
    one_time_access: timedelta = DEFAULT_ONE_TIME_ACCESS,
) -> Optional[BillingSnapshot]:
    """
    Build the canonical snapshot for a webhook event.

    Args:
        event: Parsed provider event
        current: Persisted entitlement record of the resolved user
        now: Current instant (timezone-aware)
        one_time_access: Access granted by a one-time purchase

    Returns:
        BillingSnapshot to reconcile, or None when the event changes nothing
    """
    event_type = event.event_type

    if event_type in ACTIVATION_EVENTS:
        return BillingSnapshot(
            raw_status=RawStatus.ACTIVE,
            next_charge_at=event.next_billing_date,
            period_end_at=event.current_period_end,
            billing_interval_days=event.billing_interval_days,
            subscription_id=event.subscription_id,
        )

    if event_type in CANCELLATION_EVENTS:
        # Nothing to cancel without a live expiry; a dateless snapshot would
        # otherwise be granted the fallback duration.
        if not _has_live_expiry(current, now):
            return None
        return BillingSnapshot(
            raw_status=RawStatus.ACTIVE,
            scheduled_cancellation=True,
            subscription_id=event.subscription_id,
        )

    if event_type in HOLD_EVENTS:
        if not _has_live_expiry(current, now):
            return None
        return BillingSnapshot(
            raw_status=RawStatus.ON_HOLD,
            subscription_id=event.subscription_id,
        )

    if event_type in TERMINATION_EVENTS:
        return BillingSnapshot(
            raw_status=RawStatus.EXPIRED,
            subscription_id=event.subscription_id,
        )

    if event_type in PAYMENT_EVENTS:
        if event.subscription_id:
            return BillingSnapshot(
                raw_status=RawStatus.ACTIVE,
                next_charge_at=event.next_billing_date,
                period_end_at=event.current_period_end,
                billing_interval_days=event.billing_interval_days,
                subscription_id=event.subscription_id,
            )
        # One-time purchase; anchored on the payment time so redelivery is a no-op
        paid_at = event.occurred_at or now
        if has_live_subscription(current, now) and paid_at + one_time_access <= current.expires_at:
            # Likely an unresolved renewal payment; only an extension may apply
            return None
        return BillingSnapshot(
            raw_status=RawStatus.ACTIVE,
            period_end_at=paid_at + one_time_access,
        )

    return None
