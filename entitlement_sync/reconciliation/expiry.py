"""
Expiry resolver.

Computes the canonical expiry instant from a billing snapshot. Resolution
order, first match wins:

1. next charge date (forward-looking renewal date gates access)
2. period end date
3. now + billing interval days
4. now + fallback duration (default 30 days)

The first two sources are authoritative. The last two are estimates: the
decision function lets a billing interval extend a live expiry and never
lets the fallback replace one.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from entitlement_sync.reconciliation.snapshot import BillingSnapshot

DEFAULT_FALLBACK_DURATION = timedelta(days=30)


class ExpirySource(str, Enum):
    """Which snapshot field produced the expiry."""
    NEXT_CHARGE = "next_charge"
    PERIOD_END = "period_end"
    BILLING_INTERVAL = "billing_interval"
    FALLBACK = "fallback"

    @property
    def is_authoritative(self) -> bool:
        """Explicit provider dates are authoritative; derived durations are not."""
        return self in (ExpirySource.NEXT_CHARGE, ExpirySource.PERIOD_END)


@dataclass(frozen=True)
class ExpiryResolution:
    expires_at: datetime
    source: ExpirySource


def resolve_expiry(
    snapshot: BillingSnapshot,
    now: datetime,
    fallback_duration: timedelta = DEFAULT_FALLBACK_DURATION,
) -> ExpiryResolution:
    """
    Resolve the expiry instant for a snapshot.

    Never raises. A snapshot with no usable fields resolves to the fallback.

    Args:
        snapshot: Canonical billing snapshot
        now: Current instant (timezone-aware)
        fallback_duration: Last-resort access duration

    Returns:
        ExpiryResolution with the instant and the source that produced it
    """
    if snapshot.next_charge_at is not None:
        return ExpiryResolution(snapshot.next_charge_at, ExpirySource.NEXT_CHARGE)

    if snapshot.period_end_at is not None:
        return ExpiryResolution(snapshot.period_end_at, ExpirySource.PERIOD_END)

    interval = snapshot.billing_interval_days
    if interval is not None and interval > 0:
        return ExpiryResolution(
            now + timedelta(days=interval), ExpirySource.BILLING_INTERVAL
        )

    return ExpiryResolution(now + fallback_duration, ExpirySource.FALLBACK)
