"""
Effective status resolver.

Maps the provider's open status vocabulary onto the closed set
{active, cancelled, expired}. The mapping is total: unknown or missing raw
statuses resolve to cancelled, never to active.
"""

from entitlement_sync.reconciliation.snapshot import BillingSnapshot, EffectiveStatus, RawStatus

_TERMINAL = {
    RawStatus.CANCELLED: EffectiveStatus.CANCELLED,
    RawStatus.CANCELED: EffectiveStatus.CANCELLED,
    RawStatus.EXPIRED: EffectiveStatus.EXPIRED,
}

# Payment hold or pause degrades access instead of keeping it silently
_HOLD = {RawStatus.ON_HOLD, RawStatus.PAUSED}


def resolve_effective_status(snapshot: BillingSnapshot) -> EffectiveStatus:
    """
    Resolve the effective status of a snapshot.

    The provider reports status=active for subscriptions with a scheduled
    cancellation, so cancellation markers take precedence over the raw status.
    """
    if snapshot.scheduled_cancellation or snapshot.cancelled_at is not None:
        return EffectiveStatus.CANCELLED

    raw = (snapshot.raw_status or "").strip().lower()

    if raw in _TERMINAL:
        return _TERMINAL[raw]

    if raw in _HOLD:
        return EffectiveStatus.CANCELLED

    if raw == RawStatus.ACTIVE:
        return EffectiveStatus.ACTIVE

    return EffectiveStatus.CANCELLED
