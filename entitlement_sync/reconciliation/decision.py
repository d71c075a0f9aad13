"""
Reconciliation decision function.

Given the persisted entitlement record, a canonical billing snapshot and the
current instant, decides whether a write is needed and what the record should
become. Pure and synchronous: no I/O, no clock reads, no shared state.

Rules:
- An effective status of expired is terminal: access is revoked and the
  expiry cleared, regardless of dates.
- An expiry from the fallback duration never overrides a persisted expiry
  that is still in the future. One derived from the billing interval may
  extend a live expiry but never shorten it.
- An explicit provider date is trusted, even when it moves the expiry earlier.
- Re-applying the same snapshot to the resulting record is a no-op.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from entitlement_sync.reconciliation.expiry import (
    DEFAULT_FALLBACK_DURATION,
    ExpiryResolution,
    ExpirySource,
    resolve_expiry,
)
from entitlement_sync.reconciliation.snapshot import (
    BillingSnapshot,
    EffectiveStatus,
    EntitlementState,
    ReconciliationDecision,
)
from entitlement_sync.reconciliation.status import resolve_effective_status

logger = logging.getLogger(__name__)

# Order matters for the reason string only
_COMPARED_FIELDS = ("is_premium", "expires_at", "status", "subscription_id")

# Statuses from which a different subscription id may replace the bound one
_REBINDABLE = (EffectiveStatus.NONE, EffectiveStatus.EXPIRED)


def _bind_subscription_id(
    current: EntitlementState,
    incoming: Optional[str],
    new_status: EffectiveStatus,
) -> Optional[str]:
    """
    Decide which subscription id the record carries after reconciliation.

    Once bound, the id is kept. It is replaced only when the record has no
    live subscription (none/expired), or when a cancelled record is
    reactivated by a new active subscription. A terminal snapshot never
    rebinds.
    """
    if incoming is None or current.subscription_id is None:
        return current.subscription_id or incoming

    if incoming == current.subscription_id or new_status == EffectiveStatus.EXPIRED:
        return current.subscription_id

    if current.status in _REBINDABLE:
        return incoming

    if current.status == EffectiveStatus.CANCELLED and new_status == EffectiveStatus.ACTIVE:
        return incoming

    return current.subscription_id


def _target_expiry(
    current: EntitlementState,
    resolution: ExpiryResolution,
    now: datetime,
) -> datetime:
    live_expiry = None
    if current.expires_at is not None and current.expires_at > now:
        live_expiry = current.expires_at

    if resolution.source == ExpirySource.FALLBACK:
        return live_expiry or resolution.expires_at

    if resolution.source == ExpirySource.BILLING_INTERVAL:
        # a derived interval may extend a live expiry, never shorten it
        if live_expiry is not None and live_expiry > resolution.expires_at:
            return live_expiry
        return resolution.expires_at

    if current.expires_at is not None and resolution.expires_at < current.expires_at:
        logger.warning("Provider moved expiry earlier, accepting provider date", extra={
            "current_expires_at": current.expires_at.isoformat(),
            "new_expires_at": resolution.expires_at.isoformat(),
            "source": resolution.source.value,
        })
    return resolution.expires_at


def reconcile(
    current: EntitlementState,
    snapshot: BillingSnapshot,
    now: datetime,
    fallback_duration: timedelta = DEFAULT_FALLBACK_DURATION,
) -> ReconciliationDecision:
    """
    Reconcile a billing snapshot against the persisted entitlement record.

    Args:
        current: Persisted entitlement record
        snapshot: Canonical billing snapshot from a webhook or a poll
        now: Current instant (timezone-aware)
        fallback_duration: Last-resort access duration for dateless snapshots

    Returns:
        ReconciliationDecision; updates is empty when no write is needed
    """
    new_status = resolve_effective_status(snapshot)
    subscription_id = _bind_subscription_id(current, snapshot.subscription_id, new_status)

    if new_status == EffectiveStatus.EXPIRED:
        target: Dict[str, Any] = {
            "is_premium": False,
            "expires_at": None,
            "status": EffectiveStatus.EXPIRED,
        }
        expiry_source = None
    else:
        resolution = resolve_expiry(snapshot, now, fallback_duration)
        new_expiry = _target_expiry(current, resolution, now)
        target = {
            "is_premium": not now > new_expiry,
            "expires_at": new_expiry,
            "status": new_status,
        }
        expiry_source = resolution.source.value

    target["subscription_id"] = subscription_id

    changed = [name for name in _COMPARED_FIELDS if getattr(current, name) != target[name]]

    if not changed:
        return ReconciliationDecision(
            should_write=False,
            reason="No changes detected",
            expiry_source=expiry_source,
        )

    if "subscription_id" not in changed:
        del target["subscription_id"]

    return ReconciliationDecision(
        should_write=True,
        updates=target,
        reason="changed: " + ", ".join(changed),
        expiry_source=expiry_source,
    )
