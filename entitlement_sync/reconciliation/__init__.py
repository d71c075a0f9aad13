"""
Subscription reconciliation engine.

Pure decision logic that turns billing signals (webhook events, poll
responses, the passage of time) into a single entitlement record per user.
Nothing in this package performs I/O.

Usage:
    from entitlement_sync.reconciliation import reconcile, enforce_local_expiry

    decision = reconcile(current_state, snapshot, now)
    if decision.should_write:
        new_state = decision.apply(current_state)
"""

from entitlement_sync.reconciliation.snapshot import (
    BillingSnapshot,
    EffectiveStatus,
    EntitlementState,
    LocalExpiryDecision,
    RawStatus,
    ReconciliationDecision,
)
from entitlement_sync.reconciliation.expiry import (
    DEFAULT_FALLBACK_DURATION,
    ExpiryResolution,
    ExpirySource,
    resolve_expiry,
)
from entitlement_sync.reconciliation.status import resolve_effective_status
from entitlement_sync.reconciliation.decision import reconcile
from entitlement_sync.reconciliation.webhook_events import (
    DEFAULT_ONE_TIME_ACCESS,
    ProviderEvent,
    WebhookEventType,
    direct_user_reference,
    has_live_subscription,
    normalize_event,
)
from entitlement_sync.reconciliation.local_expiry import enforce_local_expiry
from entitlement_sync.reconciliation.cooldown import DEFAULT_COOLDOWN, should_skip_poll
from entitlement_sync.reconciliation.invariants import (
    InvariantResult,
    assert_invariants,
    check_expiry_not_shortened,
    check_idempotence,
    check_invariants,
)

__all__ = [
    # Types
    "BillingSnapshot",
    "EffectiveStatus",
    "EntitlementState",
    "LocalExpiryDecision",
    "RawStatus",
    "ReconciliationDecision",
    "ExpiryResolution",
    "ExpirySource",
    "ProviderEvent",
    "WebhookEventType",
    "InvariantResult",
    # Defaults
    "DEFAULT_COOLDOWN",
    "DEFAULT_FALLBACK_DURATION",
    "DEFAULT_ONE_TIME_ACCESS",
    # Functions
    "resolve_expiry",
    "resolve_effective_status",
    "reconcile",
    "direct_user_reference",
    "has_live_subscription",
    "normalize_event",
    "enforce_local_expiry",
    "should_skip_poll",
    "check_invariants",
    "check_idempotence",
    "check_expiry_not_shortened",
    "assert_invariants",
]
