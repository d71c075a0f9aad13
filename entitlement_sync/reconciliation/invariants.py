"""
Invariant checker for entitlement state.

Used by the test suite to assert that reconciliation and local expiry never
produce an inconsistent record. A failure here is a programming error.

Checked invariants:
- EXPIRED_REVOKES: past expiry means no premium
- CANCELLED_RETAINS: cancelled before expiry keeps premium
- EXPLAINED_REVOCATION: no premium implies expired, past expiry, or no subscription
- IDEMPOTENT: re-applying a snapshot produces no second write
- EXPIRY_NOT_SHORTENED: a dateless snapshot never pulls a live expiry earlier
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from entitlement_sync.errors import InvariantViolationError
from entitlement_sync.reconciliation.decision import reconcile
from entitlement_sync.reconciliation.expiry import DEFAULT_FALLBACK_DURATION
from entitlement_sync.reconciliation.snapshot import (
    BillingSnapshot,
    EffectiveStatus,
    EntitlementState,
)


@dataclass(frozen=True)
class InvariantResult:
    name: str
    passed: bool
    message: str


def check_invariants(state: EntitlementState, now: datetime) -> List[InvariantResult]:
    """
    Evaluate the state invariants that apply to a record at an instant.

    Only invariants whose precondition holds are reported.
    """
    results: List[InvariantResult] = []

    if state.is_expired_at(now):
        results.append(InvariantResult(
            name="EXPIRED_REVOKES",
            passed=state.is_premium is False,
            message=f"expired at {state.expires_at} but is_premium={state.is_premium}",
        ))

    if (
        state.status == EffectiveStatus.CANCELLED
        and state.expires_at is not None
        and now < state.expires_at
    ):
        results.append(InvariantResult(
            name="CANCELLED_RETAINS",
            passed=state.is_premium is True,
            message=f"cancelled before expiry but is_premium={state.is_premium}",
        ))

    if state.is_premium is False and state.subscription_id:
        explained = state.status == EffectiveStatus.EXPIRED or state.is_expired_at(now)
        results.append(InvariantResult(
            name="EXPLAINED_REVOCATION",
            passed=explained,
            message=f"is_premium=False with subscription but status={state.status.value}",
        ))

    return results


def check_idempotence(
    state: EntitlementState,
    snapshot: BillingSnapshot,
    now: datetime,
    fallback_duration: timedelta = DEFAULT_FALLBACK_DURATION,
) -> InvariantResult:
    """Apply a snapshot twice at the same instant and expect one write at most."""
    first = reconcile(state, snapshot, now, fallback_duration)
    after_first = first.apply(state)
    second = reconcile(after_first, snapshot, now, fallback_duration)
    return InvariantResult(
        name="IDEMPOTENT",
        passed=not second.should_write and second.apply(after_first) == after_first,
        message=f"second application wrote: {second.reason}",
    )


def check_expiry_not_shortened(
    before: EntitlementState,
    snapshot: BillingSnapshot,
    now: datetime,
    fallback_duration: timedelta = DEFAULT_FALLBACK_DURATION,
) -> Optional[InvariantResult]:
    """
    Check that a dateless, non-terminal snapshot never pulls a live expiry earlier.

    Returns None when the precondition does not apply.
    """
    if snapshot.has_dates or before.expires_at is None or before.expires_at <= now:
        return None

    after = reconcile(before, snapshot, now, fallback_duration).apply(before)
    if after.status == EffectiveStatus.EXPIRED:
        return None

    return InvariantResult(
        name="EXPIRY_NOT_SHORTENED",
        passed=after.expires_at is not None and after.expires_at >= before.expires_at,
        message=f"expiry moved from {before.expires_at} to {after.expires_at}",
    )


def assert_invariants(state: EntitlementState, now: datetime) -> None:
    """Raise InvariantViolationError if any state invariant fails."""
    failures = [
        f"{result.name}: {result.message}"
        for result in check_invariants(state, now)
        if not result.passed
    ]
    if failures:
        raise InvariantViolationError(failures)
