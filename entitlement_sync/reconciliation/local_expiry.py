"""
Local expiry enforcer.

Network-independent backstop that revokes premium once the stored expiry has
passed. Runs on every session start and periodically, regardless of the
cooldown gate or provider availability.
"""

from datetime import datetime

from entitlement_sync.reconciliation.snapshot import (
    EffectiveStatus,
    EntitlementState,
    LocalExpiryDecision,
)


def enforce_local_expiry(state: EntitlementState, now: datetime) -> LocalExpiryDecision:
    """
    Check whether premium must be revoked based on the stored expiry.

    Args:
        state: Persisted entitlement record
        now: Current instant (timezone-aware)

    Returns:
        LocalExpiryDecision with the revocation updates, if any
    """
    if state.is_premium and state.is_expired_at(now):
        return LocalExpiryDecision(
            should_revoke=True,
            updates={
                "is_premium": False,
                "status": EffectiveStatus.EXPIRED,
            },
        )
    return LocalExpiryDecision(should_revoke=False)
