"""
Canonical value types shared by the reconciliation engine.

BillingSnapshot is the provider-agnostic view of whatever the billing
provider last reported. EntitlementState is the per-user record the engine
reads and proposes updates for. Neither type has behavior beyond small
convenience helpers; all decisions live in the resolver modules.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EffectiveStatus(str, Enum):
    """Effective subscription status, independent of provider vocabulary."""
    NONE = "none"            # Never subscribed, or data lost
    ACTIVE = "active"        # Paid and renewing
    CANCELLED = "cancelled"  # Access retained until expiry
    EXPIRED = "expired"      # Terminal until a new successful payment


class RawStatus:
    """Provider status values the resolver recognizes."""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    CANCELED = "canceled"
    EXPIRED = "expired"
    ON_HOLD = "on_hold"
    PAUSED = "paused"


@dataclass(frozen=True)
class BillingSnapshot:
    """Normalized provider view of a subscription at one point in time."""
    raw_status: Optional[str] = None
    next_charge_at: Optional[datetime] = None
    period_end_at: Optional[datetime] = None
    scheduled_cancellation: bool = False
    cancelled_at: Optional[datetime] = None
    billing_interval_days: Optional[int] = None
    subscription_id: Optional[str] = None

    @property
    def has_dates(self) -> bool:
        return self.next_charge_at is not None or self.period_end_at is not None


@dataclass(frozen=True)
class EntitlementState:
    """
    Persisted entitlement record for a single user.

    version is the optimistic-concurrency counter maintained by the record
    store; the engine carries it through untouched.
    """
    is_premium: bool = False
    expires_at: Optional[datetime] = None
    status: EffectiveStatus = EffectiveStatus.NONE
    subscription_id: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None
    version: int = 0

    def with_updates(self, updates: Dict[str, Any]) -> "EntitlementState":
        """Return a copy with the given partial updates merged in."""
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise KeyError(f"Unknown entitlement fields: {sorted(unknown)}")
        return replace(self, **updates)

    def is_expired_at(self, now: datetime) -> bool:
        """True when an expiry is set and now is strictly past it."""
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_premium": self.is_premium,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "status": self.status.value,
            "subscription_id": self.subscription_id,
            "last_reconciled_at": (
                self.last_reconciled_at.isoformat() if self.last_reconciled_at else None
            ),
        }


@dataclass(frozen=True)
class ReconciliationDecision:
    """Outcome of reconciling one snapshot against the persisted record."""
    should_write: bool
    updates: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    expiry_source: Optional[str] = None

    def apply(self, current: EntitlementState) -> EntitlementState:
        """Merge the proposed updates into the current record."""
        if not self.should_write:
            return current
        return current.with_updates(self.updates)


@dataclass(frozen=True)
class LocalExpiryDecision:
    """Outcome of the local expiry check."""
    should_revoke: bool
    updates: Dict[str, Any] = field(default_factory=dict)

    def apply(self, current: EntitlementState) -> EntitlementState:
        if not self.should_revoke:
            return current
        return current.with_updates(self.updates)
