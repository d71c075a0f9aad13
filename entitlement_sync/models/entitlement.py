"""
UserEntitlement model: the per-user premium entitlement record.

CRITICAL: One row per user. The row is mutated only through the
reconciliation engine (webhook, poll, cancellation) or the local expiry
enforcer, and always through a version-checked conditional write.
"""

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, Integer, String

from entitlement_sync.models.base import Base, TimestampMixin


class PaymentType:
    """How the entitlement was paid for."""
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class UserEntitlement(Base, TimestampMixin):
    """
    Cached entitlement state used for fast authorization checks.

    CRITICAL DESIGN:
    - Billing provider is the source of truth; this is a cache
    - version column serializes concurrent writers per user
    - Never deleted; status "none" is a valid state
    """

    __tablename__ = "user_entitlements"

    user_id = Column(
        String(128),
        primary_key=True,
        comment="Identity provider user ID"
    )

    is_premium = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Current authorization to access premium features"
    )
    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Instant at which premium lapses absent further reconciliation"
    )
    status = Column(
        Enum("none", "active", "cancelled", "expired", name="entitlement_status"),
        nullable=False,
        default="none",
        index=True,
        comment="Effective subscription status"
    )

    # Provider references
    subscription_id = Column(
        String(100),
        nullable=True,
        index=True,
        comment="Provider subscription ID bound to this user"
    )
    last_payment_id = Column(
        String(100),
        nullable=True,
        comment="Most recent provider payment ID"
    )
    payment_type = Column(
        Enum("subscription", "one_time", name="entitlement_payment_type"),
        nullable=True,
        comment="Subscription or one-time purchase"
    )

    last_reconciled_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last successful reconciliation (drives the poll cooldown)"
    )

    version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency counter"
    )

    __table_args__ = (
        Index("ix_user_entitlements_premium_expiry", "is_premium", "expires_at"),
        Index("ix_user_entitlements_reconciled", "last_reconciled_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserEntitlement(user_id={self.user_id}, status={self.status}, "
            f"is_premium={self.is_premium})>"
        )
