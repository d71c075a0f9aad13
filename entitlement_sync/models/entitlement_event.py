"""
EntitlementEvent model: append-only trail of entitlement changes.

CRITICAL: This table is APPEND-ONLY. Never update or delete events.
It exists for debugging and support; nothing reads it for correctness.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, String, Text

from entitlement_sync.models.base import Base, generate_uuid


class EntitlementEventSource:
    """What triggered the entitlement change."""
    WEBHOOK = "webhook"
    POLL = "poll"
    LOCAL_EXPIRY = "local_expiry"
    CANCEL_REQUEST = "cancel_request"
    CRON = "cron"
    PAYMENT_VERIFICATION = "payment_verification"


class EntitlementEvent(Base):
    """Immutable record of a single entitlement write."""

    __tablename__ = "entitlement_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(128),
        nullable=False,
        index=True,
        comment="User whose entitlement changed"
    )

    source = Column(
        Enum(
            "webhook", "poll", "local_expiry", "cancel_request", "cron", "payment_verification",
            name="entitlement_event_source",
        ),
        nullable=False,
        comment="Trigger of the change"
    )

    # Transition
    from_status = Column(String(20), nullable=True, comment="Status before the write")
    to_status = Column(String(20), nullable=False, comment="Status after the write")
    is_premium = Column(Boolean, nullable=False, comment="is_premium after the write")
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="Expiry after the write")

    provider_reference = Column(
        String(100),
        nullable=True,
        comment="Provider subscription or payment ID involved"
    )
    reason = Column(Text, nullable=True, comment="Decision reason")

    # Event metadata (JSON for flexible data)
    extra_metadata = Column(
        "metadata",
        Text,
        nullable=True,
        comment="Additional event data as JSON"
    )

    occurred_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="When the change was applied"
    )

    __table_args__ = (
        Index("ix_entitlement_events_user_time", "user_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<EntitlementEvent(id={self.id}, user_id={self.user_id}, to_status={self.to_status})>"
