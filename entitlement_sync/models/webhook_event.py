"""
BillingWebhookEvent model for tracking processed provider webhooks.

Used for idempotency: the provider delivers at-least-once, and this table
ensures each webhook message id is applied at most once.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, String, func

from entitlement_sync.db_base import Base


class BillingWebhookEvent(Base):
    """
    Tracks processed billing provider webhook deliveries for deduplication.

    Redelivered messages carry the same webhook-id header and are skipped.
    """

    __tablename__ = "billing_webhook_events"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider webhook message ID (webhook-id header)"
    )

    event_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Event type (e.g., subscription.renewed)"
    )

    user_id = Column(
        String(128),
        nullable=True,
        index=True,
        comment="Resolved user, null when identity could not be resolved"
    )

    outcome = Column(
        String(50),
        nullable=False,
        comment="applied, no_change, unresolved_identity, ignored, rejected"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When the webhook was processed"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index("idx_billing_webhook_events_user_type", "user_id", "event_type"),
        Index(
            "idx_billing_webhook_events_processed",
            "processed_at",
            postgresql_ops={"processed_at": "DESC"}
        ),
    )

    def __repr__(self) -> str:
        return f"<BillingWebhookEvent(id={self.id}, event_id={self.provider_event_id}, type={self.event_type})>"
