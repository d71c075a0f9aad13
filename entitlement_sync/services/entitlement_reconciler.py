"""
Entitlement reconciler: applies engine decisions to the record store.

Every adapter (webhook, poll, cancellation, gate, cron) goes through this
service so that each user's record is mutated with the same discipline:

    read -> decide (pure engine) -> conditional write -> audit -> commit

A lost race (ConcurrentUpdateError) re-reads and re-decides; the decision
function is idempotent, so retrying is always safe.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.errors import ConcurrentUpdateError
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.reconciliation import (
    BillingSnapshot,
    EntitlementState,
    enforce_local_expiry,
    reconcile,
)
from entitlement_sync.repositories.entitlement_repository import EntitlementRepository

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApplyResult:
    """Result of applying a signal to a user's entitlement record."""
    user_id: str
    written: bool
    state: EntitlementState
    reason: str
    attempts: int = 1


class EntitlementReconciler:
    """
    Serialized, per-user application of reconciliation decisions.

    Different users never contend; the same user is serialized through the
    record version.
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[ReconciliationSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize reconciler.

        Args:
            db_session: Database session
            settings: Reconciliation settings (defaults to process settings)
            clock: Source of the current instant
        """
        self.db = db_session
        self.settings = settings or get_settings()
        self.clock = clock
        self.repository = EntitlementRepository(db_session)

    def read(self, user_id: str) -> EntitlementState:
        return self.repository.read(user_id)

    def apply_snapshot(
        self,
        user_id: str,
        snapshot: BillingSnapshot,
        source: str,
        provider_reference: Optional[str] = None,
        last_payment_id: Optional[str] = None,
        payment_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ApplyResult:
        """
        Reconcile a canonical snapshot into the user's record.

        Args:
            user_id: Resolved user ID
            snapshot: Canonical billing snapshot
            source: EntitlementEventSource value
            provider_reference: Subscription or payment ID for the audit trail
            last_payment_id: Payment ID to record on write
            payment_type: PaymentType value to record on write
            metadata: Extra audit data
            now: Override for the current instant

        Returns:
            ApplyResult with the resulting state

        Raises:
            ConcurrentUpdateError: If every write attempt lost the race
        """
        now = now or self.clock()
        max_attempts = max(1, self.settings.max_write_attempts)

        for attempt in range(1, max_attempts + 1):
            current = self.repository.read(user_id)
            decision = reconcile(current, snapshot, now, self.settings.fallback_duration)

            if not decision.should_write:
                self.repository.touch_last_reconciled(user_id, now)
                self.db.commit()
                logger.info("Reconciliation skipped write - no changes", extra={
                    "user_id": user_id,
                    "source": source,
                    "status": current.status.value,
                    "expiry_source": decision.expiry_source,
                })
                return ApplyResult(
                    user_id=user_id,
                    written=False,
                    state=current.with_updates({"last_reconciled_at": now}),
                    reason=decision.reason,
                    attempts=attempt,
                )

            new_state = decision.apply(current)
            try:
                persisted = self.repository.conditional_write(
                    user_id,
                    new_state,
                    expected_version=current.version,
                    last_reconciled_at=now,
                    last_payment_id=last_payment_id,
                    payment_type=payment_type,
                )
            except ConcurrentUpdateError:
                self.db.rollback()
                logger.warning("Entitlement write conflict, retrying", extra={
                    "user_id": user_id,
                    "source": source,
                    "attempt": attempt,
                })
                continue

            audit_metadata = dict(metadata or {})
            audit_metadata["expiry_source"] = decision.expiry_source
            self.repository.append_event(
                user_id=user_id,
                source=source,
                from_state=current,
                to_state=persisted,
                reason=decision.reason,
                provider_reference=provider_reference,
                metadata=audit_metadata,
            )
            self.db.commit()

            logger.info("Entitlement reconciled", extra={
                "user_id": user_id,
                "source": source,
                "from_status": current.status.value,
                "to_status": persisted.status.value,
                "is_premium": persisted.is_premium,
                "expires_at": persisted.expires_at.isoformat() if persisted.expires_at else None,
                "reason": decision.reason,
            })
            return ApplyResult(
                user_id=user_id,
                written=True,
                state=persisted,
                reason=decision.reason,
                attempts=attempt,
            )

        logger.error("Entitlement write conflicts exhausted retries", extra={
            "user_id": user_id,
            "source": source,
            "attempts": max_attempts,
        })
        raise ConcurrentUpdateError(user_id, self.repository.read(user_id).version)

    def enforce_expiry(
        self,
        user_id: str,
        source: str = EntitlementEventSource.LOCAL_EXPIRY,
        now: Optional[datetime] = None,
    ) -> ApplyResult:
        """
        Run the local expiry enforcer against the stored record.

        Needs no provider and no network; never skipped by the cooldown gate.
        """
        now = now or self.clock()
        max_attempts = max(1, self.settings.max_write_attempts)

        for attempt in range(1, max_attempts + 1):
            current = self.repository.read(user_id)
            decision = enforce_local_expiry(current, now)

            if not decision.should_revoke:
                return ApplyResult(
                    user_id=user_id,
                    written=False,
                    state=current,
                    reason="Not expired",
                    attempts=attempt,
                )

            new_state = decision.apply(current)
            try:
                persisted = self.repository.conditional_write(
                    user_id, new_state, expected_version=current.version
                )
            except ConcurrentUpdateError:
                self.db.rollback()
                logger.warning("Expiry revocation conflict, retrying", extra={
                    "user_id": user_id,
                    "attempt": attempt,
                })
                continue

            self.repository.append_event(
                user_id=user_id,
                source=source,
                from_state=current,
                to_state=persisted,
                reason="Expiry passed",
            )
            self.db.commit()

            logger.info("Premium revoked after expiry", extra={
                "user_id": user_id,
                "source": source,
                "expired_at": current.expires_at.isoformat() if current.expires_at else None,
            })
            return ApplyResult(
                user_id=user_id,
                written=True,
                state=persisted,
                reason="Expiry passed",
                attempts=attempt,
            )

        raise ConcurrentUpdateError(user_id, self.repository.read(user_id).version)
