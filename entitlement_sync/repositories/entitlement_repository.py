"""
Entitlement repository for data access operations.

Encapsulates all database operations for the per-user entitlement record:
- Version-checked conditional writes (per-user serialization)
- Translation between ORM rows and engine EntitlementState values
- Append-only audit events
- Batch lookups for the periodic reconciliation job
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_sync.errors import ConcurrentUpdateError
from entitlement_sync.models.entitlement import UserEntitlement
from entitlement_sync.models.entitlement_event import EntitlementEvent
from entitlement_sync.reconciliation.snapshot import EffectiveStatus, EntitlementState

logger = logging.getLogger(__name__)

SUBSCRIPTION_ID_PREFIX = "sub_"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize database datetimes (naive on SQLite) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_state(row: UserEntitlement) -> EntitlementState:
    """Convert an ORM row to the engine's value type."""
    return EntitlementState(
        is_premium=bool(row.is_premium),
        expires_at=_as_utc(row.expires_at),
        status=EffectiveStatus(row.status or EffectiveStatus.NONE.value),
        subscription_id=row.subscription_id,
        last_reconciled_at=_as_utc(row.last_reconciled_at),
        version=row.version or 0,
    )


class EntitlementRepository:
    """
    Repository for entitlement record access.

    The record store is the single point of serialization for a user:
    every write names the version it was decided against and fails with
    ConcurrentUpdateError when another writer got there first.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get(self, user_id: str) -> Optional[UserEntitlement]:
        """Get the raw row, bypassing any stale identity-map copy."""
        return self.db.get(UserEntitlement, user_id, populate_existing=True)

    def read(self, user_id: str) -> EntitlementState:
        """
        Read a user's entitlement state.

        Users without a row get the default state (status none, version 0).
        """
        row = self.get(user_id)
        if row is None:
            return EntitlementState()
        return to_state(row)

    def conditional_write(
        self,
        user_id: str,
        state: EntitlementState,
        expected_version: int,
        last_reconciled_at: Optional[datetime] = None,
        last_payment_id: Optional[str] = None,
        payment_type: Optional[str] = None,
    ) -> EntitlementState:
        """
        Persist engine-owned fields if the record is still at expected_version.

        Args:
            user_id: User ID
            state: Entitlement state to persist
            expected_version: Version the decision was computed against (0 = no row)
            last_reconciled_at: Reconciliation marker to record, if any
            last_payment_id: Provider payment ID to record, if any
            payment_type: PaymentType value to record, if any

        Returns:
            The persisted state with its new version

        Raises:
            ConcurrentUpdateError: If the record changed since it was read
        """
        values: Dict[str, Any] = {
            "is_premium": state.is_premium,
            "expires_at": state.expires_at,
            "status": state.status.value,
            "subscription_id": state.subscription_id,
        }
        if last_reconciled_at is not None:
            values["last_reconciled_at"] = last_reconciled_at
        if last_payment_id is not None:
            values["last_payment_id"] = last_payment_id
        if payment_type is not None:
            values["payment_type"] = payment_type

        new_version = expected_version + 1

        if expected_version == 0:
            if self.get(user_id) is not None:
                raise ConcurrentUpdateError(user_id, expected_version)
            self.db.add(UserEntitlement(user_id=user_id, version=new_version, **values))
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                raise ConcurrentUpdateError(user_id, expected_version)
        else:
            result = self.db.execute(
                update(UserEntitlement)
                .where(
                    UserEntitlement.user_id == user_id,
                    UserEntitlement.version == expected_version,
                )
                .values(version=new_version, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentUpdateError(user_id, expected_version)

        logger.debug("Entitlement record written", extra={
            "user_id": user_id,
            "version": new_version,
            "status": state.status.value,
        })

        persisted = state.with_updates({"version": new_version})
        if last_reconciled_at is not None:
            persisted = persisted.with_updates({"last_reconciled_at": last_reconciled_at})
        return persisted

    def touch_last_reconciled(self, user_id: str, reconciled_at: datetime) -> bool:
        """
        Record a reconciliation that changed nothing.

        Does not bump the version: last_reconciled_at is not an engine-owned field.

        Returns:
            True if a record was updated
        """
        result = self.db.execute(
            update(UserEntitlement)
            .where(UserEntitlement.user_id == user_id)
            .values(last_reconciled_at=reconciled_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def append_event(
        self,
        user_id: str,
        source: str,
        from_state: EntitlementState,
        to_state: EntitlementState,
        reason: Optional[str] = None,
        provider_reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EntitlementEvent:
        """Append an audit event for an entitlement write."""
        event = EntitlementEvent(
            user_id=user_id,
            source=source,
            from_status=from_state.status.value,
            to_status=to_state.status.value,
            is_premium=to_state.is_premium,
            expires_at=to_state.expires_at,
            provider_reference=provider_reference,
            reason=reason,
            extra_metadata=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        )
        self.db.add(event)
        return event

    def list_events(self, user_id: str) -> List[EntitlementEvent]:
        return (
            self.db.query(EntitlementEvent)
            .filter(EntitlementEvent.user_id == user_id)
            .order_by(EntitlementEvent.occurred_at)
            .all()
        )

    def list_expired_premium(self, now: datetime, limit: int) -> List[str]:
        """User IDs still marked premium whose expiry has passed."""
        rows = (
            self.db.query(UserEntitlement.user_id)
            .filter(
                UserEntitlement.is_premium.is_(True),
                UserEntitlement.expires_at.isnot(None),
                UserEntitlement.expires_at < now,
            )
            .limit(limit)
            .all()
        )
        return [row.user_id for row in rows]

    def list_due_for_poll(self, reconciled_before: datetime, limit: int) -> List[UserEntitlement]:
        """
        Subscription records not reconciled since the cutoff.

        One-time purchases have nothing to poll and are excluded.
        """
        return (
            self.db.query(UserEntitlement)
            .filter(
                UserEntitlement.subscription_id.like(f"{SUBSCRIPTION_ID_PREFIX}%"),
                UserEntitlement.status.in_([
                    EffectiveStatus.ACTIVE.value,
                    EffectiveStatus.CANCELLED.value,
                ]),
                or_(
                    UserEntitlement.last_reconciled_at.is_(None),
                    UserEntitlement.last_reconciled_at < reconciled_before,
                ),
            )
            .order_by(UserEntitlement.last_reconciled_at)
            .limit(limit)
            .all()
        )
