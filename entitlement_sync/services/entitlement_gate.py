"""
Entitlement gate run at session start.

Order matters:
1. Local expiry enforcement, always, with no network access. A stale
   premium flag is revoked even when the cooldown gate skips the poll or
   the provider is down.
2. A cooldown-gated subscription poll, when a provider client is available.

Usage:
    gate = EntitlementGate(db, billing_client)
    result = await gate.evaluate(user_id)
    if result.state.is_premium:
        ...
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.integrations.dodo.billing_client import DodoBillingClient
from entitlement_sync.reconciliation import EntitlementState
from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler, utc_now
from entitlement_sync.services.subscription_checker import SubscriptionChecker

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    """Entitlement as seen by the caller after the gate ran."""
    user_id: str
    state: EntitlementState
    revoked: bool = False
    polled: bool = False
    poll_skipped_reason: Optional[str] = None


class EntitlementGate:

    def __init__(
        self,
        db_session: Session,
        billing_client: Optional[DodoBillingClient] = None,
        settings: Optional[ReconciliationSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.billing_client = billing_client
        self.settings = settings or get_settings()
        self.clock = clock
        self.reconciler = EntitlementReconciler(db_session, self.settings, clock)

    async def evaluate(self, user_id: str) -> GateResult:
        """
        Enforce local expiry, then poll the provider if the cooldown allows.

        Args:
            user_id: Authenticated user ID

        Returns:
            GateResult with the entitlement the caller should act on
        """
        expiry = self.reconciler.enforce_expiry(user_id, now=self.clock())
        result = GateResult(user_id=user_id, state=expiry.state, revoked=expiry.written)

        if self.billing_client is None:
            result.poll_skipped_reason = "no_provider_client"
            return result

        checker = SubscriptionChecker(self.db, self.billing_client, self.settings, self.clock)
        check = await checker.check(user_id)

        result.state = check.state
        result.polled = check.checked
        result.poll_skipped_reason = check.skipped_reason

        logger.debug("Entitlement gate evaluated", extra={
            "user_id": user_id,
            "revoked": result.revoked,
            "polled": result.polled,
            "poll_skipped_reason": result.poll_skipped_reason,
            "is_premium": result.state.is_premium,
        })
        return result
