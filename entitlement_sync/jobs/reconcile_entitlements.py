"""
Entitlement reconciliation job.

Runs periodically to keep the local entitlement records honest even when
webhooks are missed and users stay away:

1. Sweep: revoke premium for every record whose expiry has passed
   (local expiry enforcement, no provider calls).
2. Poll: re-check subscriptions that have not been reconciled within the
   cooldown window, so renewals and cancellations are picked up.

Usage:
    python -m entitlement_sync.jobs.reconcile_entitlements

Deployed as a cron job.
"""

import sys
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.database.session import get_session_factory
from entitlement_sync.integrations.dodo.billing_client import DodoBillingClient, get_billing_client
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.repositories.entitlement_repository import EntitlementRepository
from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler
from entitlement_sync.services.subscription_checker import SubscriptionChecker

logger = logging.getLogger(__name__)

# Delay between provider calls to stay under rate limits
POLL_DELAY_SECONDS = 0.2


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self):
        self.expired_revoked = 0
        self.subscriptions_checked = 0
        self.subscriptions_updated = 0
        self.subscriptions_skipped = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "expired_revoked": self.expired_revoked,
            "subscriptions_checked": self.subscriptions_checked,
            "subscriptions_updated": self.subscriptions_updated,
            "subscriptions_skipped": self.subscriptions_skipped,
            "errors": self.errors,
            "duration_seconds": duration
        }


def sweep_expired_entitlements(
    session: Session,
    stats: ReconciliationStats,
    now: datetime,
    settings: ReconciliationSettings,
) -> None:
    """
    Revoke premium for all records whose expiry has passed.

    Args:
        session: Database session
        stats: Statistics tracker
        now: Sweep instant
        settings: Reconciliation settings
    """
    repository = EntitlementRepository(session)
    reconciler = EntitlementReconciler(session, settings)
    passed_over = set()

    while True:
        user_ids = [
            user_id
            for user_id in repository.list_expired_premium(
                now, settings.reconcile_batch_size + len(passed_over)
            )
            if user_id not in passed_over
        ]
        if not user_ids:
            break

        for user_id in user_ids:
            try:
                result = reconciler.enforce_expiry(
                    user_id, source=EntitlementEventSource.CRON, now=now
                )
                if result.written:
                    stats.expired_revoked += 1
                else:
                    passed_over.add(user_id)
            except Exception as e:
                session.rollback()
                passed_over.add(user_id)
                logger.error("Error revoking expired entitlement", extra={
                    "user_id": user_id,
                    "error": str(e)
                })
                stats.errors += 1

    if stats.expired_revoked:
        logger.info("Revoked expired entitlements", extra={
            "count": stats.expired_revoked
        })


async def poll_due_subscriptions(
    session: Session,
    client: DodoBillingClient,
    stats: ReconciliationStats,
    now: datetime,
    settings: ReconciliationSettings,
    poll_delay: float = POLL_DELAY_SECONDS,
) -> None:
    """
    Re-check subscriptions that have not been reconciled within the cooldown.

    Args:
        session: Database session
        client: Billing provider client
        stats: Statistics tracker
        now: Poll instant
        settings: Reconciliation settings
        poll_delay: Pause between provider calls
    """
    repository = EntitlementRepository(session)
    due = repository.list_due_for_poll(now - settings.check_cooldown, settings.reconcile_batch_size)
    user_ids = [row.user_id for row in due]

    logger.info("Found subscriptions to reconcile", extra={
        "subscription_count": len(user_ids)
    })

    checker = SubscriptionChecker(session, client, settings, clock=lambda: now)

    for user_id in user_ids:
        try:
            result = await checker.check(user_id)
            if result.checked:
                stats.subscriptions_checked += 1
                if result.written:
                    stats.subscriptions_updated += 1
            else:
                stats.subscriptions_skipped += 1
        except Exception as e:
            session.rollback()
            logger.error("Error reconciling subscription", extra={
                "user_id": user_id,
                "error": str(e)
            })
            stats.errors += 1

        if poll_delay:
            await asyncio.sleep(poll_delay)


async def run_reconciliation(
    session: Optional[Session] = None,
    client: Optional[DodoBillingClient] = None,
    settings: Optional[ReconciliationSettings] = None,
    now: Optional[datetime] = None,
    poll_delay: float = POLL_DELAY_SECONDS,
) -> dict:
    """
    Run the entitlement reconciliation job.

    The provider poll is skipped when no API key is configured; the expiry
    sweep always runs.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting entitlement reconciliation job")

    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    stats = ReconciliationStats()
    owns_session = session is None
    if owns_session:
        session = get_session_factory()()

    owns_client = client is None and bool(settings.provider_api_key)
    if owns_client:
        client = get_billing_client(settings)

    try:
        sweep_expired_entitlements(session, stats, now, settings)

        if client is not None:
            await poll_due_subscriptions(session, client, stats, now, settings, poll_delay)
        else:
            logger.warning("Billing provider not configured, skipping subscription poll")

        result = stats.to_dict()
        logger.info("Reconciliation job completed", extra=result)
        return result

    except Exception as e:
        logger.error("Reconciliation job failed", extra={
            "error": str(e)
        })
        raise
    finally:
        if owns_client:
            await client.close()
        if owns_session:
            session.close()


def main():
    """Entry point for running reconciliation job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_reconciliation())
        print(f"Reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
