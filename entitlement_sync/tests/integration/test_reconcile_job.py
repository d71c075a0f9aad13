"""
Integration tests for the entitlement reconciliation job.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from entitlement_sync.config.settings import ReconciliationSettings
from entitlement_sync.integrations.dodo import BillingProviderAPIError, DodoSubscription
from entitlement_sync.jobs.reconcile_entitlements import (
    ReconciliationStats,
    run_reconciliation,
    sweep_expired_entitlements,
)
from entitlement_sync.models.entitlement_event import EntitlementEventSource
from entitlement_sync.reconciliation import EffectiveStatus, EntitlementState
from entitlement_sync.repositories.entitlement_repository import EntitlementRepository


DAY = timedelta(days=1)


@pytest.fixture
def repository(db_session):
    return EntitlementRepository(db_session)


@pytest.fixture
def seed(db_session, repository, now):
    def _seed(user_id, days, subscription_id=None, last_reconciled_at=None):
        repository.conditional_write(
            user_id,
            EntitlementState(
                is_premium=True,
                expires_at=now + days * DAY,
                status=EffectiveStatus.ACTIVE,
                subscription_id=subscription_id,
            ),
            expected_version=0,
            last_reconciled_at=last_reconciled_at,
        )
        db_session.commit()
    return _seed


class TestSweep:

    def test_revokes_only_expired_records(self, db_session, settings, seed, repository, now):
        seed("expired_1", days=-1)
        seed("expired_2", days=-3)
        seed("live", days=5)
        stats = ReconciliationStats()

        sweep_expired_entitlements(db_session, stats, now, settings)

        assert stats.expired_revoked == 2
        assert repository.read("expired_1").is_premium is False
        assert repository.read("expired_2").status == EffectiveStatus.EXPIRED
        assert repository.read("live").is_premium is True
        assert repository.list_events("expired_1")[0].source == EntitlementEventSource.CRON

    def test_sweep_pages_through_batches(self, db_session, seed, repository, now):
        for i in range(5):
            seed(f"user_{i}", days=-1)
        stats = ReconciliationStats()

        sweep_expired_entitlements(db_session, stats, now, ReconciliationSettings(reconcile_batch_size=2))

        assert stats.expired_revoked == 5
        assert repository.list_expired_premium(now, limit=10) == []

    def test_errors_are_counted_and_sweep_finishes(self, db_session, settings, seed, now, monkeypatch):
        seed("broken", days=-1)
        seed("fine", days=-1)
        from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler

        original = EntitlementReconciler.enforce_expiry

        def flaky(self, user_id, **kwargs):
            if user_id == "broken":
                raise RuntimeError("boom")
            return original(self, user_id, **kwargs)

        monkeypatch.setattr(EntitlementReconciler, "enforce_expiry", flaky)
        stats = ReconciliationStats()

        sweep_expired_entitlements(db_session, stats, now, settings)

        assert stats.errors == 1
        assert stats.expired_revoked == 1


class TestRunReconciliation:

    @pytest.mark.asyncio
    async def test_polls_due_subscriptions(self, db_session, settings, seed, repository, now):
        seed("stale", days=1, subscription_id="sub_stale", last_reconciled_at=now - 2 * DAY)
        seed("fresh", days=1, subscription_id="sub_fresh", last_reconciled_at=now - timedelta(hours=1))
        client = MagicMock()
        client.get_subscription = AsyncMock(return_value=DodoSubscription(
            subscription_id="sub_stale", status="active", next_billing_date=now + 30 * DAY
        ))

        result = await run_reconciliation(
            session=db_session, client=client, settings=settings, now=now, poll_delay=0
        )

        assert result["subscriptions_checked"] == 1
        assert result["subscriptions_updated"] == 1
        assert result["errors"] == 0
        client.get_subscription.assert_awaited_once_with("sub_stale")
        assert repository.read("stale").expires_at == now + 30 * DAY

    @pytest.mark.asyncio
    async def test_provider_outage_is_skipped_not_fatal(self, db_session, settings, seed, now):
        seed("stale", days=1, subscription_id="sub_stale", last_reconciled_at=now - 2 * DAY)
        client = MagicMock()
        client.get_subscription = AsyncMock(side_effect=BillingProviderAPIError("down", status_code=503))

        result = await run_reconciliation(
            session=db_session, client=client, settings=settings, now=now, poll_delay=0
        )

        assert result["subscriptions_skipped"] == 1
        assert result["errors"] == 0

    @pytest.mark.asyncio
    async def test_sweep_runs_without_provider(self, db_session, seed, repository, now):
        seed("expired", days=-1, subscription_id="sub_1")

        result = await run_reconciliation(
            session=db_session, settings=ReconciliationSettings(), now=now, poll_delay=0
        )

        assert result["expired_revoked"] == 1
        assert result["subscriptions_checked"] == 0
        assert repository.read("expired").is_premium is False
