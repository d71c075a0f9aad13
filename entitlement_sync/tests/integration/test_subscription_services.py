"""
Integration tests for the pull-side services.

Tests cover:
- SubscriptionChecker: cooldown gate, ownership, provider failures
- EntitlementGate: local expiry enforcement before any provider call
- SubscriptionCancellationService: period-end cancellation and provider quirks
- PaymentVerificationService: post-checkout verification and ID binding
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from entitlement_sync.errors import SubscriptionOwnershipError
from entitlement_sync.integrations.dodo import BillingProviderAPIError, DodoPayment, DodoSubscription
from entitlement_sync.models import PaymentType, UserEntitlement
from entitlement_sync.reconciliation import EffectiveStatus, EntitlementState
from entitlement_sync.repositories.entitlement_repository import EntitlementRepository
from entitlement_sync.services.entitlement_gate import EntitlementGate
from entitlement_sync.services.payment_verification import PaymentVerificationService
from entitlement_sync.services.subscription_cancellation import SubscriptionCancellationService
from entitlement_sync.services.subscription_checker import (
    CheckSkipReason,
    SubscriptionChecker,
    is_subscription_id,
)


DAY = timedelta(days=1)


@pytest.fixture
def repository(db_session):
    return EntitlementRepository(db_session)


@pytest.fixture
def billing_client():
    client = MagicMock()
    client.get_subscription = AsyncMock(return_value=None)
    client.cancel_subscription = AsyncMock(return_value=None)
    return client


@pytest.fixture
def seed(db_session, repository, now):
    """Persist an entitlement record for user_1."""
    def _seed(days=10, status=EffectiveStatus.ACTIVE, subscription_id="sub_123",
              is_premium=True, last_reconciled_at=None):
        repository.conditional_write(
            "user_1",
            EntitlementState(
                is_premium=is_premium,
                expires_at=now + days * DAY if days is not None else None,
                status=status,
                subscription_id=subscription_id,
            ),
            expected_version=0,
            last_reconciled_at=last_reconciled_at,
        )
        db_session.commit()
    return _seed


def _subscription(now, status="active", days=30, **kwargs):
    return DodoSubscription(
        subscription_id="sub_123",
        status=status,
        next_billing_date=now + days * DAY,
        **kwargs,
    )


class TestIsSubscriptionId:

    @pytest.mark.parametrize("reference,expected", [
        ("sub_123", True),
        ("pay_123", False),
        ("", False),
        (None, False),
    ])
    def test_prefix(self, reference, expected):
        assert is_subscription_id(reference) is expected


class TestSubscriptionChecker:

    @pytest.fixture
    def checker(self, db_session, billing_client, settings, clock):
        return SubscriptionChecker(db_session, billing_client, settings, clock)

    @pytest.mark.asyncio
    async def test_renewal_picked_up_by_poll(self, checker, billing_client, seed, repository, now):
        seed(days=1)
        billing_client.get_subscription.return_value = _subscription(now, days=31)

        result = await checker.check("user_1", "sub_123")

        assert result.checked is True
        assert result.written is True
        assert result.message == "Subscription active"
        assert repository.read("user_1").expires_at == now + 31 * DAY
        billing_client.get_subscription.assert_awaited_once_with("sub_123")

    @pytest.mark.asyncio
    async def test_cooldown_skips_provider(self, checker, billing_client, seed, now):
        seed(last_reconciled_at=now - timedelta(hours=1))

        result = await checker.check("user_1")

        assert result.checked is False
        assert result.skipped_reason == CheckSkipReason.COOLDOWN
        billing_client.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_bypasses_cooldown(self, checker, billing_client, seed, now):
        seed(last_reconciled_at=now - timedelta(hours=1))
        billing_client.get_subscription.return_value = _subscription(now)

        result = await checker.check("user_1", force=True)

        assert result.checked is True

    @pytest.mark.asyncio
    async def test_noop_poll_restarts_cooldown(self, checker, billing_client, seed, repository, now):
        seed(days=30, last_reconciled_at=now - 7 * DAY)
        billing_client.get_subscription.return_value = _subscription(now, days=30)

        result = await checker.check("user_1")

        assert result.written is False
        assert repository.read("user_1").last_reconciled_at == now

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_state_untouched(self, checker, billing_client, seed, repository):
        seed()
        before = repository.read("user_1")
        billing_client.get_subscription.side_effect = BillingProviderAPIError("timeout")

        result = await checker.check("user_1")

        assert result.checked is False
        assert result.skipped_reason == CheckSkipReason.PROVIDER_UNAVAILABLE
        assert repository.read("user_1") == before

    @pytest.mark.asyncio
    async def test_subscription_not_found(self, checker, seed):
        seed()

        result = await checker.check("user_1")

        assert result.skipped_reason == CheckSkipReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_users_subscription_is_forbidden(self, checker, billing_client, seed):
        seed(subscription_id="sub_mine")

        with pytest.raises(SubscriptionOwnershipError):
            await checker.check("user_1", "sub_123")

        billing_client.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unbound_record_is_forbidden(self, checker):
        with pytest.raises(SubscriptionOwnershipError):
            await checker.check("user_1", "sub_123")

    @pytest.mark.asyncio
    async def test_one_time_payment_needs_no_check(self, checker, billing_client):
        result = await checker.check("user_1", "pay_123")

        assert result.is_subscription is False
        assert result.skipped_reason == CheckSkipReason.ONE_TIME_PURCHASE
        billing_client.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_record_without_subscription(self, checker, seed):
        seed(subscription_id=None)

        result = await checker.check("user_1")

        assert result.is_subscription is False
        assert result.skipped_reason == CheckSkipReason.NO_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_provider_expiry_revokes(self, checker, billing_client, seed, repository, now):
        seed()
        billing_client.get_subscription.return_value = _subscription(now, status="expired")

        await checker.check("user_1")

        state = repository.read("user_1")
        assert state.is_premium is False
        assert state.status == EffectiveStatus.EXPIRED


class TestEntitlementGate:

    @pytest.mark.asyncio
    async def test_revokes_expired_record_when_provider_is_down(
        self, db_session, billing_client, settings, clock, seed, repository
    ):
        seed(days=-1)
        billing_client.get_subscription.side_effect = BillingProviderAPIError("down", status_code=503)
        gate = EntitlementGate(db_session, billing_client, settings, clock)

        result = await gate.evaluate("user_1")

        assert result.revoked is True
        assert result.polled is False
        assert result.poll_skipped_reason == CheckSkipReason.PROVIDER_UNAVAILABLE
        assert result.state.is_premium is False
        assert repository.read("user_1").status == EffectiveStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_revokes_during_cooldown(self, db_session, billing_client, settings, clock, seed, now):
        seed(days=-1, last_reconciled_at=now - timedelta(hours=1))
        gate = EntitlementGate(db_session, billing_client, settings, clock)

        result = await gate.evaluate("user_1")

        assert result.revoked is True
        assert result.state.is_premium is False
        assert result.poll_skipped_reason == CheckSkipReason.COOLDOWN

    @pytest.mark.asyncio
    async def test_without_provider_client(self, db_session, settings, clock, seed):
        seed()
        gate = EntitlementGate(db_session, None, settings, clock)

        result = await gate.evaluate("user_1")

        assert result.revoked is False
        assert result.state.is_premium is True
        assert result.poll_skipped_reason == "no_provider_client"

    @pytest.mark.asyncio
    async def test_poll_renews_after_local_revocation(
        self, db_session, billing_client, settings, clock, seed, repository, now
    ):
        seed(days=-1)
        billing_client.get_subscription.return_value = _subscription(now, days=30)
        gate = EntitlementGate(db_session, billing_client, settings, clock)

        result = await gate.evaluate("user_1")

        assert result.revoked is True
        assert result.polled is True
        assert result.state.is_premium is True
        assert repository.read("user_1").status == EffectiveStatus.ACTIVE


class TestSubscriptionCancellation:

    @pytest.fixture
    def service(self, db_session, billing_client, settings, clock):
        return SubscriptionCancellationService(db_session, billing_client, settings, clock)

    @pytest.mark.asyncio
    async def test_cancel_keeps_access_until_expiry(self, service, billing_client, seed, repository, now):
        seed(days=10)
        billing_client.cancel_subscription.return_value = _subscription(
            now, days=10, cancel_at_next_billing_date=True
        )

        result = await service.cancel("user_1", "sub_123")

        state = repository.read("user_1")
        assert result.cancelled is True
        assert result.message == "Subscription cancelled successfully."
        assert state.status == EffectiveStatus.CANCELLED
        assert state.is_premium is True
        assert state.expires_at == now + 10 * DAY

    @pytest.mark.asyncio
    async def test_response_without_cancel_flag_still_cancels(self, service, billing_client, seed, repository, now):
        seed(days=10)
        billing_client.cancel_subscription.return_value = _subscription(now, days=10)

        await service.cancel("user_1", "sub_123")

        assert repository.read("user_1").status == EffectiveStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_already_cancelled_at_provider(self, service, billing_client, seed, repository, now):
        seed(days=10)
        billing_client.cancel_subscription.side_effect = BillingProviderAPIError(
            "Billing provider error: 400", status_code=400, response="Subscription already cancelled"
        )

        result = await service.cancel("user_1", "sub_123")

        state = repository.read("user_1")
        assert result.cancelled is True
        assert result.already_cancelled is True
        assert state.status == EffectiveStatus.CANCELLED
        assert state.expires_at == now + 10 * DAY

    @pytest.mark.asyncio
    async def test_already_cancelled_and_lapsed(self, service, billing_client, seed, repository):
        seed(days=-1, is_premium=False, status=EffectiveStatus.EXPIRED)
        before = repository.read("user_1")
        billing_client.cancel_subscription.side_effect = BillingProviderAPIError(
            "Billing provider error: 409", status_code=409, response="subscription expired"
        )

        result = await service.cancel("user_1", "sub_123")

        assert result.already_cancelled is True
        assert result.message == "Subscription is already cancelled or expired."
        assert repository.read("user_1") == before

    @pytest.mark.asyncio
    async def test_other_provider_errors_propagate(self, service, billing_client, seed):
        seed()
        billing_client.cancel_subscription.side_effect = BillingProviderAPIError(
            "Billing provider error: 401", status_code=401, response="unauthorized"
        )

        with pytest.raises(BillingProviderAPIError):
            await service.cancel("user_1", "sub_123")

    @pytest.mark.asyncio
    async def test_cannot_cancel_other_users_subscription(self, service, billing_client, seed):
        seed(subscription_id="sub_mine")

        with pytest.raises(SubscriptionOwnershipError):
            await service.cancel("user_1", "sub_123")

        billing_client.cancel_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_time_payment_has_nothing_to_cancel(self, service, billing_client):
        result = await service.cancel("user_1", "pay_123")

        assert result.cancelled is False
        assert result.is_one_time_payment is True
        billing_client.cancel_subscription.assert_not_awaited()


class TestPaymentVerification:

    @pytest.fixture
    def service(self, db_session, billing_client, settings, clock):
        billing_client.get_payment = AsyncMock(return_value=None)
        return PaymentVerificationService(db_session, billing_client, settings, clock)

    @pytest.mark.asyncio
    async def test_active_subscription_grants_and_binds(self, db_session, service, billing_client, repository, now):
        billing_client.get_subscription.return_value = _subscription(now, days=30)

        result = await service.verify("user_1", "sub_123")

        state = repository.read("user_1")
        row = db_session.get(UserEntitlement, "user_1")
        assert result.verified is True
        assert result.written is True
        assert result.is_subscription is True
        assert state.is_premium is True
        assert state.expires_at == now + 30 * DAY
        assert state.subscription_id == "sub_123"
        assert row.payment_type == PaymentType.SUBSCRIPTION
        billing_client.get_subscription.assert_awaited_once_with("sub_123")

    @pytest.mark.asyncio
    async def test_verified_subscription_can_then_be_checked(
        self, db_session, service, billing_client, settings, clock, now
    ):
        billing_client.get_subscription.return_value = _subscription(now, days=30)
        await service.verify("user_1", "sub_123")
        checker = SubscriptionChecker(db_session, billing_client, settings, clock)

        result = await checker.check("user_1", "sub_123", force=True)

        assert result.checked is True

    @pytest.mark.asyncio
    async def test_succeeded_one_time_payment_grants_access(
        self, db_session, service, billing_client, repository, now
    ):
        paid_at = now - DAY
        billing_client.get_payment.return_value = DodoPayment(
            payment_id="pay_1", status="succeeded", created_at=paid_at
        )

        result = await service.verify("user_1", "pay_1")

        state = repository.read("user_1")
        row = db_session.get(UserEntitlement, "user_1")
        assert result.verified is True
        assert result.is_subscription is False
        assert state.is_premium is True
        assert state.expires_at == paid_at + 30 * DAY
        assert row.payment_type == PaymentType.ONE_TIME
        assert row.last_payment_id == "pay_1"
        billing_client.get_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_subscription_payment_binds_its_subscription(self, service, billing_client, repository, now):
        billing_client.get_payment.return_value = DodoPayment(
            payment_id="pay_1", status="succeeded", subscription_id="sub_123"
        )
        billing_client.get_subscription.return_value = _subscription(now, days=30)

        result = await service.verify("user_1", "pay_1")

        assert result.is_subscription is True
        assert repository.read("user_1").subscription_id == "sub_123"
        billing_client.get_subscription.assert_awaited_once_with("sub_123")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reference_id,status", [
        ("pay_1", "failed"),
        ("pay_1", "processing"),
        ("sub_123", "pending"),
        ("sub_123", "cancelled"),
    ])
    async def test_unsuccessful_transaction_is_rejected(
        self, db_session, service, billing_client, reference_id, status, now
    ):
        billing_client.get_payment.return_value = DodoPayment(payment_id="pay_1", status=status)
        billing_client.get_subscription.return_value = _subscription(now, status=status)

        result = await service.verify("user_1", reference_id)

        assert result.verified is False
        assert result.provider_status == status
        assert result.message == f"Transaction status is {status}"
        assert db_session.get(UserEntitlement, "user_1") is None

    @pytest.mark.asyncio
    async def test_unknown_reference_is_rejected(self, service):
        result = await service.verify("user_1", "sub_missing")

        assert result.verified is False
        assert result.message == "Subscription not found"

    @pytest.mark.asyncio
    async def test_checkout_of_another_user_is_refused(self, service, billing_client, now):
        billing_client.get_subscription.return_value = _subscription(now, metadata={"user_id": "user_2"})

        with pytest.raises(SubscriptionOwnershipError):
            await service.verify("user_1", "sub_123")

    @pytest.mark.asyncio
    async def test_other_subscription_cannot_replace_active_one(self, service, billing_client, seed):
        seed(days=10, subscription_id="sub_other")

        with pytest.raises(SubscriptionOwnershipError):
            await service.verify("user_1", "sub_123")

        billing_client.get_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, service, billing_client):
        billing_client.get_subscription.side_effect = BillingProviderAPIError("down", status_code=503)

        with pytest.raises(BillingProviderAPIError):
            await service.verify("user_1", "sub_123")
