"""
Unit tests for the Dodo Payments billing client.

Uses httpx.MockTransport so no network calls are made.
"""

import json
import pytest

import httpx

from entitlement_sync.config.settings import ReconciliationSettings
from entitlement_sync.integrations.dodo import (
    BillingProviderAPIError,
    DodoBillingClient,
    RetryConfig,
    get_billing_client,
)


NO_DELAY = RetryConfig(max_retries=2, initial_delay=0.0)


def _client(handler, retry_config=NO_DELAY):
    return DodoBillingClient(
        api_key="test-api-key",
        base_url="https://test.dodopayments.com/",
        retry_config=retry_config,
        transport=httpx.MockTransport(handler),
    )


class TestRetryConfig:

    def test_exponential_backoff(self):
        config = RetryConfig(initial_delay=1.0, backoff_multiplier=2.0, max_delay=30.0)

        assert config.delay_for(1) == 1.0
        assert config.delay_for(2) == 2.0
        assert config.delay_for(3) == 4.0

    def test_backoff_is_capped(self):
        assert RetryConfig(max_delay=5.0).delay_for(10) == 5.0

    def test_retry_after_wins(self):
        assert RetryConfig(max_delay=30.0).delay_for(1, retry_after=7.0) == 7.0
        assert RetryConfig(max_delay=30.0).delay_for(1, retry_after=90.0) == 30.0


class TestClientConstruction:

    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="api_key"):
            DodoBillingClient(api_key="", base_url="https://test.dodopayments.com")

    def test_requires_base_url(self):
        with pytest.raises(ValueError, match="base_url"):
            DodoBillingClient(api_key="key", base_url="")

    def test_factory_without_key_raises(self):
        with pytest.raises(ValueError):
            get_billing_client(ReconciliationSettings())


class TestGetSubscription:

    @pytest.mark.asyncio
    async def test_returns_parsed_subscription(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "subscription_id": "sub_123",
                "status": "active",
                "next_billing_date": "2025-07-15T12:00:00Z",
            })

        async with _client(handler) as client:
            subscription = await client.get_subscription("sub_123")

        assert seen["path"] == "/subscriptions/sub_123"
        assert seen["auth"] == "Bearer test-api-key"
        assert subscription.status == "active"
        assert subscription.to_snapshot().next_charge_at is not None

    @pytest.mark.asyncio
    async def test_not_found_returns_none(self):
        async with _client(lambda request: httpx.Response(404)) as client:
            assert await client.get_subscription("sub_missing") is None

    @pytest.mark.asyncio
    async def test_missing_id_is_filled_from_request(self):
        handler = lambda request: httpx.Response(200, json={"status": "active"})

        async with _client(handler) as client:
            subscription = await client.get_subscription("sub_123")

        assert subscription.subscription_id == "sub_123"

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"subscription_id": "sub_123", "status": "active"})

        async with _client(handler) as client:
            subscription = await client.get_subscription("sub_123")

        assert len(calls) == 3
        assert subscription.subscription_id == "sub_123"

    @pytest.mark.asyncio
    async def test_retries_exhausted_raises(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "0"})

        async with _client(handler) as client:
            with pytest.raises(BillingProviderAPIError) as exc_info:
                await client.get_subscription("sub_123")

        assert exc_info.value.status_code == 429
        assert len(calls) == NO_DELAY.max_retries + 1

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="unauthorized")

        async with _client(handler) as client:
            with pytest.raises(BillingProviderAPIError) as exc_info:
                await client.get_subscription("sub_123")

        assert exc_info.value.status_code == 401
        assert exc_info.value.response == "unauthorized"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connection_error_raises_after_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(BillingProviderAPIError, match="Request error"):
                await client.get_subscription("sub_123")

        assert len(calls) == NO_DELAY.max_retries + 1


class TestPaymentsAndCancellation:

    @pytest.mark.asyncio
    async def test_get_payment(self):
        handler = lambda request: httpx.Response(200, json={
            "payment_id": "pay_1",
            "subscription_id": "sub_123",
            "status": "succeeded",
        })

        async with _client(handler) as client:
            payment = await client.get_payment("pay_1")

        assert payment.subscription_id == "sub_123"

    @pytest.mark.asyncio
    async def test_cancel_sends_patch(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "subscription_id": "sub_123",
                "status": "active",
                "cancel_at_next_billing_date": True,
            })

        async with _client(handler) as client:
            subscription = await client.cancel_subscription("sub_123")

        assert seen["method"] == "PATCH"
        assert seen["body"] == {"cancel_at_next_billing_date": True}
        assert subscription.cancel_at_next_billing_date is True

    @pytest.mark.asyncio
    async def test_cancel_already_cancelled_surfaces_error(self):
        handler = lambda request: httpx.Response(400, text="Subscription already cancelled")

        async with _client(handler) as client:
            with pytest.raises(BillingProviderAPIError) as exc_info:
                await client.cancel_subscription("sub_123")

        assert exc_info.value.status_code == 400
        assert "already" in exc_info.value.response
