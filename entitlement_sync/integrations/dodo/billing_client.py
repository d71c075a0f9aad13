"""
Dodo Payments API client for subscription lookups and cancellation.

Uses the Dodo Payments REST API with bearer-token auth. Transient failures
(429, 5xx, timeouts) are retried with exponential backoff; anything else is
surfaced as BillingProviderAPIError for the caller to treat as
"no new snapshot".

Documentation: https://docs.dodopayments.com/api-reference
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from entitlement_sync.config.settings import ReconciliationSettings, get_settings
from entitlement_sync.integrations.dodo.schemas import DodoPayment, DodoSubscription

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry policy for transient provider failures."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: frozenset = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Backoff delay before retry number `attempt` (1-based)."""
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingProviderAPIError(BillingProviderError):
    """Error communicating with the billing provider API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
        self.retry_after = retry_after


class DodoBillingClient:
    """
    Client for Dodo Payments subscription operations.

    Handles:
    - Fetching subscription status and billing dates
    - Resolving a payment to its subscription
    - Scheduling cancellation at the next billing date

    SECURITY: The API key is read from the environment and never logged.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize billing client.

        Args:
            api_key: Dodo Payments secret key
            base_url: API base URL (test or live environment)
            timeout: Request timeout in seconds
            retry_config: Retry policy for transient failures
            transport: Optional httpx transport (tests)
        """
        if not api_key:
            raise ValueError("api_key is required")
        if not base_url:
            raise ValueError("base_url is required")

        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Execute an API request with retry.

        Returns:
            Parsed JSON body, or None on 404

        Raises:
            BillingProviderAPIError: On non-retryable errors or exhausted retries
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._client.request(method, path, json=json)
            except httpx.TimeoutException as e:
                error = BillingProviderAPIError(f"Request timeout: {e}")
                logger.warning("Billing provider timeout", extra={
                    "path": path,
                    "attempt": attempt,
                })
            except httpx.RequestError as e:
                error = BillingProviderAPIError(f"Request error: {e}")
                logger.warning("Billing provider request error", extra={
                    "path": path,
                    "attempt": attempt,
                    "error": str(e),
                })
            else:
                if response.status_code == 404:
                    return None

                if response.status_code < 400:
                    return response.json() if response.content else {}

                retry_after = None
                if response.headers.get("Retry-After"):
                    try:
                        retry_after = float(response.headers["Retry-After"])
                    except ValueError:
                        retry_after = None

                error = BillingProviderAPIError(
                    f"Billing provider error: {response.status_code}",
                    status_code=response.status_code,
                    response=response.text[:500],
                    retry_after=retry_after,
                )

                if response.status_code not in self.retry_config.retryable_status_codes:
                    logger.error("Billing provider rejected request", extra={
                        "path": path,
                        "status_code": response.status_code,
                        "response_text": response.text[:500],
                    })
                    raise error

                logger.warning("Billing provider transient error", extra={
                    "path": path,
                    "status_code": response.status_code,
                    "attempt": attempt,
                })

            if attempt > self.retry_config.max_retries:
                logger.error("Billing provider retries exhausted", extra={
                    "path": path,
                    "attempts": attempt,
                })
                raise error

            await asyncio.sleep(self.retry_config.delay_for(attempt, error.retry_after))

    async def get_subscription(self, subscription_id: str) -> Optional[DodoSubscription]:
        """
        Get subscription details.

        Args:
            subscription_id: Provider subscription ID (sub_...)

        Returns:
            DodoSubscription if found, None otherwise
        """
        data = await self._request("GET", f"/subscriptions/{subscription_id}")
        if data is None:
            return None
        subscription = DodoSubscription.model_validate(data)
        if subscription.subscription_id is None:
            subscription = subscription.model_copy(update={"subscription_id": subscription_id})
        return subscription

    async def get_payment(self, payment_id: str) -> Optional[DodoPayment]:
        """Get payment details, used to find the subscription a payment renewed."""
        data = await self._request("GET", f"/payments/{payment_id}")
        if data is None:
            return None
        return DodoPayment.model_validate(data)

    async def cancel_subscription(self, subscription_id: str) -> Optional[DodoSubscription]:
        """
        Schedule cancellation at the next billing date.

        Access continues until the end of the paid period.

        Returns:
            Updated subscription, or None if the provider does not know it
        """
        logger.info("Scheduling subscription cancellation", extra={
            "subscription_id": subscription_id,
        })
        data = await self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            json={"cancel_at_next_billing_date": True},
        )
        if data is None:
            return None
        subscription = DodoSubscription.model_validate(data)
        if subscription.subscription_id is None:
            subscription = subscription.model_copy(update={"subscription_id": subscription_id})
        return subscription


def get_billing_client(settings: Optional[ReconciliationSettings] = None) -> DodoBillingClient:
    """
    Factory function to create a DodoBillingClient from settings.

    Raises:
        ValueError: If DODO_PAYMENT_SECRET_KEY is not configured
    """
    settings = settings or get_settings()
    return DodoBillingClient(
        api_key=settings.provider_api_key or "",
        base_url=settings.provider_api_base_url,
        timeout=settings.provider_timeout_seconds,
    )
