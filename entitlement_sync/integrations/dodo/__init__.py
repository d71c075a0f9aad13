"""Dodo Payments integration: API client and payload schemas."""

from entitlement_sync.integrations.dodo.billing_client import (
    BillingProviderAPIError,
    BillingProviderError,
    DodoBillingClient,
    RetryConfig,
    get_billing_client,
)
from entitlement_sync.integrations.dodo.schemas import (
    DodoPayment,
    DodoSubscription,
    DodoWebhookPayload,
)

__all__ = [
    "BillingProviderAPIError",
    "BillingProviderError",
    "DodoBillingClient",
    "DodoPayment",
    "DodoSubscription",
    "DodoWebhookPayload",
    "RetryConfig",
    "get_billing_client",
]
