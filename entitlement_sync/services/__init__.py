"""
Entitlement services: apply engine decisions through the record store.
"""

from entitlement_sync.services.entitlement_reconciler import EntitlementReconciler
from entitlement_sync.services.billing_webhook_handler import BillingWebhookHandler
from entitlement_sync.services.subscription_checker import SubscriptionChecker
from entitlement_sync.services.entitlement_gate import EntitlementGate
from entitlement_sync.services.subscription_cancellation import SubscriptionCancellationService

__all__ = [
    "EntitlementReconciler",
    "BillingWebhookHandler",
    "SubscriptionChecker",
    "EntitlementGate",
    "SubscriptionCancellationService",
]
