"""Database models for entitlement sync."""

from entitlement_sync.models.entitlement import PaymentType, UserEntitlement
from entitlement_sync.models.entitlement_event import EntitlementEvent, EntitlementEventSource
from entitlement_sync.models.user_account import UserAccount
from entitlement_sync.models.webhook_event import BillingWebhookEvent

__all__ = [
    "BillingWebhookEvent",
    "EntitlementEvent",
    "EntitlementEventSource",
    "PaymentType",
    "UserAccount",
    "UserEntitlement",
]
