"""
Dodo Payments API and webhook payload schemas.

Only the fields the entitlement engine needs are modelled; everything else
in the provider's JSON is ignored. Each schema knows how to turn itself into
the provider-agnostic types the engine consumes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from entitlement_sync.reconciliation import BillingSnapshot, ProviderEvent

# Approximate length of one provider payment frequency unit
_FREQUENCY_DAYS = {
    "day": 1,
    "week": 7,
    "month": 30,
    "year": 365,
}


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("*", mode="after")
    @classmethod
    def _datetimes_to_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return _ensure_utc(value)
        return value


class DodoCustomer(_ProviderModel):
    customer_id: Optional[str] = None
    email: Optional[str] = None


class DodoSubscription(_ProviderModel):
    """Subscription resource as returned by GET /subscriptions/{id}."""
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_next_billing_date: Optional[bool] = False
    cancelled_at: Optional[datetime] = None
    billing_interval_count: Optional[int] = None
    payment_frequency_interval: Optional[str] = None
    payment_frequency_count: Optional[int] = None
    customer: Optional[DodoCustomer] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def billing_interval_days(self) -> Optional[int]:
        """Billing cadence in days, from the explicit count or the payment frequency."""
        if self.billing_interval_count:
            return self.billing_interval_count
        if self.payment_frequency_interval and self.payment_frequency_count:
            unit = _FREQUENCY_DAYS.get(self.payment_frequency_interval.lower())
            if unit:
                return unit * self.payment_frequency_count
        return None

    def to_snapshot(self) -> BillingSnapshot:
        return BillingSnapshot(
            raw_status=self.status,
            next_charge_at=self.next_billing_date,
            period_end_at=self.current_period_end,
            scheduled_cancellation=bool(self.cancel_at_next_billing_date),
            cancelled_at=self.cancelled_at,
            billing_interval_days=self.billing_interval_days,
            subscription_id=self.subscription_id,
        )


class DodoPayment(_ProviderModel):
    """Payment resource as returned by GET /payments/{id}."""
    payment_id: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    created_at: Optional[datetime] = None
    customer: Optional[DodoCustomer] = None
    metadata: Optional[Dict[str, Any]] = None


def metadata_user_id(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    """User ID attached to a checkout through provider metadata, if any."""
    user_id = metadata.get("user_id") if metadata else None
    return str(user_id) if user_id else None


class DodoWebhookData(_ProviderModel):
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    customer: Optional[DodoCustomer] = None
    metadata: Optional[Dict[str, Any]] = None
    next_billing_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    billing_interval_count: Optional[int] = None
    created_at: Optional[datetime] = None


class DodoWebhookPayload(_ProviderModel):
    """Envelope of a Dodo Payments webhook delivery."""
    type: str
    timestamp: Optional[datetime] = None
    data: DodoWebhookData = Field(default_factory=DodoWebhookData)

    def to_provider_event(self) -> ProviderEvent:
        data = self.data
        return ProviderEvent(
            event_type=self.type.strip().lower(),
            subscription_id=data.subscription_id,
            payment_id=data.payment_id,
            user_id=metadata_user_id(data.metadata),
            customer_email=data.customer.email if data.customer else None,
            next_billing_date=data.next_billing_date,
            current_period_end=data.current_period_end,
            billing_interval_days=data.billing_interval_count,
            occurred_at=data.created_at or self.timestamp,
        )
