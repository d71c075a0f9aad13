"""
Billing API routes for premium entitlement.

All routes require an authenticated user. The user ID always comes from the
authentication layer; subscription IDs in request bodies are checked against
the user's own record before the provider is contacted.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from entitlement_sync.api.dependencies.auth import get_current_user_id
from entitlement_sync.api.dependencies.provider import (
    get_optional_billing_client,
    get_required_billing_client,
)
from entitlement_sync.database.session import get_db_session
from entitlement_sync.errors import SubscriptionOwnershipError
from entitlement_sync.integrations.dodo.billing_client import BillingProviderError
from entitlement_sync.reconciliation import EntitlementState
from entitlement_sync.services.entitlement_gate import EntitlementGate
from entitlement_sync.services.payment_verification import PaymentVerificationService
from entitlement_sync.services.subscription_cancellation import SubscriptionCancellationService
from entitlement_sync.services.subscription_checker import CheckSkipReason, SubscriptionChecker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


# Request/Response models
class EntitlementResponse(BaseModel):
    """Current premium entitlement."""
    is_premium: bool
    status: str
    expires_at: Optional[datetime] = None
    subscription_id: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: EntitlementState) -> "EntitlementResponse":
        return cls(
            is_premium=state.is_premium,
            status=state.status.value,
            expires_at=state.expires_at,
            subscription_id=state.subscription_id,
            last_reconciled_at=state.last_reconciled_at,
        )


class GateResponse(EntitlementResponse):
    revoked: bool = False
    polled: bool = False
    poll_skipped_reason: Optional[str] = None


class CheckSubscriptionRequest(BaseModel):
    """Request to re-check a subscription with the provider."""
    subscription_id: str = Field(..., min_length=1, description="Subscription or payment ID")
    force: bool = Field(False, description="Bypass the check cooldown")


class CheckSubscriptionResponse(BaseModel):
    success: bool
    checked: bool
    is_subscription: bool
    skipped_reason: Optional[str] = None
    message: str
    entitlement: EntitlementResponse


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel a subscription at period end."""
    subscription_id: str = Field(..., min_length=1, description="Subscription to cancel")


class CancelSubscriptionResponse(BaseModel):
    success: bool
    already_cancelled: bool = False
    is_one_time_payment: bool = False
    message: str
    entitlement: EntitlementResponse


class VerifyPaymentRequest(BaseModel):
    """Request to verify a completed checkout."""
    payment_id: str = Field(..., min_length=1, description="Payment (pay_...) or subscription (sub_...) ID")


class VerifyPaymentResponse(BaseModel):
    success: bool
    is_subscription: bool
    provider_status: Optional[str] = None
    message: str
    entitlement: EntitlementResponse


def _ownership_denied(e: SubscriptionOwnershipError) -> HTTPException:
    logger.warning("Subscription ownership check failed", extra={
        "user_id": e.user_id,
        "requested_subscription_id": e.requested_subscription_id,
    })
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Subscription does not belong to user",
    )


@router.get("/entitlement", response_model=GateResponse)
async def get_entitlement(
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
    billing_client=Depends(get_optional_billing_client),
):
    """
    Get the user's premium entitlement.

    Runs local expiry enforcement first, then a cooldown-gated provider
    check. Provider problems degrade to the last persisted state.
    """
    gate = EntitlementGate(db_session, billing_client)
    result = await gate.evaluate(user_id)

    response = EntitlementResponse.from_state(result.state).model_dump()
    return GateResponse(
        **response,
        revoked=result.revoked,
        polled=result.polled,
        poll_skipped_reason=result.poll_skipped_reason,
    )


@router.post("/check-subscription", response_model=CheckSubscriptionResponse)
async def check_subscription(
    check_request: CheckSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
    billing_client=Depends(get_required_billing_client),
):
    """
    Re-check a subscription with the provider to pick up missed renewals.

    One-time payment IDs are acknowledged without a provider call. A
    provider failure is reported with success=false but never changes the
    stored entitlement.
    """
    checker = SubscriptionChecker(db_session, billing_client)
    try:
        result = await checker.check(
            user_id,
            subscription_id=check_request.subscription_id,
            force=check_request.force,
        )
    except SubscriptionOwnershipError as e:
        raise _ownership_denied(e)

    return CheckSubscriptionResponse(
        success=result.skipped_reason not in (
            CheckSkipReason.PROVIDER_UNAVAILABLE,
            CheckSkipReason.NOT_FOUND,
        ),
        checked=result.checked,
        is_subscription=result.is_subscription,
        skipped_reason=result.skipped_reason,
        message=result.message,
        entitlement=EntitlementResponse.from_state(result.state),
    )


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    cancel_request: CancelSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
    billing_client=Depends(get_required_billing_client),
):
    """
    Cancel the user's subscription at the end of the billing period.

    Premium access is kept until the current period ends.
    """
    service = SubscriptionCancellationService(db_session, billing_client)
    try:
        result = await service.cancel(user_id, cancel_request.subscription_id)
    except SubscriptionOwnershipError as e:
        raise _ownership_denied(e)
    except BillingProviderError as e:
        logger.error("Subscription cancellation failed", extra={
            "user_id": user_id,
            "subscription_id": cancel_request.subscription_id,
            "error": str(e),
        })
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to cancel with payment provider",
        )

    return CancelSubscriptionResponse(
        success=True,
        already_cancelled=result.already_cancelled,
        is_one_time_payment=result.is_one_time_payment,
        message=result.message,
        entitlement=EntitlementResponse.from_state(result.state),
    )


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(
    verify_request: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
    billing_client=Depends(get_required_billing_client),
):
    """
    Verify a completed checkout with the provider and grant premium.

    Recovers access when the activation webhook was lost. Transactions that
    did not succeed are rejected with 400.
    """
    service = PaymentVerificationService(db_session, billing_client)
    try:
        result = await service.verify(user_id, verify_request.payment_id)
    except SubscriptionOwnershipError as e:
        raise _ownership_denied(e)
    except BillingProviderError as e:
        logger.error("Payment verification failed", extra={
            "user_id": user_id,
            "reference_id": verify_request.payment_id,
            "error": str(e),
        })
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to verify with payment provider",
        )

    if not result.verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message,
        )

    return VerifyPaymentResponse(
        success=True,
        is_subscription=result.is_subscription,
        provider_status=result.provider_status,
        message=result.message,
        entitlement=EntitlementResponse.from_state(result.state),
    )
