"""
Authentication and entitlement dependencies.

Identity comes from the upstream authentication layer, which stores the
verified user ID on request.state.user_id. These dependencies never trust
identifiers sent in request bodies.
"""

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from entitlement_sync.api.dependencies.provider import get_optional_billing_client
from entitlement_sync.database.session import get_db_session
from entitlement_sync.services.entitlement_gate import EntitlementGate

logger = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> str:
    """
    Get the authenticated user ID.

    Raises:
        HTTPException: 401 if the request is not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


async def require_premium(
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
    billing_client=Depends(get_optional_billing_client),
) -> str:
    """
    Dependency for premium-only routes.

    Runs the entitlement gate and raises 402 Payment Required if the user
    is not premium afterwards. Returns the user ID if entitled.
    """
    gate = EntitlementGate(db_session, billing_client)
    result = await gate.evaluate(user_id)

    if not result.state.is_premium:
        logger.info("Premium access denied", extra={
            "user_id": user_id,
            "status": result.state.status.value,
        })
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Premium subscription required",
        )

    return user_id


def trusted_identity_header_middleware(header_name: str):
    """
    Build an HTTP middleware that trusts an identity header set by a gateway.

    Only enable this behind a proxy that strips the header from client
    requests and sets it after authenticating the user.
    """

    async def middleware(request: Request, call_next):
        user_id = request.headers.get(header_name)
        if user_id and user_id.strip():
            request.state.user_id = user_id.strip()
        return await call_next(request)

    return middleware
