"""Billing provider client dependencies."""

import logging
from typing import AsyncGenerator, Optional

from fastapi import HTTPException, status

from entitlement_sync.config.settings import get_settings
from entitlement_sync.integrations.dodo.billing_client import DodoBillingClient, get_billing_client

logger = logging.getLogger(__name__)


async def get_optional_billing_client() -> AsyncGenerator[Optional[DodoBillingClient], None]:
    """
    Yield a provider client, or None when the provider is not configured.

    Used where the provider is an optimization (the entitlement gate).
    """
    settings = get_settings()
    if not settings.provider_api_key:
        yield None
        return

    client = get_billing_client(settings)
    try:
        yield client
    finally:
        await client.close()


async def get_required_billing_client() -> AsyncGenerator[DodoBillingClient, None]:
    """
    Yield a provider client.

    Raises:
        HTTPException: 503 if DODO_PAYMENT_SECRET_KEY is not configured
    """
    settings = get_settings()
    if not settings.provider_api_key:
        logger.error("DODO_PAYMENT_SECRET_KEY not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing provider not configured",
        )

    client = get_billing_client(settings)
    try:
        yield client
    finally:
        await client.close()
