# API routes
from entitlement_sync.api.routes import health
from entitlement_sync.api.routes import billing
from entitlement_sync.api.routes import webhooks_billing

__all__ = ["health", "billing", "webhooks_billing"]
