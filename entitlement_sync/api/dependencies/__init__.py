"""FastAPI dependencies: authentication, entitlement gate, provider client."""

from entitlement_sync.api.dependencies.auth import get_current_user_id, require_premium

__all__ = ["get_current_user_id", "require_premium"]
