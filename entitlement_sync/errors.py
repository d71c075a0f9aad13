"""
Structured error classes for entitlement reconciliation.

The pure engine never raises for bad provider input; these errors belong to
the adapters (ownership, concurrency) and to the test-time invariant checker.
"""

from typing import List, Optional


class EntitlementSyncError(Exception):
    """Base exception for entitlement sync errors."""
    pass


class SubscriptionOwnershipError(EntitlementSyncError):
    """
    Raised when a request references a subscription that is not bound to the user.

    Adapters raise this before the engine runs; the engine is never asked to
    reconcile across a mismatched identity.
    """

    def __init__(
        self,
        user_id: str,
        requested_subscription_id: Optional[str],
        stored_subscription_id: Optional[str],
    ):
        self.user_id = user_id
        self.requested_subscription_id = requested_subscription_id
        self.stored_subscription_id = stored_subscription_id
        super().__init__(
            f"Subscription '{requested_subscription_id}' does not belong to user '{user_id}'"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "subscription_mismatch",
            "user_id": self.user_id,
            "subscription_id": self.requested_subscription_id,
        }


class ConcurrentUpdateError(EntitlementSyncError):
    """Raised when a conditional write loses the race for a user's record."""

    def __init__(self, user_id: str, expected_version: int):
        self.user_id = user_id
        self.expected_version = expected_version
        super().__init__(
            f"Entitlement record for '{user_id}' changed since version {expected_version}"
        )


class InvariantViolationError(EntitlementSyncError):
    """
    Raised when the invariant checker finds an inconsistent entitlement state.

    This is a programming error. It is surfaced in tests and never expected
    in production.
    """

    def __init__(self, failures: List[str]):
        self.failures = failures
        super().__init__("Entitlement invariants violated: " + "; ".join(failures))
