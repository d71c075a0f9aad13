"""
Identity resolution for webhooks without a direct user reference.

The identity provider is an external collaborator; this service only answers
"which user owns this email" from the locally synced user_accounts table.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from entitlement_sync.models.user_account import UserAccount

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Best-effort email -> user ID lookup."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def resolve_user_by_email(self, email: Optional[str]) -> Optional[str]:
        """
        Resolve a user ID from an account email.

        Args:
            email: Customer email from the webhook payload

        Returns:
            User ID, or None when no account matches
        """
        if not email or not email.strip():
            return None

        normalized = email.strip().lower()
        account = self.db.query(UserAccount).filter(
            UserAccount.email == normalized
        ).first()

        if account is None:
            logger.warning("No user found for webhook email", extra={
                "email_domain": normalized.split("@")[-1],
            })
            return None

        return account.user_id
