"""
UserAccount model: email lookup table for identity resolution.

Populated by the identity provider sync; used only when a webhook carries a
customer email but no direct user reference.
"""

from sqlalchemy import Column, String

from entitlement_sync.models.base import Base, TimestampMixin


class UserAccount(Base, TimestampMixin):
    """Maps identity provider user IDs to their account email."""

    __tablename__ = "user_accounts"

    user_id = Column(
        String(128),
        primary_key=True,
        comment="Identity provider user ID"
    )
    email = Column(
        String(320),
        nullable=False,
        unique=True,
        index=True,
        comment="Lower-cased account email"
    )

    def __repr__(self) -> str:
        return f"<UserAccount(user_id={self.user_id})>"
