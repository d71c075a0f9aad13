"""Cooldown gate bounding how often a user may trigger a provider poll."""

from datetime import datetime, timedelta
from typing import Optional

DEFAULT_COOLDOWN = timedelta(hours=6)


def should_skip_poll(
    last_reconciled_at: Optional[datetime],
    now: datetime,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> bool:
    """True when the last reconciliation happened less than `cooldown` ago."""
    if last_reconciled_at is None:
        return False
    return (now - last_reconciled_at) < cooldown
