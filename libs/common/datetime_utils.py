"""Datetime utilities for timezone-aware UTC timestamps.

Usage:
    from libs.common.datetime_utils import utc_now

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime.

    Always use this for timestamps in the database.
    """
    return datetime.now(timezone.utc)


def from_unix_timestamp(value: Optional[int]) -> datetime:
    """Convert a gateway epoch timestamp (seconds) to an aware UTC datetime.

    Falls back to the current time when the gateway omitted the value.
    """
    if not value:
        return utc_now()
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
