"""
Wall-clock access for time-based business rules.

Cancellation windows, past-date checks and status updates all read the time
through ``utcnow()`` so tests can pin it.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
