"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone
from typing import Callable

# Injectable clock: components take one of these instead of calling utc_now()
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_millis(clock: Clock = utc_now) -> int:
    """Return the clock's current time as epoch milliseconds."""
    return int(clock().timestamp() * 1000)


def to_iso(value: datetime | None) -> str | None:
    """Serialize an aware datetime to ISO-8601 (None passes through)."""
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
