"""Time source for session and token bookkeeping."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with the ISO strings stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp, returning None for empty or malformed values."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
