from datetime import UTC, datetime
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back without tzinfo; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
