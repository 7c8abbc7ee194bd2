# wavebooks/utils/clock.py
from __future__ import annotations

from datetime import datetime, timezone


# =========================================================
# Time helpers (STANDARD)
# =========================================================
# DB columns are "timestamp without time zone": store naive UTC everywhere.
def utcnow_aware() -> datetime:
    """Timezone-aware UTC 'now'."""
    return datetime.now(timezone.utc)


def utcnow_naive() -> datetime:
    """Naive UTC now (preferred for DB timestamp without timezone)."""
    return utcnow_aware().replace(tzinfo=None)


def as_naive_utc(dt: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC; leave naive as-is."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> datetime | None:
    """
    Parse gateway timestamps ("2025-03-01T10:15:00Z", "+00:00" offsets, or
    already-parsed datetimes) into naive UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
