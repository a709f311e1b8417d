from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_iso_utc(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ensure_utc(dt)


def to_iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601 in UTC, keeping microseconds."""

    if dt is None:
        return None
    value = ensure_utc(dt)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def epoch_millis(dt: datetime) -> int:
    value = ensure_utc(dt) or dt
    return int(value.timestamp() * 1000)


__all__ = [
    "UTC",
    "ensure_utc",
    "epoch_millis",
    "parse_iso_utc",
    "to_iso_utc",
    "utc_now",
]
