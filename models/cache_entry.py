"""Cached snapshots of remote collections."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generic, Optional, TypeVar

from datetime_utils import parse_iso_utc, to_iso_utc


T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    key: str
    value: T
    cached_at: datetime
    ttl: float

    def age(self, now: datetime) -> float:
        return (now - self.cached_at).total_seconds()

    def is_fresh(self, now: datetime, ttl: Optional[float] = None) -> bool:
        """Fresh within ``ttl`` seconds, the entry's own window by default."""

        return self.age(now) < (self.ttl if ttl is None else ttl)

    def to_blob(self, version: int) -> Dict[str, Any]:
        return {"version": version, "ts": to_iso_utc(self.cached_at), "data": self.value}

    @classmethod
    def from_blob(
        cls, key: str, blob: Any, *, version: int, ttl: float
    ) -> Optional["CacheEntry[Any]"]:
        if not isinstance(blob, dict) or blob.get("version") != version:
            return None
        cached_at = parse_iso_utc(blob.get("ts"))
        if cached_at is None or "data" not in blob:
            return None
        return cls(key=key, value=blob["data"], cached_at=cached_at, ttl=ttl)


__all__ = ["CacheEntry"]
