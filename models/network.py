"""Connectivity snapshot reported by the monitor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class NetworkSnapshot:
    is_connected: bool
    is_internet_reachable: Optional[bool] = None
    type: str = "unknown"

    @classmethod
    def assumed_online(cls) -> "NetworkSnapshot":
        return cls(is_connected=True, is_internet_reachable=None, type="unknown")


__all__ = ["NetworkSnapshot"]
