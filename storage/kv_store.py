"""Persistent key/value store consumed by the queue and the read cache."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from sqlmodel import Session

from datetime_utils import utc_now
from models.kv_entry import KeyValueEntry
from storage.db import get_session


class KeyValueStore(ABC):
    """Async get/set/remove of text blobs by string key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        ...


class SQLiteKeyValueStore(KeyValueStore):
    """``KeyValueEntry`` rows in the local SQLite database.

    Session work runs in a worker thread.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    def _get(self, key: str) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            return row.value if row else None

    def _set(self, key: str, value: str) -> None:
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            if row is None:
                row = KeyValueEntry(key=key, value=value)
            else:
                row.value = value
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def _remove(self, key: str) -> None:
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            if row is not None:
                session.delete(row)
                session.commit()


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store, handy for tests and previews."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SQLiteKeyValueStore"]
