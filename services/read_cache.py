"""Stale-while-revalidate cache for remote collections.

``ReadCache.use_cached_collection`` hands back a :class:`CachedCollection`
whose ``state`` is available synchronously: the last known value when there
is one, ``initial_data`` otherwise. Stale or missing entries are refreshed in
the background and every open collection for the key is updated when the
fetch settles. A failed refresh never discards the value already shown.
"""
from __future__ import annotations

import asyncio
import copy
import json
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.log import get_logger
from core.settings import READ_CACHE, ReadCacheSettings
from datetime_utils import utc_now
from models.cache_entry import CacheEntry
from storage.kv_store import KeyValueStore


SOURCE_STATIC = "static"
SOURCE_CACHE = "cache"
SOURCE_NETWORK = "network"

Fetcher = Callable[[], Awaitable[Any]]
StateListener = Callable[["CollectionState"], None]
# realtime(on_update, on_error) -> unsubscribe
Realtime = Callable[[Callable[[Any], None], Callable[[BaseException], None]], Callable[[], None]]

logger = get_logger("read_cache")


def cache_key(domain: str, owner_id: str, filters: Optional[Mapping[str, Any]] = None) -> str:
    """``<domain>:<owner_id>:<filter signature>`` with filters in a stable order."""

    if not filters:
        signature = "all"
    else:
        signature = ",".join(f"{name}={filters[name]}" for name in sorted(filters))
    return f"{domain}:{owner_id}:{signature}"


@dataclass(frozen=True)
class CollectionState:
    data: Any
    source: str
    is_loading: bool
    error: Optional[BaseException] = None

    @property
    def has_cached_data(self) -> bool:
        """False while only ``initial_data`` is shown (first load)."""

        return self.source != SOURCE_STATIC


class CachedCollection:
    def __init__(
        self,
        cache: "ReadCache",
        key: str,
        fetcher: Fetcher,
        ttl: float,
        state: CollectionState,
        realtime: Optional[Realtime] = None,
    ) -> None:
        self.cache = cache
        self.key = key
        self.ttl = ttl
        self._fetcher = fetcher
        self._realtime = realtime
        self._realtime_unsubscribe: Optional[Callable[[], None]] = None
        self._listeners: List[StateListener] = []
        self._closed = False
        self.state = state

    @property
    def data(self) -> Any:
        return self.state.data

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def mutate(self) -> Optional[asyncio.Task]:
        """Refresh now regardless of freshness; the current value stays visible."""

        if self._closed:
            return None
        return self.cache._start_refresh(self.key, self._fetcher, self.ttl, force=True)

    async def wait(self) -> None:
        await self.cache.wait_key(self.key)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._realtime_unsubscribe is not None:
            self._realtime_unsubscribe()
            self._realtime_unsubscribe = None
        self._listeners.clear()
        self.cache._detach(self)

    def _open_realtime(self) -> None:
        if self._realtime is None:
            return

        def _on_update(value: Any) -> None:
            if not self._closed:
                self.cache._schedule(self.cache._accept_value(self.key, value, self.ttl))

        def _on_error(exc: BaseException) -> None:
            if not self._closed:
                logger.warning("Realtime subscription for %s failed: %s", self.key, exc)
                self._apply(replace(self.state, is_loading=False, error=exc))

        self._realtime_unsubscribe = self._realtime(_on_update, _on_error)

    def _apply(self, state: CollectionState) -> None:
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in collection listener for %s", self.key)


class ReadCache:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        settings: ReadCacheSettings = READ_CACHE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._handles: Dict[str, List[CachedCollection]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._tasks: set = set()

    # ------------------------------------------------------------------
    # Public API
    def use_cached_collection(
        self,
        key: str,
        fetcher: Fetcher,
        initial_data: Any = None,
        ttl: Optional[float] = None,
        realtime: Optional[Realtime] = None,
    ) -> CachedCollection:
        ttl = self.settings.default_ttl_sec if ttl is None else ttl
        entry = self._entries.get(key)
        if entry is None:
            state = CollectionState(
                data=copy.deepcopy(initial_data), source=SOURCE_STATIC, is_loading=True
            )
        else:
            self._entries.move_to_end(key)
            stale = not entry.is_fresh(self._clock(), ttl)
            in_flight = key in self._inflight
            state = CollectionState(
                data=copy.deepcopy(entry.value),
                source=SOURCE_CACHE,
                is_loading=(stale and realtime is None) or in_flight,
            )

        handle = CachedCollection(self, key, fetcher, ttl, state, realtime)
        self._handles.setdefault(key, []).append(handle)

        if realtime is not None:
            if entry is None:
                self._schedule(self._restore(key, ttl))
            handle._open_realtime()
        elif entry is None:
            self._start_refresh(key, fetcher, ttl, restore=True)
        elif state.is_loading:
            self._start_refresh(key, fetcher, ttl)
        return handle

    def peek(self, key: str) -> Optional[CacheEntry[Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return replace(entry, value=copy.deepcopy(entry.value))

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        try:
            await self.store.remove(key)
        except Exception:
            logger.exception("Error removing cache entry %s", key)

    async def wait_key(self, key: str) -> None:
        task = self._inflight.get(key)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for handles in list(self._handles.values()):
            for handle in list(handles):
                handle.close()

    # ------------------------------------------------------------------
    # Refresh machinery
    def _start_refresh(
        self,
        key: str,
        fetcher: Fetcher,
        ttl: float,
        *,
        force: bool = False,
        restore: bool = False,
    ) -> asyncio.Task:
        running = self._inflight.get(key)
        if running is not None and not running.done():
            return running
        if force:
            self._broadcast_loading(key)
        task = self._schedule(self._refresh(key, fetcher, ttl, restore))
        self._inflight[key] = task
        task.add_done_callback(lambda done, k=key: self._clear_inflight(k, done))
        return task

    async def _refresh(self, key: str, fetcher: Fetcher, ttl: float, restore: bool) -> None:
        if restore:
            await self._restore(key, ttl)
        try:
            value = await fetcher()
        except Exception as exc:
            logger.warning("Fetch for %s failed, keeping cached value: %s", key, exc)
            for handle in list(self._handles.get(key, [])):
                handle._apply(replace(handle.state, is_loading=False, error=exc))
            return
        await self._accept_value(key, value, ttl)

    async def _restore(self, key: str, ttl: float) -> None:
        """Load a persisted entry for ``key`` if memory has none yet."""

        if key in self._entries:
            return
        try:
            raw = await self.store.get(key)
        except Exception:
            logger.exception("Error reading cache entry %s", key)
            return
        if not raw:
            return
        try:
            blob = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable cache entry %s", key)
            return
        entry = CacheEntry.from_blob(key, blob, version=self.settings.payload_version, ttl=ttl)
        if entry is None or key in self._entries:
            return
        self._put(entry)
        for handle in list(self._handles.get(key, [])):
            if handle.state.source == SOURCE_STATIC:
                handle._apply(replace(handle.state, data=copy.deepcopy(entry.value), source=SOURCE_CACHE))
        logger.debug("Restored cache entry %s", key)

    async def _accept_value(self, key: str, value: Any, ttl: float) -> None:
        entry = CacheEntry(key=key, value=copy.deepcopy(value), cached_at=self._clock(), ttl=ttl)
        evicted = self._put(entry)
        for handle in list(self._handles.get(key, [])):
            handle._apply(
                CollectionState(
                    data=copy.deepcopy(entry.value),
                    source=SOURCE_NETWORK,
                    is_loading=False,
                    error=None,
                )
            )
        try:
            blob = json.dumps(entry.to_blob(self.settings.payload_version), ensure_ascii=False, default=str)
            await self.store.set(key, blob)
            for old_key in evicted:
                await self.store.remove(old_key)
        except Exception:
            logger.exception("Error persisting cache entry %s", key)

    def _put(self, entry: CacheEntry[Any]) -> List[str]:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        evicted: List[str] = []
        while len(self._entries) > self.settings.max_entries:
            old_key, _ = self._entries.popitem(last=False)
            evicted.append(old_key)
        if evicted:
            logger.info("Evicted %s cache entries", len(evicted))
        return evicted

    def _broadcast_loading(self, key: str) -> None:
        for handle in list(self._handles.get(key, [])):
            handle._apply(replace(handle.state, is_loading=True))

    def _schedule(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _clear_inflight(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _detach(self, handle: CachedCollection) -> None:
        handles = self._handles.get(handle.key)
        if handles and handle in handles:
            handles.remove(handle)
            if not handles:
                del self._handles[handle.key]


__all__ = [
    "CachedCollection",
    "CollectionState",
    "ReadCache",
    "SOURCE_CACHE",
    "SOURCE_NETWORK",
    "SOURCE_STATIC",
    "cache_key",
]
