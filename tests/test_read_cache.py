import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import ReadCacheSettings
from datetime_utils import UTC, to_iso_utc
from services.read_cache import SOURCE_CACHE, SOURCE_NETWORK, SOURCE_STATIC, ReadCache, cache_key
from storage.kv_store import MemoryKeyValueStore


class Clock:
    def __init__(self):
        self.now = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class Fetcher:
    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, Exception):
            raise value
        return value


def make_cache(store=None, **settings):
    clock = Clock()
    cache = ReadCache(store or MemoryKeyValueStore(), settings=ReadCacheSettings(**settings), clock=clock)
    return cache, clock


def test_cache_key_orders_filters():
    assert cache_key("medications", "p1") == "medications:p1:all"
    assert cache_key("events", "p1", {"type": "created", "limit": 20}) == "events:p1:limit=20,type=created"
    assert cache_key("events", "p1", {"limit": 20, "type": "created"}) == cache_key(
        "events", "p1", {"type": "created", "limit": 20}
    )


def test_first_use_shows_initial_data_then_network_value():
    fetcher = Fetcher([{"id": "m1"}])
    seen = []

    async def scenario():
        cache, _ = make_cache()
        handle = cache.use_cached_collection("medications:p1:all", fetcher, initial_data=[])
        first = handle.state
        handle.subscribe(seen.append)
        await handle.wait()
        return first, handle.state

    first, final = asyncio.run(scenario())
    assert first.data == []
    assert first.source == SOURCE_STATIC
    assert first.is_loading is True
    assert first.has_cached_data is False
    assert final.data == [{"id": "m1"}]
    assert final.source == SOURCE_NETWORK
    assert final.is_loading is False
    assert final.has_cached_data is True
    assert seen[-1] == final


def test_fresh_entry_is_served_without_fetching_and_stale_entry_revalidates():
    fetcher = Fetcher(["v1"], ["v2"])

    async def scenario():
        cache, clock = make_cache()
        first = cache.use_cached_collection("k", fetcher, ttl=5)
        await first.wait()

        clock.advance(1)
        second = cache.use_cached_collection("k", fetcher, ttl=5)
        fresh_state = second.state
        await cache.wait_idle()
        calls_while_fresh = fetcher.calls

        clock.advance(6)
        third = cache.use_cached_collection("k", fetcher, ttl=5)
        stale_state = third.state
        await third.wait()
        return fresh_state, calls_while_fresh, stale_state, third.state, first.state

    fresh, calls_while_fresh, stale, revalidated, first_after = asyncio.run(scenario())
    assert calls_while_fresh == 1
    assert (fresh.data, fresh.source, fresh.is_loading) == (["v1"], SOURCE_CACHE, False)
    assert (stale.data, stale.source, stale.is_loading) == (["v1"], SOURCE_CACHE, True)
    assert revalidated.data == ["v2"]
    assert revalidated.source == SOURCE_NETWORK
    # other handles for the key follow the refresh
    assert first_after.data == ["v2"]


def test_two_requests_share_one_fetch():
    fetcher = Fetcher([1, 2])

    async def scenario():
        cache, _ = make_cache()
        a = cache.use_cached_collection("k", fetcher, initial_data=[])
        b = cache.use_cached_collection("k", fetcher, initial_data=[])
        await cache.wait_idle()
        return a.state, b.state

    a, b = asyncio.run(scenario())
    assert fetcher.calls == 1
    assert a.data == b.data == [1, 2]


def test_failed_refresh_keeps_value_and_sets_error():
    boom = ConnectionError("offline")
    fetcher = Fetcher(["cached"], boom)

    async def scenario():
        cache, clock = make_cache()
        handle = cache.use_cached_collection("k", fetcher, ttl=5)
        await handle.wait()
        clock.advance(10)
        again = cache.use_cached_collection("k", fetcher, ttl=5)
        await again.wait()
        return again.state, handle.state

    state, original = asyncio.run(scenario())
    assert state.data == ["cached"]
    assert state.error is boom
    assert state.is_loading is False
    assert original.error is boom
    assert original.data == ["cached"]


def test_failed_first_load_keeps_initial_data():
    boom = RuntimeError("server error")

    async def scenario():
        cache, _ = make_cache()
        handle = cache.use_cached_collection("k", Fetcher(boom), initial_data=["placeholder"])
        await handle.wait()
        return handle.state, cache.peek("k")

    state, entry = asyncio.run(scenario())
    assert state.data == ["placeholder"]
    assert state.source == SOURCE_STATIC
    assert state.error is boom
    assert state.is_loading is False
    assert entry is None


def test_mutate_refreshes_while_showing_current_value():
    fetcher = Fetcher(["old"], ["new"])
    loading_seen = []

    async def scenario():
        cache, _ = make_cache()
        handle = cache.use_cached_collection("k", fetcher)
        await handle.wait()
        handle.subscribe(lambda state: loading_seen.append((state.data, state.is_loading)))
        task = handle.mutate()
        during = handle.state
        await task
        return during, handle.state

    during, after = asyncio.run(scenario())
    assert (during.data, during.is_loading) == (["old"], True)
    assert after.data == ["new"]
    assert loading_seen[0] == (["old"], True)
    assert fetcher.calls == 2


def test_readers_get_copies():
    fetcher = Fetcher([{"id": "m1", "name": "Ibuprofeno"}])

    async def scenario():
        cache, _ = make_cache()
        handle = cache.use_cached_collection("k", fetcher)
        await handle.wait()
        handle.data[0]["name"] = "changed"
        return cache.peek("k").value, cache.use_cached_collection("k", fetcher).data

    stored, reread = asyncio.run(scenario())
    assert stored[0]["name"] == "Ibuprofeno"
    assert reread[0]["name"] == "Ibuprofeno"


def test_entry_is_restored_from_store_before_fetch_settles():
    blob = {"version": 1, "ts": to_iso_utc(datetime(2025, 3, 1, 8, 59, tzinfo=UTC)), "data": ["persisted"]}
    store = MemoryKeyValueStore({"k": json.dumps(blob)})
    observed = []

    async def scenario():
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return ["fresh"]

        cache, _ = make_cache(store)
        handle = cache.use_cached_collection("k", slow_fetch, initial_data=[])
        handle.subscribe(lambda state: observed.append((state.data, state.source)))
        for _ in range(5):
            await asyncio.sleep(0)
        restored = handle.state
        release.set()
        await handle.wait()
        return restored, handle.state

    restored, final = asyncio.run(scenario())
    assert restored.data == ["persisted"]
    assert restored.source == SOURCE_CACHE
    assert final.data == ["fresh"]
    assert observed[0] == (["persisted"], SOURCE_CACHE)
    assert json.loads(store.data["k"])["data"] == ["fresh"]


def test_persisted_entry_with_other_version_is_ignored():
    blob = {"version": 99, "ts": "2025-03-01T08:00:00Z", "data": ["legacy"]}
    store = MemoryKeyValueStore({"k": json.dumps(blob)})

    async def scenario():
        cache, _ = make_cache(store)
        handle = cache.use_cached_collection("k", Fetcher(RuntimeError("down")), initial_data=[])
        await handle.wait()
        return handle.state

    state = asyncio.run(scenario())
    assert state.data == []
    assert state.source == SOURCE_STATIC


def test_least_recently_used_entries_are_evicted():
    store = MemoryKeyValueStore()

    async def scenario():
        cache, _ = make_cache(store, max_entries=2)
        for key in ("a", "b"):
            await cache.use_cached_collection(key, Fetcher([key])).wait()
        cache.use_cached_collection("a", Fetcher(["unused"]))
        await cache.use_cached_collection("c", Fetcher(["c"])).wait()
        await cache.wait_idle()
        return cache

    cache = asyncio.run(scenario())
    assert cache.peek("b") is None
    assert cache.peek("a").value == ["a"]
    assert cache.peek("c").value == ["c"]
    assert sorted(store.data) == ["a", "c"]


def test_realtime_updates_replace_polling():
    pushes = {}
    fetcher = Fetcher(["never"])

    def realtime(on_update, on_error):
        pushes["update"] = on_update
        pushes["error"] = on_error
        return lambda: pushes.setdefault("closed", True)

    async def scenario():
        cache, _ = make_cache()
        handle = cache.use_cached_collection("k", fetcher, initial_data=[], realtime=realtime)
        pushes["update"](["live"])
        await cache.wait_idle()
        live = handle.state
        pushes["error"](ConnectionError("stream closed"))
        errored = handle.state
        handle.close()
        return live, errored

    live, errored = asyncio.run(scenario())
    assert fetcher.calls == 0
    assert live.data == ["live"]
    assert live.source == SOURCE_NETWORK
    assert errored.data == ["live"]
    assert isinstance(errored.error, ConnectionError)
    assert pushes["closed"] is True


def test_invalidate_removes_memory_and_persisted_entry():
    store = MemoryKeyValueStore()

    async def scenario():
        cache, _ = make_cache(store)
        await cache.use_cached_collection("k", Fetcher(["v"])).wait()
        await cache.invalidate("k")
        return cache.peek("k")

    assert asyncio.run(scenario()) is None
    assert "k" not in store.data


def test_freshness_uses_the_callers_ttl():
    fetcher = Fetcher(["v1"], ["v2"])

    async def scenario():
        cache, clock = make_cache()
        await cache.use_cached_collection("k", fetcher, ttl=1000).wait()
        clock.advance(10)
        long_window = cache.use_cached_collection("k", fetcher, ttl=1000).state
        short = cache.use_cached_collection("k", fetcher, ttl=5)
        short_window = short.state
        await short.wait()
        return long_window, short_window, short.state

    long_window, short_window, refreshed = asyncio.run(scenario())
    assert long_window.is_loading is False
    assert (short_window.data, short_window.is_loading) == (["v1"], True)
    assert refreshed.data == ["v2"]
    assert fetcher.calls == 2
