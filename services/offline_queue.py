"""Durable queue of mutations made while the device may be offline.

Items are persisted to the key/value store on every change and drained in
enqueue order whenever the device is online: on enqueue, when connectivity
comes back, when the host app returns to the foreground, or on request.
"""
from __future__ import annotations

import asyncio
import copy
import json
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from core.log import get_logger
from core.settings import OFFLINE_QUEUE, OfflineQueueSettings
from datetime_utils import epoch_millis, utc_now
from models.network import NetworkSnapshot
from models.queue_item import (
    DONE,
    FAILED,
    IN_FLIGHT,
    PENDING,
    VALID_KINDS,
    Operation,
    QueueItem,
    QueueStatus,
)
from services.connectivity import ConnectivityMonitor
from services.errors import OperationUnavailableError, QueueError, TerminalOperationError
from services.operation_registry import OperationRegistry
from services.retry import RetryPolicy, with_retry
from storage.kv_store import KeyValueStore


SyncCallback = Callable[[bool], None]
ChangeCallback = Callable[[QueueStatus], None]

logger = get_logger("offline_queue")


def _is_transient(exc: BaseException) -> bool:
    return not isinstance(exc, TerminalOperationError)


class OfflineQueue:
    def __init__(
        self,
        store: KeyValueStore,
        monitor: ConnectivityMonitor,
        registry: Optional[OperationRegistry] = None,
        *,
        settings: OfflineQueueSettings = OFFLINE_QUEUE,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.registry = registry or OperationRegistry()
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._items: List[QueueItem] = []
        self._is_processing = False
        self._last_online = True
        self._started = False
        self._start_lock = asyncio.Lock()
        self._drain_requested = False
        self._monitor_unsubscribe: Optional[Callable[[], None]] = None
        self._sync_callbacks: List[SyncCallback] = []
        self._change_callbacks: List[ChangeCallback] = []
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Rehydrate from storage, then start listening for connectivity.

        Mutating calls start the queue themselves, so nothing is written to
        the store before the persisted items are loaded.
        """

        async with self._start_lock:
            if self._started:
                return
            await self._load()
            self._started = True
            self._last_online = self.is_online
            self._monitor_unsubscribe = self.monitor.subscribe(self._on_network_change)
        self._emit_change()
        if self.is_online:
            self._schedule_drain()

    async def close(self) -> None:
        if self._monitor_unsubscribe is not None:
            self._monitor_unsubscribe()
            self._monitor_unsubscribe = None
        await self.wait_idle()
        self._sync_callbacks.clear()
        self._change_callbacks.clear()
        self._started = False
        logger.info("Offline queue closed")

    async def wait_idle(self) -> None:
        """Wait for drain passes scheduled in the background to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Public API
    @property
    def is_online(self) -> bool:
        return self.monitor.current_status().is_connected

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    async def enqueue(
        self,
        kind: str,
        operation: Optional[Operation],
        payload: Dict[str, Any],
        max_attempts: Optional[int] = None,
    ) -> str:
        if kind not in VALID_KINDS:
            raise ValueError(f"Unsupported kind: {kind}")
        if operation is None:
            operation = self.registry.build(kind, payload)
            if operation is None:
                raise ValueError(f"No operation given and no handler registered for {kind}")

        await self.start()
        previous = list(self._items)
        self._enforce_capacity()
        item = QueueItem(
            id=self._new_id(),
            kind=kind,
            payload=payload,
            operation=operation,
            enqueued_at=self._clock(),
            max_attempts=max_attempts or self.settings.max_attempts,
        )
        self._items.append(item)
        try:
            await self._persist()
        except Exception as exc:
            # not recorded, so it must not run either
            self._items = previous
            logger.error("Error persisting enqueued item %s: %s", item.id, exc)
            raise QueueError(f"Could not persist {kind} operation") from exc
        finally:
            self._emit_change()

        logger.info("Enqueued item %s (%s)", item.id, kind)
        if self.is_online:
            self._schedule_drain()
        return item.id

    async def process_queue(self) -> None:
        # Both checks run before the first await so overlapping calls cannot
        # pick up the same items.
        if self._is_processing:
            logger.info("Queue processing already in progress, will run again after it")
            self._drain_requested = True
            return
        if not self.is_online:
            logger.info("Offline, deferring queue processing")
            return

        self._is_processing = True
        self._emit_change()
        successes = 0
        failures = 0
        try:
            pending = [item for item in self._items if item.status == PENDING]
            if not pending:
                logger.debug("No pending items to process")
                return

            logger.info("Processing %s pending items", len(pending))
            for item in pending:
                if item.status != PENDING:
                    continue
                if await self._run_item(item):
                    successes += 1
                elif item.status == FAILED:
                    failures += 1
                self._emit_change()

            await self._persist()
            logger.info(
                "Queue processing complete: success=%s failed=%s remaining=%s",
                successes,
                failures,
                sum(1 for item in self._items if item.status == PENDING),
            )
            self._notify_sync_complete(failures == 0)
        except Exception:
            logger.exception("Error processing queue")
        finally:
            self._is_processing = False
            self._emit_change()
            if self._drain_requested:
                self._drain_requested = False
                if self.is_online:
                    self._schedule_drain()

    def get_queue_status(self) -> QueueStatus:
        counts = {PENDING: 0, IN_FLIGHT: 0, DONE: 0, FAILED: 0}
        for item in self._items:
            counts[item.status] = counts.get(item.status, 0) + 1
        return QueueStatus(
            total=len(self._items),
            pending=counts[PENDING],
            in_flight=counts[IN_FLIGHT],
            done=counts[DONE],
            failed=counts[FAILED],
            is_online=self.is_online,
            is_processing=self._is_processing,
        )

    def get_queue_items(self) -> List[QueueItem]:
        return [replace(item, payload=copy.deepcopy(item.payload)) for item in self._items]

    def on_sync_complete(self, callback: SyncCallback) -> Callable[[], None]:
        self._sync_callbacks.append(callback)
        return lambda: self._discard(self._sync_callbacks, callback)

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        self._change_callbacks.append(callback)
        return lambda: self._discard(self._change_callbacks, callback)

    async def retry_failed(self) -> int:
        await self.start()
        failed = [item for item in self._items if item.status == FAILED]
        for item in failed:
            item.status = PENDING
            item.attempts = 0
            item.error = None
        await self._persist()
        self._emit_change()
        logger.info("Reset %s failed items for retry", len(failed))
        if self.is_online:
            self._schedule_drain()
        return len(failed)

    async def clear_completed(self) -> None:
        await self.start()
        self._items = [item for item in self._items if item.status != DONE]
        await self._persist()
        self._emit_change()
        logger.info("Cleared completed items")

    async def clear_all(self) -> None:
        await self.start()
        self._items = []
        await self._persist()
        self._emit_change()
        logger.info("Cleared all items")

    def handle_foreground(self) -> None:
        if self.is_online:
            logger.info("App came to foreground, processing queue")
            self._schedule_drain()

    # ------------------------------------------------------------------
    # Draining
    async def _run_item(self, item: QueueItem) -> bool:
        if item.operation is None:
            try:
                item.operation = self.registry.require(item.kind, item.payload)
            except OperationUnavailableError as exc:
                item.status = FAILED
                item.error = str(exc)
                logger.warning("Item %s (%s) has no operation; marked failed", item.id, item.kind)
                return False

        item.status = IN_FLIGHT
        self._emit_change()
        policy = RetryPolicy(
            max_attempts=max(1, item.max_attempts - item.attempts),
            initial_delay=self.settings.initial_backoff_sec,
            backoff_multiplier=self.settings.backoff_multiplier,
        )
        try:
            await with_retry(
                item.operation,
                policy,
                should_retry=_is_transient,
                sleep=self._sleep,
                context={"queue_item_id": item.id, "kind": item.kind},
            )
        except Exception as exc:
            item.attempts += 1
            if isinstance(exc, TerminalOperationError) or item.attempts >= item.max_attempts:
                item.status = FAILED
                item.error = str(exc) or exc.__class__.__name__
                logger.error("Item %s failed after %s attempts: %s", item.id, item.attempts, item.error)
            else:
                item.status = PENDING
                logger.info("Item %s will be retried, attempts=%s", item.id, item.attempts)
            return False

        item.status = DONE
        logger.info("Successfully processed item %s", item.id)
        return True

    def _schedule_drain(self) -> None:
        task = asyncio.get_running_loop().create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_network_change(self, snapshot: NetworkSnapshot) -> None:
        was_online = self._last_online
        self._last_online = snapshot.is_connected
        self._emit_change()
        if not was_online and snapshot.is_connected:
            logger.info("Back online, processing queue")
            self._schedule_drain()

    # ------------------------------------------------------------------
    # Persistence
    async def _load(self) -> None:
        try:
            raw = await self.store.get(self.settings.storage_key)
        except Exception:
            logger.exception("Error loading queue")
            return
        if not raw:
            return
        try:
            records = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Stored queue is not valid JSON, starting empty: %s", exc)
            return
        if not isinstance(records, list):
            return

        items: List[QueueItem] = []
        for record in records:
            try:
                item = QueueItem.from_record(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping unreadable queue record: %s", exc)
                continue
            if item.status == IN_FLIGHT:
                # interrupted mid-pass
                item.status = PENDING
            item.operation = self.registry.build(item.kind, item.payload)
            items.append(item)
        self._items = items
        logger.info("Loaded queue with %s items", len(items))

    async def _persist(self) -> None:
        self._prune_done()
        payload = json.dumps([item.to_record() for item in self._items], ensure_ascii=False)
        await self.store.set(self.settings.storage_key, payload)
        logger.debug("Persisted queue with %s items", len(self._items))

    def _prune_done(self) -> None:
        cutoff = self._clock() - timedelta(hours=self.settings.done_retention_hours)
        self._items = [
            item for item in self._items if not (item.status == DONE and item.enqueued_at < cutoff)
        ]

    def _enforce_capacity(self) -> None:
        limit = self.settings.max_queue_size
        if len(self._items) < limit:
            return
        self._items = [item for item in self._items if item.status in (PENDING, IN_FLIGHT)]
        if len(self._items) >= limit:
            excess = len(self._items) - limit + 1
            logger.warning("Queue full, dropping %s oldest items", excess)
            self._items = self._items[excess:]

    # ------------------------------------------------------------------
    # Notifications
    def _notify_sync_complete(self, success: bool) -> None:
        for callback in list(self._sync_callbacks):
            try:
                callback(success)
            except Exception:
                logger.exception("Error in sync callback")

    def _emit_change(self) -> None:
        if not self._change_callbacks:
            return
        status = self.get_queue_status()
        for callback in list(self._change_callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("Error in queue change callback")

    def _new_id(self) -> str:
        return f"queue_{epoch_millis(self._clock())}_{uuid.uuid4().hex[:9]}"

    @staticmethod
    def _discard(callbacks: list, callback) -> None:
        if callback in callbacks:
            callbacks.remove(callback)


__all__ = ["OfflineQueue"]
