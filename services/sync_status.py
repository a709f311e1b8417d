"""Connectivity and queue counts combined for display."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from core.log import get_logger
from models.network import NetworkSnapshot
from models.queue_item import QueueStatus
from services.connectivity import ConnectivityMonitor
from services.offline_queue import OfflineQueue


StatusListener = Callable[["SyncStatus"], None]

logger = get_logger("sync_status")


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool
    is_internet_reachable: Optional[bool]
    transport: str
    pending: int
    in_flight: int
    failed: int
    is_processing: bool
    last_sync_success: Optional[bool] = None
    completed_syncs: int = 0

    @property
    def has_outstanding_work(self) -> bool:
        return self.pending > 0 or self.in_flight > 0


class SyncStatusSurface:
    """Pushes a fresh :class:`SyncStatus` whenever its inputs change."""

    def __init__(self, queue: OfflineQueue, monitor: ConnectivityMonitor) -> None:
        self.queue = queue
        self.monitor = monitor
        self._listeners: List[StatusListener] = []
        self._last_sync_success: Optional[bool] = None
        self._completed_syncs = 0
        self._unsubscribers: List[Callable[[], None]] = []
        self._status = self._compute(queue.get_queue_status(), monitor.current_status())

    def start(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.queue.on_change(self._on_queue_change),
            self.queue.on_sync_complete(self._on_sync_complete),
            self.monitor.subscribe(self._on_network_change),
        ]
        self._publish(force=True)

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._listeners.clear()

    def current(self) -> SyncStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    def _on_queue_change(self, _status: QueueStatus) -> None:
        self._publish()

    def _on_sync_complete(self, success: bool) -> None:
        self._last_sync_success = success
        self._completed_syncs += 1
        self._publish()

    def _on_network_change(self, _snapshot: NetworkSnapshot) -> None:
        self._publish()

    def _publish(self, force: bool = False) -> None:
        status = self._compute(self.queue.get_queue_status(), self.monitor.current_status())
        if status == self._status and not force:
            return
        self._status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Error in sync status listener")

    def _compute(self, queue_status: QueueStatus, snapshot: NetworkSnapshot) -> SyncStatus:
        return SyncStatus(
            is_online=snapshot.is_connected,
            is_internet_reachable=snapshot.is_internet_reachable,
            transport=snapshot.type,
            pending=queue_status.pending,
            in_flight=queue_status.in_flight,
            failed=queue_status.failed,
            is_processing=queue_status.is_processing,
            last_sync_success=self._last_sync_success,
            completed_syncs=self._completed_syncs,
        )


__all__ = ["SyncStatus", "SyncStatusSurface"]
