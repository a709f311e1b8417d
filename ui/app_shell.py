# ui/app_shell.py
from __future__ import annotations

from typing import Optional

import flet as ft

from core.log import get_logger
from core.settings import UI
from services.connectivity import NetworkFacility, create_connectivity_monitor
from services.firestore_client import FirestoreClient
from services.medications import MedicationReadService, MedicationWriteService
from services.offline_queue import OfflineQueue
from services.operation_registry import OperationRegistry
from services.read_cache import ReadCache
from services.sync_status import SyncStatusSurface
from storage.kv_store import KeyValueStore, SQLiteKeyValueStore

from .offline_banner import OfflineBanner


logger = get_logger("app_shell")


class AppShell:
    """Owns the sync services for one page session.

    Screens get ``shell.writes`` / ``shell.reads`` and render into
    ``shell.content``; nothing here is module-level state.
    """

    def __init__(
        self,
        page: ft.Page,
        *,
        store: Optional[KeyValueStore] = None,
        facility: Optional[NetworkFacility] = None,
        auth=None,
    ):
        self.page = page
        self.page.title = UI.app_title
        self.page.horizontal_alignment = ft.CrossAxisAlignment.STRETCH
        self.page.vertical_alignment = ft.MainAxisAlignment.START

        self.store = store or SQLiteKeyValueStore()
        self.monitor = create_connectivity_monitor(facility)
        self.registry = OperationRegistry()
        self.queue = OfflineQueue(self.store, self.monitor, self.registry)
        self.cache = ReadCache(self.store)
        self.client = FirestoreClient(auth)
        # registers the queue handlers, so it must exist before queue.start()
        self.writes = MedicationWriteService(self.client, self.queue, self.registry)
        self.reads = MedicationReadService(self.client, self.cache)
        self.status = SyncStatusSurface(self.queue, self.monitor)
        self.banner = OfflineBanner(self.status)

        self.content = ft.Container(expand=True)
        self._mounted = False

    # ---------- монтаж ----------
    async def mount(self) -> None:
        await self.monitor.start()
        await self.queue.start()
        self.status.start()

        self.page.controls.clear()
        self.page.add(ft.Column([self.banner.attach(), self.content], expand=True, spacing=0))
        self.page.on_app_lifecycle_state_change = self._on_lifecycle_change
        self.page.update()
        self._mounted = True
        logger.info("App shell mounted")

    async def close(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        self.banner.detach()
        self.status.stop()
        self.cache.close()
        await self.queue.close()
        self.monitor.stop()
        logger.info("App shell closed")

    async def _on_lifecycle_change(self, e: ft.AppLifecycleStateChangeEvent) -> None:
        if e.state == ft.AppLifecycleState.RESUME:
            self.queue.handle_foreground()
