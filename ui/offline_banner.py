from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import flet as ft

from core.settings import UI
from services.sync_status import SyncStatus, SyncStatusSurface


@dataclass(frozen=True)
class BannerContent:
    icon: str
    text: str
    color: str


def _plural(count: int, word: str) -> str:
    return word if count == 1 else f"{word}s"


def describe_status(status: SyncStatus, show_success: bool = False) -> Optional[BannerContent]:
    """Pick the banner line for ``status``; ``None`` hides the banner."""

    colors = UI.banner
    if show_success:
        return BannerContent("check_circle", "Cambios sincronizados", colors.success_color)
    if not status.is_online:
        return BannerContent(
            "cloud_off",
            "Sin conexión - Los cambios se guardarán localmente",
            colors.offline_color,
        )
    if status.in_flight > 0:
        n = status.in_flight
        return BannerContent("sync", f"Sincronizando {n} {_plural(n, 'cambio')}...", colors.syncing_color)
    if status.pending > 0:
        n = status.pending
        return BannerContent(
            "cloud_upload",
            f"{n} {_plural(n, 'cambio')} {_plural(n, 'pendiente')}",
            colors.syncing_color,
        )
    if status.failed > 0:
        n = status.failed
        return BannerContent(
            "error_outline",
            f"{n} {_plural(n, 'cambio')} sin sincronizar",
            colors.failed_color,
        )
    return None


class OfflineBanner:
    """Slim banner at the top of the page mirroring the sync status."""

    def __init__(self, surface: SyncStatusSurface):
        self.surface = surface
        self._icon = ft.Icon(name="cloud_off", color=UI.banner.text_color, size=18)
        self._text = ft.Text("", color=UI.banner.text_color, size=13)
        self.control = ft.Container(
            content=ft.Row([self._icon, self._text], alignment=ft.MainAxisAlignment.CENTER, spacing=8),
            padding=ft.padding.symmetric(vertical=6, horizontal=12),
            visible=False,
        )
        self._show_success = False
        self._seen_syncs = surface.current().completed_syncs
        self._hide_handle: Optional[asyncio.TimerHandle] = None
        self._unsubscribe = None

    def attach(self) -> ft.Control:
        self._unsubscribe = self.surface.subscribe(self._on_status)
        self._render(self.surface.current())
        return self.control

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._hide_handle:
            self._hide_handle.cancel()
            self._hide_handle = None

    def _on_status(self, status: SyncStatus) -> None:
        if status.completed_syncs != self._seen_syncs:
            self._seen_syncs = status.completed_syncs
            if status.last_sync_success:
                self._flash_success()
        self._render(status)

    def _flash_success(self) -> None:
        self._show_success = True
        if self._hide_handle:
            self._hide_handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._show_success = False
            return
        self._hide_handle = loop.call_later(UI.banner.success_visible_sec, self._end_success)

    def _end_success(self) -> None:
        self._show_success = False
        self._hide_handle = None
        self._render(self.surface.current())

    def _render(self, status: SyncStatus) -> None:
        content = describe_status(status, self._show_success)
        if content is None:
            self.control.visible = False
        else:
            self._icon.name = content.icon
            self._text.value = content.text
            self.control.bgcolor = content.color
            self.control.visible = True
        try:
            self.control.update()
        except Exception:
            # not mounted yet
            pass
