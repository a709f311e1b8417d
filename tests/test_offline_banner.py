import asyncio
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import UI
from services.sync_status import SyncStatus
from ui.offline_banner import OfflineBanner, describe_status


def status(**overrides):
    values = dict(
        is_online=True,
        is_internet_reachable=True,
        transport="wifi",
        pending=0,
        in_flight=0,
        failed=0,
        is_processing=False,
    )
    values.update(overrides)
    return SyncStatus(**values)


class FakeSurface:
    def __init__(self, current):
        self._current = current
        self.listeners = []

    def current(self):
        return self._current

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def push(self, new_status):
        self._current = new_status
        for listener in list(self.listeners):
            listener(new_status)


def test_hidden_when_nothing_to_report():
    assert describe_status(status()) is None


def test_offline_message_wins_over_counts():
    content = describe_status(status(is_online=False, pending=3))
    assert content.icon == "cloud_off"
    assert content.text == "Sin conexión - Los cambios se guardarán localmente"
    assert content.color == UI.banner.offline_color


def test_counts_use_singular_and_plural():
    assert describe_status(status(in_flight=1)).text == "Sincronizando 1 cambio..."
    assert describe_status(status(in_flight=2, pending=4)).text == "Sincronizando 2 cambios..."
    assert describe_status(status(pending=1)).text == "1 cambio pendiente"
    assert describe_status(status(pending=3)).text == "3 cambios pendientes"
    failed = describe_status(status(failed=2))
    assert failed.text == "2 cambios sin sincronizar"
    assert failed.icon == "error_outline"


def test_success_flash_takes_priority():
    content = describe_status(status(is_online=False), show_success=True)
    assert content.text == "Cambios sincronizados"
    assert content.color == UI.banner.success_color


def test_banner_tracks_surface_updates():
    surface = FakeSurface(status(is_online=False))
    banner = OfflineBanner(surface)

    async def scenario():
        control = banner.attach()
        offline_text = banner._text.value
        surface.push(status(pending=2))
        pending_text = banner._text.value
        surface.push(status(last_sync_success=True, completed_syncs=1))
        flashed = (control.visible, banner._text.value)
        banner.detach()
        return offline_text, pending_text, flashed

    offline_text, pending_text, flashed = asyncio.run(scenario())
    assert offline_text.startswith("Sin conexión")
    assert pending_text == "2 cambios pendientes"
    assert flashed == (True, "Cambios sincronizados")
    assert surface.listeners == []


def test_failed_sync_does_not_flash_success():
    surface = FakeSurface(status())
    banner = OfflineBanner(surface)

    async def scenario():
        control = banner.attach()
        hidden = control.visible
        surface.push(status(failed=1, last_sync_success=False, completed_syncs=1))
        banner.detach()
        return hidden, banner._text.value

    hidden, text = asyncio.run(scenario())
    assert hidden is False
    assert text == "1 cambio sin sincronizar"
