"""Connectivity monitoring with a fail-open fallback."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Protocol

from core.log import get_logger
from core.settings import CONNECTIVITY
from models.network import NetworkSnapshot


Listener = Callable[[NetworkSnapshot], None]
Unsubscribe = Callable[[], None]

logger = get_logger("connectivity")


class NetworkFacility(Protocol):
    """Platform source of connectivity information."""

    async def fetch(self) -> NetworkSnapshot:
        ...

    def add_listener(self, listener: Listener) -> Unsubscribe:
        ...


class ConnectivityMonitor(ABC):
    @abstractmethod
    def subscribe(self, callback: Listener) -> Unsubscribe:
        ...

    @abstractmethod
    def current_status(self) -> NetworkSnapshot:
        ...

    async def start(self) -> None:
        return None

    def stop(self) -> None:
        return None

    @property
    def is_online(self) -> bool:
        return self.current_status().is_connected


class FailOpenConnectivityMonitor(ConnectivityMonitor):
    """Used when no facility is available: always reports online."""

    def __init__(self) -> None:
        self._snapshot = NetworkSnapshot.assumed_online()

    def subscribe(self, callback: Listener) -> Unsubscribe:
        return lambda: None

    def current_status(self) -> NetworkSnapshot:
        return self._snapshot


class PlatformConnectivityMonitor(ConnectivityMonitor):
    def __init__(self, facility: NetworkFacility):
        self.facility = facility
        self._snapshot = NetworkSnapshot.assumed_online()
        self._listeners: List[Listener] = []
        self._facility_unsubscribe: Optional[Unsubscribe] = None

    async def start(self) -> None:
        if self._facility_unsubscribe is not None:
            return
        try:
            self._snapshot = await self.facility.fetch()
        except Exception as exc:
            logger.warning("Initial connectivity probe failed, assuming online: %s", exc)
            self._snapshot = NetworkSnapshot.assumed_online()
        logger.info(
            "Initial network status: connected=%s type=%s",
            self._snapshot.is_connected,
            self._snapshot.type,
        )
        self._facility_unsubscribe = self.facility.add_listener(self._on_facility_event)

    def stop(self) -> None:
        if self._facility_unsubscribe is not None:
            self._facility_unsubscribe()
            self._facility_unsubscribe = None
        self._listeners.clear()

    def subscribe(self, callback: Listener) -> Unsubscribe:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def current_status(self) -> NetworkSnapshot:
        return self._snapshot

    def _on_facility_event(self, snapshot: NetworkSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        logger.info(
            "Network status changed: connected=%s reachable=%s type=%s",
            snapshot.is_connected,
            snapshot.is_internet_reachable,
            snapshot.type,
        )
        if not previous.is_connected and snapshot.is_connected:
            logger.info("Back online")
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Connectivity listener failed")


class SocketProbeFacility:
    """Probe a TCP endpoint; emit a snapshot whenever the result changes."""

    def __init__(
        self,
        host: str = CONNECTIVITY.probe_host,
        port: int = CONNECTIVITY.probe_port,
        timeout: float = CONNECTIVITY.probe_timeout_sec,
        interval: float = CONNECTIVITY.probe_interval_sec,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.interval = interval
        self._sleep = sleep

    async def fetch(self) -> NetworkSnapshot:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError):
            return NetworkSnapshot(is_connected=False, is_internet_reachable=False, type="none")
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return NetworkSnapshot(is_connected=True, is_internet_reachable=True, type="unknown")

    def add_listener(self, listener: Listener) -> Unsubscribe:
        async def _loop() -> None:
            last: Optional[NetworkSnapshot] = None
            while True:
                snapshot = await self.fetch()
                if last is None or snapshot.is_connected != last.is_connected:
                    listener(snapshot)
                    last = snapshot
                await self._sleep(self.interval)

        task = asyncio.get_running_loop().create_task(_loop())
        return task.cancel


def create_connectivity_monitor(facility: Optional[NetworkFacility]) -> ConnectivityMonitor:
    if facility is None:
        logger.info("No network facility available, assuming online")
        return FailOpenConnectivityMonitor()
    return PlatformConnectivityMonitor(facility)


__all__ = [
    "ConnectivityMonitor",
    "FailOpenConnectivityMonitor",
    "NetworkFacility",
    "PlatformConnectivityMonitor",
    "SocketProbeFacility",
    "create_connectivity_monitor",
]
