"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "Pastillero"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
LOGS_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, STORAGE_DIR, LOGS_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


STORE_DB_PATH = STORAGE_DIR / "store.db"
LOG_PATH = LOGS_DIR / "sync.log"
LOG_LEVEL = os.getenv("PASTILLERO_LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class OfflineQueueSettings:
    storage_key: str = "@offline_queue"
    max_queue_size: int = 500
    max_attempts: int = 5
    done_retention_hours: int = 24
    initial_backoff_sec: float = 1.0
    backoff_multiplier: float = 2.0


OFFLINE_QUEUE = OfflineQueueSettings()


@dataclass(frozen=True)
class ReadCacheSettings:
    default_ttl_sec: float = 300.0
    max_entries: int = 50
    payload_version: int = 1


READ_CACHE = ReadCacheSettings()


@dataclass(frozen=True)
class ConnectivitySettings:
    probe_host: str = "8.8.8.8"
    probe_port: int = 53
    probe_timeout_sec: float = 3.0
    probe_interval_sec: float = 5.0


CONNECTIVITY = ConnectivitySettings()


@dataclass(frozen=True)
class RemoteSettings:
    project_id: str = os.getenv("PASTILLERO_FIRESTORE_PROJECT", "")
    database: str = "(default)"
    medications_collection: str = "medications"
    events_collection: str = "medicationEvents"
    intakes_collection: str = "intakeRecords"


REMOTE = RemoteSettings()


@dataclass(frozen=True)
class BannerSettings:
    offline_color: str = "#B45309"
    syncing_color: str = "#2563EB"
    failed_color: str = "#DC2626"
    success_color: str = "#16A34A"
    text_color: str = "#FFFFFF"
    success_visible_sec: float = 3.0


@dataclass(frozen=True)
class UISettings:
    app_title: str = APP_NAME
    theme_mode: str = "system"
    color_scheme_seed: str = "#4F46E5"
    window_min_width: int = 360
    window_min_height: int = 640
    banner: BannerSettings = BannerSettings()


UI = UISettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "LOGS_DIR",
    "STORE_DB_PATH",
    "LOG_PATH",
    "LOG_LEVEL",
    "OFFLINE_QUEUE",
    "READ_CACHE",
    "CONNECTIVITY",
    "REMOTE",
    "UI",
    "get_default_data_dir",
]
