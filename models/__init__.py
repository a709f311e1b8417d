"""Data models shared by the offline sync layer."""
from .cache_entry import CacheEntry
from .kv_entry import KeyValueEntry
from .network import NetworkSnapshot
from .queue_item import QueueItem, QueueStatus

__all__ = ["CacheEntry", "KeyValueEntry", "NetworkSnapshot", "QueueItem", "QueueStatus"]
