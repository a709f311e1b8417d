"""Exceptions raised by the offline sync layer."""
from __future__ import annotations


class SyncLayerError(Exception):
    """Base class for queue, cache and remote client errors."""


class QueueError(SyncLayerError):
    """The queue could not record or persist an operation."""


class TerminalOperationError(SyncLayerError):
    """The remote rejected the operation; retrying will not help."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class OperationUnavailableError(SyncLayerError):
    """A rehydrated queue item has no runnable operation."""


OPERATION_UNAVAILABLE_MESSAGE = "Operation not available after reload"


__all__ = [
    "OPERATION_UNAVAILABLE_MESSAGE",
    "OperationUnavailableError",
    "QueueError",
    "SyncLayerError",
    "TerminalOperationError",
]
