"""Rebuild queued operations from their persisted kind and payload."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional

from models.queue_item import VALID_KINDS, Operation
from services.errors import OPERATION_UNAVAILABLE_MESSAGE, OperationUnavailableError


Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class OperationRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(self, kind: str, handler: Handler) -> None:
        if kind not in VALID_KINDS:
            raise ValueError(f"Unsupported kind: {kind}")
        self._handlers[kind] = handler

    def unregister(self, kind: str) -> None:
        self._handlers.pop(kind, None)

    def has(self, kind: str) -> bool:
        return kind in self._handlers

    def build(self, kind: str, payload: Dict[str, Any]) -> Optional[Operation]:
        handler = self._handlers.get(kind)
        if handler is None:
            return None

        def _operation():
            return handler(payload)

        return _operation

    def require(self, kind: str, payload: Dict[str, Any]) -> Operation:
        operation = self.build(kind, payload)
        if operation is None:
            raise OperationUnavailableError(OPERATION_UNAVAILABLE_MESSAGE)
        return operation


__all__ = ["Handler", "OperationRegistry"]
