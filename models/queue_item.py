"""Queue items buffered by the offline write queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from datetime_utils import parse_iso_utc, to_iso_utc, utc_now


PENDING = "pending"
IN_FLIGHT = "in-flight"
DONE = "done"
FAILED = "failed"

STATUSES = (PENDING, IN_FLIGHT, DONE, FAILED)

VALID_KINDS = {
    "medication_create",
    "medication_update",
    "medication_delete",
    "intake_record",
    "inventory_update",
}

Operation = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class QueueItem:
    id: str
    kind: str
    payload: Dict[str, Any]
    operation: Optional[Operation] = field(default=None, repr=False, compare=False)
    enqueued_at: datetime = field(default_factory=utc_now)
    attempts: int = 0
    max_attempts: int = 5
    status: str = PENDING
    error: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Serializable form; the operation is never written."""

        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "enqueued_at": to_iso_utc(self.enqueued_at),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "status": self.status,
            "error": self.error,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "QueueItem":
        status = record.get("status") or PENDING
        if status not in STATUSES:
            status = PENDING
        payload = record.get("payload")
        return cls(
            id=str(record["id"]),
            kind=str(record.get("kind") or ""),
            payload=payload if isinstance(payload, dict) else {},
            operation=None,
            enqueued_at=parse_iso_utc(record.get("enqueued_at")) or utc_now(),
            attempts=int(record.get("attempts") or 0),
            max_attempts=int(record.get("max_attempts") or 5),
            status=status,
            error=record.get("error"),
        )


@dataclass(frozen=True)
class QueueStatus:
    total: int
    pending: int
    in_flight: int
    done: int
    failed: int
    is_online: bool
    is_processing: bool


__all__ = [
    "DONE",
    "FAILED",
    "IN_FLIGHT",
    "Operation",
    "PENDING",
    "QueueItem",
    "QueueStatus",
    "STATUSES",
    "VALID_KINDS",
]
