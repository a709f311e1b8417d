"""Medication writes routed through the offline queue, and cached reads."""
from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from googleapiclient.errors import HttpError

from core.log import get_logger
from core.settings import REMOTE
from datetime_utils import parse_iso_utc, to_iso_utc, utc_now
from services.errors import TerminalOperationError
from services.firestore_client import FirestoreClient
from services.offline_queue import OfflineQueue
from services.operation_registry import OperationRegistry
from services.read_cache import CachedCollection, ReadCache, cache_key
from services.retry import RetryPolicy, with_retry


logger = get_logger("medications")


def _jsonable(value: Any) -> Any:
    def _default(obj: Any) -> Any:
        if isinstance(obj, datetime):
            return to_iso_utc(obj)
        raise TypeError(f"{type(obj).__name__} is not JSON serializable")

    return json.loads(json.dumps(value, default=_default, ensure_ascii=False))


def _already_exists(exc: HttpError) -> bool:
    return getattr(getattr(exc, "resp", None), "status", None) == 409


class MedicationWriteService:
    """Create/update/delete medications, record intakes and inventory.

    Online calls go straight to Firestore with retries; offline calls are
    queued. Each payload carries client-generated document ids so a replayed
    create does not duplicate the document.
    """

    def __init__(
        self,
        client: FirestoreClient,
        queue: OfflineQueue,
        registry: Optional[OperationRegistry] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.client = client
        self.queue = queue
        self.registry = registry or queue.registry
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._new_id = id_factory
        self._handlers = {
            "medication_create": self._create_handler,
            "medication_update": self._update_handler,
            "medication_delete": self._delete_handler,
            "intake_record": self._intake_handler,
            "inventory_update": self._inventory_handler,
        }
        for kind, handler in self._handlers.items():
            self.registry.register(kind, handler)

    # ------------------------------------------------------------------
    # Public API
    async def create_medication(
        self, medication: Mapping[str, Any], patient_id: str, caregiver_id: Optional[str] = None
    ) -> str:
        """Return the new document id, or ``temp_<queue id>`` when queued."""

        payload = {
            "documentId": self._new_id(),
            "eventId": self._new_id(),
            "medication": dict(medication),
            "patientId": patient_id,
            "caregiverId": caregiver_id,
        }
        value, queued = await self._submit("medication_create", payload)
        if queued:
            return f"temp_{value}"
        return value

    async def update_medication(
        self,
        medication_id: str,
        updates: Mapping[str, Any],
        patient_id: str,
        caregiver_id: Optional[str] = None,
        old_data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        payload = {
            "medicationId": medication_id,
            "eventId": self._new_id(),
            "updates": dict(updates),
            "patientId": patient_id,
            "caregiverId": caregiver_id,
            "oldData": dict(old_data) if old_data else None,
        }
        await self._submit("medication_update", payload)

    async def delete_medication(
        self,
        medication_id: str,
        medication_name: str,
        patient_id: str,
        caregiver_id: Optional[str] = None,
    ) -> None:
        payload = {
            "medicationId": medication_id,
            "medicationName": medication_name,
            "eventId": self._new_id(),
            "patientId": patient_id,
            "caregiverId": caregiver_id,
        }
        await self._submit("medication_delete", payload)

    async def record_dose_intake(
        self,
        medication_id: str,
        medication_name: str,
        patient_id: str,
        caregiver_id: Optional[str] = None,
        taken_at: Optional[datetime] = None,
    ) -> None:
        payload = {
            "intakeId": self._new_id(),
            "medicationId": medication_id,
            "medicationName": medication_name,
            "patientId": patient_id,
            "caregiverId": caregiver_id,
            "takenAt": taken_at or self._clock(),
        }
        await self._submit("intake_record", payload)

    async def update_inventory(
        self,
        medication_id: str,
        current_quantity: int,
        patient_id: str,
        caregiver_id: Optional[str] = None,
    ) -> None:
        payload = {
            "medicationId": medication_id,
            "currentQuantity": int(current_quantity),
            "patientId": patient_id,
            "caregiverId": caregiver_id,
        }
        await self._submit("inventory_update", payload)

    # ------------------------------------------------------------------
    # Dispatch
    async def _submit(self, kind: str, payload: Dict[str, Any]) -> Tuple[Any, bool]:
        """Run now when online, otherwise enqueue. Returns ``(value, queued)``."""

        payload = _jsonable(payload)
        if self.queue.is_online:
            handler = self._handlers[kind]
            value = await with_retry(
                lambda: handler(payload),
                self.retry_policy,
                should_retry=lambda exc: not isinstance(exc, TerminalOperationError),
                context={"kind": kind},
            )
            return value, False

        queue_id = await self.queue.enqueue(kind, None, payload)
        logger.info("Queued %s as %s", kind, queue_id)
        return queue_id, True

    # ------------------------------------------------------------------
    # Handlers: payload -> remote writes
    async def _create_handler(self, payload: Dict[str, Any]) -> str:
        document_id = payload["documentId"]
        now = self._clock()
        data = dict(payload["medication"])
        data.update({"patientId": payload["patientId"], "createdAt": now, "updatedAt": now})
        try:
            await self.client.create_document(
                REMOTE.medications_collection, data, document_id=document_id
            )
        except HttpError as exc:
            if not _already_exists(exc):
                raise
            logger.info("Medication %s already created", document_id)

        if payload.get("caregiverId"):
            medication = dict(payload["medication"], id=document_id)
            await self._record_event(payload, "created", medication)
        logger.info("Created medication %s", document_id)
        return document_id

    async def _update_handler(self, payload: Dict[str, Any]) -> None:
        medication_id = payload["medicationId"]
        updates = dict(payload["updates"])
        updates["updatedAt"] = self._clock()
        await self.client.update_document(REMOTE.medications_collection, medication_id, updates)

        old_data = payload.get("oldData")
        if payload.get("caregiverId") and old_data:
            medication = dict(old_data, id=medication_id)
            changes = [
                {"field": name, "oldValue": old_data.get(name), "newValue": value}
                for name, value in sorted(payload["updates"].items())
                if old_data.get(name) != value
            ]
            await self._record_event(payload, "updated", medication, changes=changes)
        logger.info("Updated medication %s", medication_id)

    async def _delete_handler(self, payload: Dict[str, Any]) -> None:
        medication_id = payload["medicationId"]
        try:
            await self.client.delete_document(REMOTE.medications_collection, medication_id)
        except TerminalOperationError as exc:
            if exc.status != 404:
                raise
            logger.info("Medication %s already deleted", medication_id)

        if payload.get("caregiverId"):
            medication = {"id": medication_id, "name": payload.get("medicationName")}
            await self._record_event(payload, "deleted", medication)
        logger.info("Deleted medication %s", medication_id)

    async def _intake_handler(self, payload: Dict[str, Any]) -> None:
        data = {
            "medicationId": payload["medicationId"],
            "medicationName": payload.get("medicationName"),
            "patientId": payload["patientId"],
            "caregiverId": payload.get("caregiverId"),
            "takenAt": parse_iso_utc(payload.get("takenAt")) or self._clock(),
            "recordedAt": self._clock(),
        }
        try:
            await self.client.create_document(
                REMOTE.intakes_collection, data, document_id=payload["intakeId"]
            )
        except HttpError as exc:
            if not _already_exists(exc):
                raise
        logger.info("Recorded dose intake for %s", payload["medicationId"])

    async def _inventory_handler(self, payload: Dict[str, Any]) -> None:
        await self.client.update_document(
            REMOTE.medications_collection,
            payload["medicationId"],
            {"currentQuantity": payload["currentQuantity"], "updatedAt": self._clock()},
        )
        logger.info(
            "Updated inventory for %s: %s", payload["medicationId"], payload["currentQuantity"]
        )

    async def _record_event(
        self,
        payload: Dict[str, Any],
        event_type: str,
        medication: Mapping[str, Any],
        changes: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "eventType": event_type,
            "medicationId": medication.get("id"),
            "medicationName": medication.get("name"),
            "patientId": payload["patientId"],
            "caregiverId": payload["caregiverId"],
            "timestamp": self._clock(),
        }
        if changes:
            event["changes"] = changes
        try:
            await self.client.create_document(
                REMOTE.events_collection, event, document_id=payload["eventId"]
            )
        except HttpError as exc:
            if not _already_exists(exc):
                raise


class MedicationReadService:
    """Cached medication and event collections for a patient."""

    def __init__(self, client: FirestoreClient, cache: ReadCache) -> None:
        self.client = client
        self.cache = cache

    def medications(
        self,
        patient_id: str,
        initial_data: Optional[List[Dict[str, Any]]] = None,
        ttl: Optional[float] = None,
    ) -> CachedCollection:
        async def _fetch() -> List[Dict[str, Any]]:
            return await self.client.query_collection(
                REMOTE.medications_collection, {"patientId": patient_id}
            )

        return self.cache.use_cached_collection(
            cache_key("medications", patient_id), _fetch, initial_data or [], ttl
        )

    def events(
        self,
        patient_id: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 50,
        ttl: Optional[float] = None,
    ) -> CachedCollection:
        criteria = dict(filters or {})

        async def _fetch() -> List[Dict[str, Any]]:
            return await self.client.query_collection(
                REMOTE.events_collection,
                dict(criteria, patientId=patient_id),
                order_by="timestamp",
                descending=True,
                limit=limit,
            )

        key = cache_key("events", patient_id, dict(criteria, limit=limit))
        return self.cache.use_cached_collection(key, _fetch, [], ttl)


__all__ = ["MedicationReadService", "MedicationWriteService"]
