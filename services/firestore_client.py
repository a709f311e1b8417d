"""Minimal Firestore REST client used by queued operations and cache fetchers."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.log import get_logger
from core.settings import REMOTE
from datetime_utils import ensure_utc, parse_iso_utc, to_iso_utc
from services.errors import TerminalOperationError


RETRYABLE_STATUS = {408, 409, 412, 429, 500, 502, 503, 504}

logger = get_logger("firestore")


def _http_status(exc: HttpError) -> int:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status or 0)
    except (TypeError, ValueError):
        return 0


def is_terminal_status(status: int) -> bool:
    return 400 <= status < 500 and status not in RETRYABLE_STATUS


# ----------------------------------------------------------------------
# Value encoding
def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": to_iso_utc(ensure_utc(value))}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    return {"stringValue": str(value)}


def encode_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(name): encode_value(value) for name, value in data.items()}


def decode_value(value: Mapping[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return parse_iso_utc(value["timestampValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "referenceValue" in value:
        return value["referenceValue"]
    return None


def decode_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {name: decode_value(value) for name, value in fields.items()}


def decode_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a REST document into ``{"id": ..., **fields}``."""

    data = decode_fields(document.get("fields", {}))
    name = document.get("name") or ""
    data["id"] = name.rsplit("/", 1)[-1]
    return data


class FirestoreClient:
    def __init__(
        self,
        auth=None,
        project_id: str | None = None,
        database: str | None = None,
        service=None,
    ) -> None:
        self.auth = auth
        self.project_id = project_id or REMOTE.project_id
        self.database = database or REMOTE.database
        self.service = service

    # ------------------------------------------------------------------
    # Initialisation helpers
    def _ensure_service(self) -> None:
        if self.service is not None:
            return

        creds = None
        if hasattr(self.auth, "get_credentials") and callable(self.auth.get_credentials):
            creds = self.auth.get_credentials()
        else:
            creds = getattr(self.auth, "creds", None) or getattr(self.auth, "credentials", None)
        if not creds:
            raise RuntimeError("Firestore credentials are not available")
        if not self.project_id:
            raise RuntimeError("Firestore project id is not configured")

        self.service = build("firestore", "v1", credentials=creds, cache_discovery=False)

    @property
    def documents_root(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}/documents"

    def document_name(self, collection: str, document_id: str) -> str:
        return f"{self.documents_root}/{collection}/{document_id}"

    def _documents(self):
        self._ensure_service()
        return self.service.projects().databases().documents()

    async def _execute(self, request) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as exc:
            status = _http_status(exc)
            if is_terminal_status(status):
                logger.warning("Firestore rejected request with %s: %s", status, exc)
                raise TerminalOperationError(str(exc), status=status) from exc
            logger.info("Firestore request failed with %s: %s", status, exc)
            raise

    # ------------------------------------------------------------------
    # CRUD helpers
    async def create_document(
        self, collection: str, data: Mapping[str, Any], document_id: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "parent": self.documents_root,
            "collectionId": collection,
            "body": {"fields": encode_fields(data)},
        }
        if document_id:
            params["documentId"] = document_id
        created = await self._execute(self._documents().createDocument(**params))
        return decode_document(created)

    async def update_document(
        self, collection: str, document_id: str, updates: Mapping[str, Any]
    ) -> Dict[str, Any]:
        request = self._documents().patch(
            name=self.document_name(collection, document_id),
            body={"fields": encode_fields(updates)},
            updateMask_fieldPaths=sorted(updates),
            currentDocument_exists=True,
        )
        updated = await self._execute(request)
        return decode_document(updated)

    async def delete_document(self, collection: str, document_id: str) -> None:
        await self._execute(
            self._documents().delete(name=self.document_name(collection, document_id))
        )

    async def query_collection(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"from": [{"collectionId": collection}]}
        conditions = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": name},
                    "op": "EQUAL",
                    "value": encode_value(value),
                }
            }
            for name, value in sorted((filters or {}).items())
        ]
        if len(conditions) == 1:
            query["where"] = conditions[0]
        elif conditions:
            query["where"] = {"compositeFilter": {"op": "AND", "filters": conditions}}
        if order_by:
            query["orderBy"] = [
                {
                    "field": {"fieldPath": order_by},
                    "direction": "DESCENDING" if descending else "ASCENDING",
                }
            ]
        if limit:
            query["limit"] = int(limit)

        request = self._documents().runQuery(
            parent=self.documents_root, body={"structuredQuery": query}
        )
        rows = await self._execute(request)
        # runQuery answers with a JSON array; rows without "document" carry only read times.
        if isinstance(rows, dict):
            rows = [rows]
        return [decode_document(row["document"]) for row in rows or [] if row.get("document")]


__all__ = [
    "FirestoreClient",
    "RETRYABLE_STATUS",
    "decode_document",
    "decode_value",
    "encode_fields",
    "encode_value",
    "is_terminal_status",
]
