import asyncio
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.errors import OPERATION_UNAVAILABLE_MESSAGE, OperationUnavailableError
from services.operation_registry import OperationRegistry


def test_build_binds_payload_to_handler():
    registry = OperationRegistry()
    seen = []

    async def handler(payload):
        seen.append(payload)
        return payload["medicationId"]

    registry.register("inventory_update", handler)
    operation = registry.build("inventory_update", {"medicationId": "m1"})
    assert registry.has("inventory_update")
    assert asyncio.run(operation()) == "m1"
    assert seen == [{"medicationId": "m1"}]


def test_unknown_kind_cannot_be_registered():
    with pytest.raises(ValueError):
        OperationRegistry().register("refill_reminder", lambda payload: None)


def test_missing_handler():
    registry = OperationRegistry()
    registry.register("intake_record", lambda payload: None)
    registry.unregister("intake_record")
    assert registry.build("intake_record", {}) is None
    with pytest.raises(OperationUnavailableError) as excinfo:
        registry.require("intake_record", {})
    assert str(excinfo.value) == OPERATION_UNAVAILABLE_MESSAGE
