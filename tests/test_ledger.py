"""Tests for the append-only sale ledgers."""

from __future__ import annotations

import asyncio
import re
import threading
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from smarttax_pos import data_manager
from smarttax_pos.exceptions import PersistenceError
from smarttax_pos.ledger import MemorySaleLedger, WorkbookSaleLedger, generate_sale_id

SAMPLE_DOCUMENT = {
    "items": [{"productId": "p1", "name": "Rice", "unitCost": Decimal("450.00"), "taxRate": 5, "quantity": 2}],
    "subtotal": Decimal("900.00"),
    "gstAmount": Decimal("45.00"),
    "total": Decimal("945.00"),
    "cashier": "c@example.com",
    "timestamp": "2024-03-01T10:00:00+00:00",
}


def test_generate_sale_id_format():
    sale_id = generate_sale_id(when=datetime(2024, 3, 1, 10, 0, tzinfo=UTC))

    assert re.fullmatch(r"S20240301100000000000-[0-9a-f]{6}", sale_id)
    assert generate_sale_id() != generate_sale_id()


# ---------------------------------------------------------------------------
# Memory ledger
# ---------------------------------------------------------------------------


def test_memory_append_assigns_unique_ids():
    ledger = MemorySaleLedger()

    first = asyncio.run(ledger.append(SAMPLE_DOCUMENT))
    second = asyncio.run(ledger.append(SAMPLE_DOCUMENT))
    records = asyncio.run(ledger.scan_all())

    assert first != second
    assert {record["id"] for record in records} == {first, second}


def test_memory_append_is_idempotent_per_key():
    """Replaying an idempotency key returns the original id without writing."""

    ledger = MemorySaleLedger()

    first = asyncio.run(ledger.append(SAMPLE_DOCUMENT, idempotency_key="k1"))
    again = asyncio.run(ledger.append(SAMPLE_DOCUMENT, idempotency_key="k1"))

    assert first == again
    assert len(asyncio.run(ledger.scan_all())) == 1


def test_memory_record_reports_replayed_key():
    """A replay hands back the stored document, not the one offered."""

    ledger = MemorySaleLedger()

    first = asyncio.run(ledger.record(SAMPLE_DOCUMENT, idempotency_key="k1"))
    again = asyncio.run(ledger.record({"total": Decimal("1"), "items": []}, idempotency_key="k1"))

    assert first.created is True
    assert again.created is False
    assert again.sale_id == first.sale_id
    assert again.document == SAMPLE_DOCUMENT


def test_memory_records_are_immutable_copies():
    ledger = MemorySaleLedger()
    document = {"total": Decimal("1"), "items": []}

    asyncio.run(ledger.append(document))
    document["total"] = Decimal("999")
    records = asyncio.run(ledger.scan_all())
    records[0]["total"] = Decimal("0")

    assert asyncio.run(ledger.scan_all())[0]["total"] == Decimal("1")


# ---------------------------------------------------------------------------
# Workbook ledger
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_ledger(workbook_factory):
    path = workbook_factory()
    return WorkbookSaleLedger(data_manager.open_workbook(path), path, threading.Lock()), path


def test_workbook_append_round_trips_document(workbook_ledger):
    """Documents survive a save/reload with Decimal amounts intact."""

    ledger, path = workbook_ledger

    sale_id = asyncio.run(ledger.append(SAMPLE_DOCUMENT, idempotency_key="k1"))
    reloaded = WorkbookSaleLedger(data_manager.open_workbook(path), path, threading.Lock())
    records = asyncio.run(reloaded.scan_all())

    assert len(records) == 1
    record = records[0]
    assert record["id"] == sale_id
    assert record["total"] == Decimal("945.0")
    assert isinstance(record["total"], Decimal)
    assert record["items"][0]["quantity"] == 2


def test_workbook_idempotency_survives_reload(workbook_ledger):
    """Keys are recovered from the sheet, not only from memory."""

    ledger, path = workbook_ledger
    sale_id = asyncio.run(ledger.append(SAMPLE_DOCUMENT, idempotency_key="k1"))

    reloaded = WorkbookSaleLedger(data_manager.open_workbook(path), path, threading.Lock())
    again = asyncio.run(reloaded.append(SAMPLE_DOCUMENT, idempotency_key="k1"))

    assert again == sale_id
    assert len(asyncio.run(reloaded.scan_all())) == 1


def test_workbook_record_reports_replayed_key(workbook_ledger):
    ledger, path = workbook_ledger
    first = asyncio.run(ledger.record(SAMPLE_DOCUMENT, idempotency_key="k1"))

    reloaded = WorkbookSaleLedger(data_manager.open_workbook(path), path, threading.Lock())
    again = asyncio.run(reloaded.record({"total": Decimal("1"), "items": []}, idempotency_key="k1"))

    assert first.created is True
    assert again.created is False
    assert again.sale_id == first.sale_id
    assert again.document["total"] == Decimal("945")
    assert again.document["items"][0]["productId"] == "p1"


def test_workbook_save_failure_leaves_no_row(workbook_ledger, monkeypatch):
    """A failed save raises PersistenceError and drops the unsaved row."""

    ledger, _ = workbook_ledger

    def _fail(*_args, **_kwargs):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(data_manager, "save_workbook", _fail)

    with pytest.raises(PersistenceError):
        asyncio.run(ledger.append(SAMPLE_DOCUMENT, idempotency_key="k1"))

    assert asyncio.run(ledger.scan_all()) == []
