"""Append-only store of immutable sale documents.

The ledger stores whatever document it is handed, so records written by older
releases (per-item, bracket, legacy single-rate) sit side by side with new
ones. Readers reconcile the shapes; the ledger never rewrites them.
"""

from __future__ import annotations

import asyncio
import copy
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import PersistenceError


def generate_sale_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant sale identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}-{6 hex chars}``. The random tail
            keeps ids unique across concurrent cashier sessions.
    """
    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def _with_id(sale_id: str, document: Mapping[str, Any]) -> Dict[str, Any]:
    record = copy.deepcopy(dict(document))
    record["id"] = sale_id
    return record


@dataclass(frozen=True)
class LedgerEntry:
    """Outcome of :meth:`SaleLedger.record`.

    ``created`` is ``False`` when the idempotency key was already on record;
    ``document`` is then the stored document, not the one just offered.
    """

    sale_id: str
    document: Dict[str, Any]
    created: bool


class SaleLedger:
    """Shared sale store. Subclasses implement :meth:`record` and :meth:`scan_all`."""

    async def record(self, document: Mapping[str, Any], *, idempotency_key: Optional[str] = None) -> LedgerEntry:
        """Record ``document`` once and report whether it was newly written.

        Recording again with an idempotency key already on record writes
        nothing and returns the original entry with ``created=False``.

        Raises:
            PersistenceError: If the record could not be made durable.
        """
        raise NotImplementedError

    async def append(self, document: Mapping[str, Any], *, idempotency_key: Optional[str] = None) -> str:
        """Record ``document`` once and return its store-generated id."""
        entry = await self.record(document, idempotency_key=idempotency_key)
        return entry.sale_id

    async def scan_all(self) -> List[Dict[str, Any]]:
        """Return every record with its id under ``"id"``, in storage order."""
        raise NotImplementedError


class MemorySaleLedger(SaleLedger):
    """In-process ledger."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._keys: Dict[str, str] = {}

    async def record(self, document: Mapping[str, Any], *, idempotency_key: Optional[str] = None) -> LedgerEntry:
        if idempotency_key is not None and idempotency_key in self._keys:
            existing = self._keys[idempotency_key]
            log.info("Idempotency key '%s' already recorded as sale '%s'", idempotency_key, existing)
            return LedgerEntry(existing, copy.deepcopy(self._records[existing]), created=False)
        sale_id = generate_sale_id()
        self._records[sale_id] = copy.deepcopy(dict(document))
        if idempotency_key is not None:
            self._keys[idempotency_key] = sale_id
        log.info("Appended sale '%s' to memory ledger", sale_id)
        return LedgerEntry(sale_id, copy.deepcopy(self._records[sale_id]), created=True)

    async def scan_all(self) -> List[Dict[str, Any]]:
        return [_with_id(sale_id, document) for sale_id, document in self._records.items()]


class WorkbookSaleLedger(SaleLedger):
    """Ledger backed by the ``Sales`` worksheet, one JSON document per row.

    ``lock`` must be the same lock every other workbook user holds.
    """

    def __init__(self, workbook: Workbook, data_file: Path, lock: threading.Lock) -> None:
        self._workbook = workbook
        self._data_file = data_file
        self._lock = lock
        self._keys: Optional[Dict[str, str]] = None

    async def record(self, document: Mapping[str, Any], *, idempotency_key: Optional[str] = None) -> LedgerEntry:
        return await asyncio.to_thread(self._record_sync, dict(document), idempotency_key)

    async def scan_all(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._scan_sync)

    def _known_keys(self) -> Dict[str, str]:
        if self._keys is None:
            self._keys = {
                row.idempotency_key: row.sale_id
                for row in data_manager.iter_sales(self._workbook)
                if row.idempotency_key
            }
        return self._keys

    def _stored_document(self, sale_id: str) -> Dict[str, Any]:
        for row in data_manager.iter_sales(self._workbook):
            if row.sale_id == sale_id:
                return row.document
        raise PersistenceError(f"Sale '{sale_id}' is indexed but missing from the {data_manager.SALES_SHEET} sheet")

    def _record_sync(self, document: Dict[str, Any], idempotency_key: Optional[str]) -> LedgerEntry:
        with self._lock:
            known = self._known_keys()
            if idempotency_key is not None and idempotency_key in known:
                existing = known[idempotency_key]
                log.info("Idempotency key '%s' already recorded as sale '%s'", idempotency_key, existing)
                return LedgerEntry(existing, self._stored_document(existing), created=False)

            sale_id = generate_sale_id()
            timestamp = document.get("timestamp")
            row = data_manager.SaleRow(
                sale_id=sale_id,
                idempotency_key=idempotency_key,
                timestamp_iso=timestamp.isoformat() if isinstance(timestamp, datetime) else str(timestamp or ""),
                cashier=document.get("cashier"),
                document=document,
            )
            sheet = self._workbook[data_manager.SALES_SHEET]
            try:
                data_manager.append_sale(self._workbook, row)
                data_manager.save_workbook(self._workbook, self._data_file)
            except (OSError, TypeError, ValueError) as exc:
                # Drop the unsaved row so a retry does not leave a duplicate behind.
                if sheet.max_row > 1 and sheet.cell(row=sheet.max_row, column=1).value == sale_id:
                    sheet.delete_rows(sheet.max_row)
                log.error("Could not persist sale '%s': %s", sale_id, exc)
                raise PersistenceError(f"Could not persist sale: {exc}") from exc

            if idempotency_key is not None:
                known[idempotency_key] = sale_id
        log.info("Appended sale '%s' to workbook '%s'", sale_id, self._data_file)
        return LedgerEntry(sale_id, copy.deepcopy(document), created=True)

    def _scan_sync(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(data_manager.iter_sales(self._workbook))
        return [_with_id(row.sale_id, row.document) for row in rows]
