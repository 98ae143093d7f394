"""Product stock counts with per-product atomic decrements.

Decrements follow a reject policy: asking for more units than are on hand
raises :class:`InsufficientStockError` and leaves the count untouched. Stock
never goes negative.

Every read-check-write happens without an intervening suspension point. The
memory store gets that for free from the event loop; the workbook store runs
the whole mutation plus save inside a worker thread holding the workbook lock.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import InsufficientStockError, NotFoundError, PersistenceError, SmartTaxError


@dataclass(frozen=True)
class DecrementRequest:
    """Units of one product to take out of stock."""

    product_id: str
    amount: int


@dataclass(frozen=True)
class InventoryBatchResult:
    """Outcome of :meth:`InventoryStore.decrement_many`."""

    applied: Tuple[DecrementRequest, ...]
    failed: Tuple[Tuple[str, Exception], ...]

    @property
    def ok(self) -> bool:
        return not self.failed


def require_positive_amount(amount: int) -> None:
    """Validate that a decrement amount is a whole number of at least one.

    Raises:
        ValueError: If ``amount`` is not an ``int`` or is below one.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        log.error("Decrement amount validation failed: %r", amount)
        raise ValueError("Decrement amount must be a positive integer")


class InventoryStore:
    """Shared stock store. Subclasses implement :meth:`get` and :meth:`decrement`."""

    async def get(self, product_id: str) -> int:
        raise NotImplementedError

    async def decrement(self, product_id: str, amount: int) -> int:
        """Take ``amount`` units out of stock and return the remaining count."""
        raise NotImplementedError

    async def decrement_many(self, requests: Iterable[DecrementRequest]) -> InventoryBatchResult:
        """Apply one decrement per request, reporting each failure.

        Requests are independent: a failure does not stop later requests and
        does not undo earlier ones.
        """

        applied: List[DecrementRequest] = []
        failed: List[Tuple[str, Exception]] = []
        for request in requests:
            try:
                await self.decrement(request.product_id, request.amount)
            except (SmartTaxError, ValueError) as exc:
                log.warning("Decrement of '%s' by %d failed: %s", request.product_id, request.amount, exc)
                failed.append((request.product_id, exc))
            else:
                applied.append(request)
        return InventoryBatchResult(applied=tuple(applied), failed=tuple(failed))


class MemoryInventoryStore(InventoryStore):
    """In-process store keyed by product id."""

    def __init__(self, stock: Mapping[str, int] | None = None) -> None:
        self._stock: Dict[str, int] = dict(stock or {})

    def snapshot(self) -> Dict[str, int]:
        return dict(self._stock)

    async def get(self, product_id: str) -> int:
        try:
            return self._stock[product_id]
        except KeyError as exc:
            raise NotFoundError(f"Unknown product id: {product_id}") from exc

    async def decrement(self, product_id: str, amount: int) -> int:
        require_positive_amount(amount)
        current = self._stock.get(product_id)
        if current is None:
            raise NotFoundError(f"Unknown product id: {product_id}")
        if amount > current:
            raise InsufficientStockError(product_id, amount, current)
        self._stock[product_id] = current - amount
        log.info("Stock for '%s' decremented by %d to %d", product_id, amount, current - amount)
        return current - amount


class WorkbookInventoryStore(InventoryStore):
    """Store backed by the ``Qnty`` column of the ``Products`` worksheet.

    ``lock`` must be the same lock every other workbook user holds.
    """

    def __init__(self, workbook: Workbook, data_file: Path, lock: threading.Lock) -> None:
        self._workbook = workbook
        self._data_file = data_file
        self._lock = lock

    async def get(self, product_id: str) -> int:
        return await asyncio.to_thread(self._get_sync, product_id)

    async def decrement(self, product_id: str, amount: int) -> int:
        require_positive_amount(amount)
        return await asyncio.to_thread(self._decrement_sync, product_id, amount)

    def _find(self, product_id: str) -> data_manager.ProductRow:
        for product in data_manager.iter_products(self._workbook):
            if product.product_id == product_id:
                return product
        raise NotFoundError(f"Unknown product id: {product_id}")

    def _get_sync(self, product_id: str) -> int:
        with self._lock:
            return self._find(product_id).stock

    def _decrement_sync(self, product_id: str, amount: int) -> int:
        with self._lock:
            current = self._find(product_id).stock
            if amount > current:
                raise InsufficientStockError(product_id, amount, current)
            remaining = current - amount
            data_manager.update_product(self._workbook, product_id, field_values={"Qnty": remaining})
            try:
                data_manager.save_workbook(self._workbook, self._data_file)
            except OSError as exc:
                # Keep the in-memory sheet identical to what is on disk.
                data_manager.update_product(self._workbook, product_id, field_values={"Qnty": current})
                log.error("Could not persist stock for '%s': %s", product_id, exc)
                raise PersistenceError(f"Could not persist stock for '{product_id}': {exc}") from exc
        log.info("Stock for '%s' decremented by %d to %d", product_id, amount, remaining)
        return remaining
