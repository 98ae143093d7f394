"""Error taxonomy for the POS engine.

Operator-recoverable problems derive from :class:`ValidationError`. Storage
problems are split by whether a sale already exists: :class:`PersistenceError`
means nothing was written, :class:`InventoryAdjustmentError` means the sale is
on record but stock may be wrong.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence, Tuple


class SmartTaxError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(SmartTaxError):
    """Raised when a request is rejected before any I/O is attempted."""


class EmptyCartError(ValidationError):
    """Raised when a checkout is attempted on a cart with no lines."""


class InvalidCustomerError(ValidationError):
    """Raised when customer fields are missing or malformed."""


class NotFoundError(SmartTaxError):
    """Raised when a product is unknown to the catalog or inventory."""


class InsufficientStockError(SmartTaxError):
    """Raised when a decrement would take stock below zero."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_id}': requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class PersistenceError(SmartTaxError):
    """Raised when the sale ledger cannot durably record a sale."""


class InventoryAdjustmentError(SmartTaxError):
    """Raised when a sale was recorded but one or more decrements failed.

    The sale is final; ``failures`` lists ``(product_id, error)`` pairs that
    need manual stock reconciliation.
    """

    def __init__(self, sale: Any, failures: Sequence[Tuple[str, Exception]]) -> None:
        product_ids = ", ".join(product_id for product_id, _ in failures)
        super().__init__(
            f"Sale '{sale.sale_id}' recorded but inventory not adjusted for: {product_ids}"
        )
        self.sale = sale
        self.failures = tuple(failures)


class AggregationInconsistencyError(SmartTaxError):
    """Raised when a sale record matches no reconciliation tier."""

    def __init__(self, sale_id: Optional[str], reason: str, document: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(f"Sale '{sale_id}' cannot be reconciled: {reason}")
        self.sale_id = sale_id
        self.reason = reason
        self.document = document


__all__ = [
    "SmartTaxError",
    "ValidationError",
    "EmptyCartError",
    "InvalidCustomerError",
    "NotFoundError",
    "InsufficientStockError",
    "PersistenceError",
    "InventoryAdjustmentError",
    "AggregationInconsistencyError",
]
