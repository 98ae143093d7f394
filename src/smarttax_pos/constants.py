"""Enumerations and defaults shared across SmartTax POS modules.

Tax constants live here because they are the first values to change when tax
law changes; every runtime value is still overridable from ``config.ini``.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "3.0.0"

# Written into every sale document produced by the checkout coordinator.
SALE_DOCUMENT_VERSION = 3

DEFAULT_LOWER_RATE = 5
DEFAULT_UPPER_RATE = 18
DEFAULT_BRACKET_THRESHOLD = Decimal("2500")
DEFAULT_PHONE_DIGITS = 10
DEFAULT_PERSIST_ATTEMPTS = 3
DEFAULT_REPORT_TIMEZONE = "UTC"
RECENT_SALES_LIMIT = 10

CENT = Decimal("0.01")
ZERO = Decimal("0")


class TaxStrategy(str, Enum):
    """Enumerate the interchangeable tax policies."""

    PER_ITEM = "per-item"
    BRACKET = "bracket"


class CheckoutState(str, Enum):
    """Enumerate the states a single checkout attempt moves through."""

    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    PERSISTING = "PERSISTING"
    ADJUSTING_INVENTORY = "ADJUSTING_INVENTORY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReconciliationTier(str, Enum):
    """Enumerate the per-rate reconciliation tiers in priority order."""

    ITEMIZED = "itemized"
    ITEMS = "items"
    LEGACY_RATE = "legacy-rate"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SALE_DOCUMENT_VERSION",
    "DEFAULT_LOWER_RATE",
    "DEFAULT_UPPER_RATE",
    "DEFAULT_BRACKET_THRESHOLD",
    "DEFAULT_PHONE_DIGITS",
    "DEFAULT_PERSIST_ATTEMPTS",
    "DEFAULT_REPORT_TIMEZONE",
    "RECENT_SALES_LIMIT",
    "CENT",
    "ZERO",
    "TaxStrategy",
    "CheckoutState",
    "ReconciliationTier",
    "SheetName",
]
