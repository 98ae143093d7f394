"""Data access layer for SmartTax POS.

This module provides low-level helpers that read from and write to the POS
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``, including the
   tax policy parameters that change whenever tax law does.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured product and sale records and
   appending or updating individual rows.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_BRACKET_THRESHOLD,
    DEFAULT_LOWER_RATE,
    DEFAULT_PERSIST_ATTEMPTS,
    DEFAULT_PHONE_DIGITS,
    DEFAULT_REPORT_TIMEZONE,
    DEFAULT_UPPER_RATE,
    SheetName,
    TaxStrategy,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value

PRODUCT_COLUMNS: Sequence[str] = ("ProductID", "Name", "Cost", "Qnty", "TaxRate", "Img")
SALE_COLUMNS: Sequence[str] = ("SaleID", "IdempotencyKey", "Timestamp", "Cashier", "Document")


@dataclass(frozen=True)
class TaxSettings:
    """Tax policy parameters read from the ``[Tax]`` section."""

    strategy: TaxStrategy = TaxStrategy.PER_ITEM
    bracket_threshold: Decimal = DEFAULT_BRACKET_THRESHOLD
    lower_rate: int = DEFAULT_LOWER_RATE
    upper_rate: int = DEFAULT_UPPER_RATE

    @property
    def rates(self) -> tuple[int, ...]:
        return (self.lower_rate, self.upper_rate)


@dataclass(frozen=True)
class CheckoutSettings:
    """Checkout policy parameters read from the ``[Checkout]`` section."""

    require_customer_name: bool = False
    require_customer_phone: bool = False
    phone_digits: int = DEFAULT_PHONE_DIGITS
    persist_attempts: int = DEFAULT_PERSIST_ATTEMPTS


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_cashier: str
    tax: TaxSettings = field(default_factory=TaxSettings)
    checkout: CheckoutSettings = field(default_factory=CheckoutSettings)
    report_timezone: str = DEFAULT_REPORT_TIMEZONE


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    unit_cost: Decimal
    stock: int
    tax_rate: int
    img: Optional[str] = None


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    idempotency_key: Optional[str]
    timestamp_iso: str
    cashier: Optional[str]
    document: Dict[str, Any]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the POS behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_tax_settings(parser: configparser.ConfigParser) -> TaxSettings:
    """Read the optional ``[Tax]`` section, falling back to the defaults.

    Raises:
        ValueError: If the strategy name is unknown, a rate is negative, or the
            lower rate is not below the upper rate.
    """

    strategy_raw = parser.get("Tax", "Strategy", fallback=TaxStrategy.PER_ITEM.value)
    try:
        strategy = TaxStrategy(strategy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown tax strategy: {strategy_raw}") from exc

    threshold_raw = parser.get("Tax", "BracketThreshold", fallback=str(DEFAULT_BRACKET_THRESHOLD))
    try:
        threshold = Decimal(threshold_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid bracket threshold: {threshold_raw}") from exc

    lower_rate = parser.getint("Tax", "LowerRate", fallback=DEFAULT_LOWER_RATE)
    upper_rate = parser.getint("Tax", "UpperRate", fallback=DEFAULT_UPPER_RATE)
    if lower_rate < 0 or upper_rate < 0:
        raise ValueError("Tax rates must be zero or positive")
    if lower_rate >= upper_rate:
        raise ValueError(f"LowerRate ({lower_rate}) must be below UpperRate ({upper_rate})")

    return TaxSettings(
        strategy=strategy,
        bracket_threshold=threshold,
        lower_rate=lower_rate,
        upper_rate=upper_rate,
    )


def parse_checkout_settings(parser: configparser.ConfigParser) -> CheckoutSettings:
    """Read the optional ``[Checkout]`` section, falling back to the defaults."""

    persist_attempts = parser.getint("Checkout", "PersistAttempts", fallback=DEFAULT_PERSIST_ATTEMPTS)
    if persist_attempts < 1:
        raise ValueError("PersistAttempts must be at least 1")
    return CheckoutSettings(
        require_customer_name=parser.getboolean("Checkout", "RequireCustomerName", fallback=False),
        require_customer_phone=parser.getboolean("Checkout", "RequireCustomerPhone", fallback=False),
        phone_digits=parser.getint("Checkout", "PhoneDigits", fallback=DEFAULT_PHONE_DIGITS),
        persist_attempts=persist_attempts,
    )


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are mandatory. ``[Tax]``, ``[Checkout]``
    and ``[Reporting]`` are optional and fall back to the module defaults.
    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory otherwise.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative ``DataFile``
            entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional section holds an invalid value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_cashier = parser.get("Defaults", "Cashier")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_cashier=default_cashier,
        tax=parse_tax_settings(parser),
        checkout=parse_checkout_settings(parser),
        report_timezone=parser.get("Reporting", "Timezone", fallback=DEFAULT_REPORT_TIMEZONE),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale records from the ``Sales`` worksheet.

    Each populated row is transformed into a :class:`SaleRow` whose
    ``document`` holds the decoded JSON record exactly as it was written, so
    historical variants survive untouched for the reporting layer.

    Yields:
        SaleRow: Decoded sale row.
    """

    sheet = workbook[SALES_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_sale(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet.

    Rows are never updated or deleted after this call.
    """

    sheet = workbook[SALES_SHEET]
    sheet.append(serialize_sale(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing product.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Mapping of column names to
            replacement values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown product field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        # Excel may hand back numeric ids, so compare as text.
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: ``[ProductID, Name, Cost, Qnty, TaxRate, Img]``.
    """

    return [
        record.product_id,
        record.name,
        record.unit_cost,
        record.stock,
        record.tax_rate,
        record.img,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the ``Sales`` column ordering.

    The document is stored as one JSON cell so that records of any schema
    variant share the same worksheet.
    """

    return [
        record.sale_id,
        record.idempotency_key,
        record.timestamp_iso,
        record.cashier,
        encode_document(record.document),
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Costs become :class:`~decimal.Decimal`, stock and tax rate become ``int``
    and identifiers are coerced to ``str`` because Excel likes to turn them
    into numbers.
    """

    padded = list(raw_row) + [None] * (len(PRODUCT_COLUMNS) - len(raw_row))
    product_id, name, cost_raw, qnty_raw, tax_rate_raw, img = padded[: len(PRODUCT_COLUMNS)]

    unit_cost = Decimal(str(cost_raw)) if cost_raw is not None else Decimal("0.00")
    stock = int(qnty_raw) if qnty_raw is not None else 0
    tax_rate = int(tax_rate_raw) if tax_rate_raw is not None else 0
    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        unit_cost=unit_cost,
        stock=stock,
        tax_rate=tax_rate,
        img=str(img) if img is not None else None,
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` worksheet row into a :class:`SaleRow`."""

    sale_id, idempotency_key, timestamp_iso, cashier, document_raw = raw_row[: len(SALE_COLUMNS)]
    return SaleRow(
        sale_id=str(sale_id),
        idempotency_key=str(idempotency_key) if idempotency_key is not None else None,
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        cashier=str(cashier) if cashier is not None else None,
        document=decode_document(document_raw),
    )


def encode_document(document: Mapping[str, Any]) -> str:
    """Serialize a sale document to JSON.

    Decimals become JSON numbers and datetimes ISO strings, matching how the
    document store historically held them.
    """

    return json.dumps(document, default=_json_default, sort_keys=True, ensure_ascii=False)


def decode_document(raw: object) -> Dict[str, Any]:
    """Parse a JSON sale document, reading every float as ``Decimal``.

    Blank or unparsable cells decode to an empty dict and are logged; the
    reporting layer then treats them as unreconcilable records.
    """

    if raw is None or raw == "":
        return {}
    try:
        decoded = json.loads(str(raw), parse_float=Decimal)
    except json.JSONDecodeError as exc:
        log.error("Unreadable sale document in workbook: %s", exc)
        return {}
    if not isinstance(decoded, dict):
        log.error("Sale document is not a JSON object: %r", decoded)
        return {}
    return decoded


def _json_default(value: object) -> object:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
