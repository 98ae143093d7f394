"""Runtime wiring for SmartTax POS.

This module turns ``config.ini`` and the master workbook into ready-to-use
engine components: the tax policy, per-session carts, the shared inventory
store and sale ledger, the checkout coordinator and the dashboard reports.
All workbook I/O goes through the data access layer.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .cart import CartAggregator
from .checkout import CheckoutCoordinator, CustomerPolicy
from .constants import EXPECTED_SCHEMA_VERSION
from .exceptions import NotFoundError, ValidationError
from .inventory import WorkbookInventoryStore
from .ledger import WorkbookSaleLedger
from .reporting import RecentSaleRow, SalesSummary, recent_sales, summarize
from .tax_policy import TaxPolicy, build_tax_policy


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references shared by a store.

    ``lock`` guards every access to ``workbook``; the inventory store and the
    sale ledger built from this context share it.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket with ``all`` products in sheet order and a
            ``by_id`` lookup dictionary.
    """

    bucket = context._cache.setdefault("products", {})
    if "all" not in bucket:
        with context.lock:
            all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    for name in names:
        context._cache.pop(name, None)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When tax or checkout options are invalid.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""

    with context.lock:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return the cached catalog in sheet order."""

    return list(_ensure_products_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        NotFoundError: If ``product_id`` is absent from the workbook.
    """
    try:
        return _ensure_products_cache(context)["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}") from exc


def register_product(
    context: RuntimeContext,
    *,
    product_id: str,
    name: str,
    unit_cost: Decimal,
    tax_rate: int,
    stock: int = 0,
    img: Optional[str] = None,
) -> data_manager.ProductRow:
    """Append a product to the catalog. Call :func:`persist_context` to save.

    Raises:
        ValidationError: If the id is taken, the cost or stock is negative, or
            the tax rate is not one of the configured rates.
    """
    if product_id in _ensure_products_cache(context)["by_id"]:
        raise ValidationError(f"Product id already exists: {product_id}")
    if unit_cost < 0:
        raise ValidationError("Unit cost must be zero or positive")
    if stock < 0:
        raise ValidationError("Stock must be zero or positive")
    if tax_rate not in context.settings.tax.rates:
        raise ValidationError(f"Tax rate {tax_rate} is not one of {context.settings.tax.rates}")

    record = data_manager.ProductRow(
        product_id=product_id,
        name=name,
        unit_cost=unit_cost,
        stock=stock,
        tax_rate=tax_rate,
        img=img,
    )
    with context.lock:
        data_manager.append_product(context.workbook, record)
    _invalidate_cache(context, "products")
    log.info("Registered product '%s' (%s, cost=%s, rate=%s%%)", product_id, name, unit_cost, tax_rate)
    return record


def tax_policy_for(context: RuntimeContext) -> TaxPolicy:
    return build_tax_policy(context.settings.tax)


def open_cart(context: RuntimeContext, *, cashier: Optional[str] = None) -> CartAggregator:
    """Start a cashier session with a fresh cart over the current catalog."""

    catalog = _ensure_products_cache(context)["by_id"]
    cart = CartAggregator(
        catalog,
        tax_policy_for(context),
        cashier=cashier or context.settings.default_cashier,
    )
    log.info("Opened cart session %s for %s", cart.session_id, cart.cashier)
    return cart


def build_inventory_store(context: RuntimeContext) -> WorkbookInventoryStore:
    return WorkbookInventoryStore(context.workbook, context.settings.data_file, context.lock)


def build_sale_ledger(context: RuntimeContext) -> WorkbookSaleLedger:
    return WorkbookSaleLedger(context.workbook, context.settings.data_file, context.lock)


def build_checkout_coordinator(context: RuntimeContext) -> CheckoutCoordinator:
    """Wire a coordinator to the workbook-backed ledger and inventory store.

    The product cache is dropped whenever a checkout touches stock, so carts
    and catalog reads that follow see the new counts.
    """
    checkout_settings = context.settings.checkout
    return CheckoutCoordinator(
        build_sale_ledger(context),
        build_inventory_store(context),
        customer_policy=CustomerPolicy.from_settings(checkout_settings),
        persist_attempts=checkout_settings.persist_attempts,
        on_stock_change=lambda: _invalidate_cache(context, "products"),
    )


async def load_dashboard(context: RuntimeContext) -> Tuple[SalesSummary, List[RecentSaleRow]]:
    """Scan the full ledger and build the summary and the recent-sales table."""

    sales = await build_sale_ledger(context).scan_all()
    rates = context.settings.tax.rates
    summary = summarize(sales, rates=rates, report_timezone=context.settings.report_timezone)
    recent = recent_sales(sales, rates=rates)
    log.info("Dashboard loaded: %d sales, revenue %s", summary.count, summary.total_revenue)
    return summary, recent
