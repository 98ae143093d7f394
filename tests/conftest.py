"""Shared pytest fixtures and utilities for SmartTax POS tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from smarttax_pos import constants, core_logic, data_manager  # noqa: E402
from smarttax_pos.cart import CartAggregator  # noqa: E402
from smarttax_pos.tax_policy import BracketTaxPolicy, PerItemTaxPolicy  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_CASHIER = "cashier@example.com"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Tax]\n"
    "Strategy = {strategy}\n"
    "BracketThreshold = 2500\n"
    "LowerRate = 5\n"
    "UpperRate = 18\n\n"
    "[Checkout]\n"
    "RequireCustomerPhone = {require_phone}\n"
    "PhoneDigits = 10\n"
    "PersistAttempts = 3\n\n"
    "[Defaults]\n"
    "Cashier = {cashier}\n"
)

SAMPLE_PRODUCTS = (
    data_manager.ProductRow("p1", "Basmati Rice 5kg", Decimal("450"), 10, 5),
    data_manager.ProductRow("p2", "Pressure Cooker", Decimal("2500"), 4, 18),
    data_manager.ProductRow("p3", "Tea 250g", Decimal("100"), 3, 5),
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def catalog() -> dict[str, data_manager.ProductRow]:
    """Return the sample catalog keyed by product id."""

    return {product.product_id: product for product in SAMPLE_PRODUCTS}


@pytest.fixture
def per_item_policy() -> PerItemTaxPolicy:
    return PerItemTaxPolicy((5, 18))


@pytest.fixture
def bracket_policy() -> BracketTaxPolicy:
    return BracketTaxPolicy(Decimal("2500"), 5, 18)


@pytest.fixture
def cart_factory(catalog) -> Callable[..., CartAggregator]:
    """Factory returning a fresh cart over the sample catalog."""

    def _create_cart(policy, *product_ids: str) -> CartAggregator:
        cart = CartAggregator(catalog, policy, cashier=DEFAULT_CASHIER)
        for product_id in product_ids:
            cart.add_item(product_id)
        return cart

    return _create_cart


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        products: Iterable[data_manager.ProductRow] = SAMPLE_PRODUCTS,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, products=products, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        strategy: str = constants.TaxStrategy.PER_ITEM.value,
        require_phone: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                strategy=strategy,
                require_phone=str(require_phone).lower(),
                cashier=DEFAULT_CASHIER,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context
