"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from smarttax_pos import constants, data_manager
from setup_excel import create_master_workbook, main as setup_main


def _parser(text: str) -> configparser.ConfigParser:
    parser = configparser.ConfigParser()
    parser.read_string(text)
    return parser


MINIMAL_CONFIG = (
    "[System]\nDataFile = data.xlsx\nStoreName = Corner Store\nSchemaVersion = 3.0.0\n"
    "[Defaults]\nCashier = till-1\n"
)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text(MINIMAL_CONFIG)
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_defaults_optional_sections(tmp_path):
    """Without [Tax], [Checkout] or [Reporting] the defaults apply."""

    settings = data_manager.parse_settings(_parser(MINIMAL_CONFIG), base_path=tmp_path)

    assert settings.data_file == (tmp_path / "data.xlsx").resolve()
    assert settings.store_name == "Corner Store"
    assert settings.default_cashier == "till-1"
    assert settings.tax.strategy is constants.TaxStrategy.PER_ITEM
    assert settings.tax.rates == (5, 18)
    assert settings.tax.bracket_threshold == Decimal("2500")
    assert settings.checkout.phone_digits == 10
    assert settings.checkout.persist_attempts == 3
    assert settings.report_timezone == "UTC"


def test_parse_settings_reads_optional_sections(tmp_path):
    text = MINIMAL_CONFIG + (
        "[Tax]\nStrategy = Bracket\nBracketThreshold = 1000.50\nLowerRate = 3\nUpperRate = 12\n"
        "[Checkout]\nRequireCustomerName = yes\nPhoneDigits = 8\nPersistAttempts = 5\n"
        "[Reporting]\nTimezone = Asia/Kolkata\n"
    )

    settings = data_manager.parse_settings(_parser(text), base_path=tmp_path)

    assert settings.tax.strategy is constants.TaxStrategy.BRACKET
    assert settings.tax.bracket_threshold == Decimal("1000.50")
    assert settings.tax.rates == (3, 12)
    assert settings.checkout.require_customer_name is True
    assert settings.checkout.require_customer_phone is False
    assert settings.checkout.phone_digits == 8
    assert settings.checkout.persist_attempts == 5
    assert settings.report_timezone == "Asia/Kolkata"


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()


def test_parse_settings_requires_expected_sections():
    with pytest.raises(KeyError):
        data_manager.parse_settings(_parser("[System]\nDataFile = x.xlsx\n"))


@pytest.mark.parametrize(
    "tax_section",
    [
        "Strategy = flat\n",
        "BracketThreshold = lots\n",
        "LowerRate = 18\nUpperRate = 5\n",
        "LowerRate = -1\n",
    ],
)
def test_parse_settings_rejects_invalid_tax_section(tax_section):
    with pytest.raises(ValueError):
        data_manager.parse_settings(_parser(MINIMAL_CONFIG + "[Tax]\n" + tax_section))


def test_parse_settings_rejects_zero_persist_attempts():
    with pytest.raises(ValueError):
        data_manager.parse_settings(_parser(MINIMAL_CONFIG + "[Checkout]\nPersistAttempts = 0\n"))


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_create_master_workbook_writes_bold_headers(tmp_path):
    path = create_master_workbook(tmp_path / "wb.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == ["Products", "Sales"]
    header = workbook["Products"][1]
    assert [cell.value for cell in header] == list(data_manager.PRODUCT_COLUMNS)
    assert all(cell.font.bold for cell in header)
    assert [cell.value for cell in workbook["Sales"][1]] == list(data_manager.SALE_COLUMNS)


def test_create_master_workbook_refuses_overwrite(tmp_path):
    path = create_master_workbook(tmp_path / "wb.xlsx")

    with pytest.raises(FileExistsError):
        create_master_workbook(path)


def test_setup_script_creates_workbook_from_config(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text(MINIMAL_CONFIG)

    assert setup_main(["--config", str(config_path)]) == 0
    assert (tmp_path / "data.xlsx").exists()
    assert setup_main(["--config", str(config_path)]) == 1


def test_open_workbook_returns_openpyxl_instance(workbook_factory):
    assert isinstance(data_manager.open_workbook(workbook_factory()), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_creates_parent_directories(workbook_factory, tmp_path):
    workbook = data_manager.open_workbook(workbook_factory())
    destination = tmp_path / "copies" / "nested" / "wb.xlsx"

    data_manager.save_workbook(workbook, destination)

    assert destination.exists()


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_iter_products_yields_product_rows(workbook_factory):
    workbook = data_manager.open_workbook(workbook_factory())

    products = list(data_manager.iter_products(workbook))

    assert [product.product_id for product in products] == ["p1", "p2", "p3"]
    assert products[0].unit_cost == Decimal("450")
    assert products[1].tax_rate == 18
    assert products[2].stock == 3


def test_update_product_modifies_existing_row(workbook_factory):
    workbook = data_manager.open_workbook(workbook_factory())

    data_manager.update_product(workbook, "p2", field_values={"Qnty": 1})

    stock = {product.product_id: product.stock for product in data_manager.iter_products(workbook)}
    assert stock == {"p1": 10, "p2": 1, "p3": 3}


def test_update_product_missing_raises(workbook_factory):
    workbook = data_manager.open_workbook(workbook_factory())

    with pytest.raises(KeyError):
        data_manager.update_product(workbook, "ghost", field_values={"Qnty": 1})
    with pytest.raises(KeyError):
        data_manager.update_product(workbook, "p1", field_values={"Colour": "red"})


def test_locate_row_matches_numeric_ids(workbook_factory):
    """Excel hands ids back as numbers; lookups compare them as text."""

    workbook = data_manager.open_workbook(workbook_factory(products=()))
    workbook["Products"].append([1001, "Soap", 25, 5, 18, None])

    assert data_manager.locate_row(workbook, "Products", "ProductID", "1001") == 2
    assert data_manager.locate_row(workbook, "Products", "ProductID", "1002") is None


def test_append_and_iter_sales(workbook_factory):
    workbook = data_manager.open_workbook(workbook_factory())
    record = data_manager.SaleRow(
        sale_id="S1",
        idempotency_key="k1",
        timestamp_iso="2024-03-01T10:00:00+00:00",
        cashier="till-1",
        document={"total": Decimal("105.50"), "items": []},
    )

    data_manager.append_sale(workbook, record)
    sales = list(data_manager.iter_sales(workbook))

    assert len(sales) == 1
    assert sales[0].sale_id == "S1"
    assert sales[0].document == {"total": Decimal("105.5"), "items": []}


def test_deserialize_product_pads_short_rows():
    product = data_manager.deserialize_product(("p9", "Salt", 12.5, 4))

    assert product == data_manager.ProductRow("p9", "Salt", Decimal("12.5"), 4, 0, None)


def test_decode_document_tolerates_garbage():
    assert data_manager.decode_document(None) == {}
    assert data_manager.decode_document("not json") == {}
    assert data_manager.decode_document("[1, 2]") == {}


def test_encode_document_handles_decimals_and_datetimes():
    encoded = data_manager.encode_document({"total": Decimal("1.10"), "at": datetime(2024, 1, 1, tzinfo=UTC)})

    assert data_manager.decode_document(encoded) == {"at": "2024-01-01T00:00:00+00:00", "total": Decimal("1.1")}
