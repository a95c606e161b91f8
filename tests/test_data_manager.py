"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shop_ledger import constants, data_manager
from shop_ledger.constants import Collection


PRODUCTS = Collection.PRODUCTS.value
CUSTOMERS = Collection.CUSTOMERS.value


@pytest.fixture
def workbook_path(workbook_factory) -> Path:
    return workbook_factory()


@pytest.fixture
def store(workbook_path: Path) -> data_manager.WorkbookRecordStore:
    counter = iter(range(1, 1000))
    workbook = data_manager.open_workbook(workbook_path)
    return data_manager.WorkbookRecordStore(workbook, id_factory=lambda: f"R{next(counter)}")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=shop_ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.shop_name == "Test Shop"
    assert settings.user_id == bundle.user_id
    assert settings.write_attempts == 3
    assert settings.low_stock_threshold == 5


def test_parse_settings_requires_session_user():
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = x.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n")

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_parse_settings_defaults_ledger_section(tmp_path):
    """The [Ledger] section is optional."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = x.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n"
        "[Session]\nUserID = someone\n"
    )

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.write_attempts == data_manager.DEFAULT_WRITE_ATTEMPTS
    assert settings.low_stock_threshold == data_manager.DEFAULT_LOW_STOCK_THRESHOLD


def test_parse_settings_rejects_zero_write_attempts():
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = x.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n"
        "[Session]\nUserID = someone\n[Ledger]\nWriteAttempts = 0\n"
    )

    with pytest.raises(ValueError):
        data_manager.parse_settings(parser)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(workbook_path):
    workbook = data_manager.open_workbook(workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(constants.COLLECTION_COLUMNS).issubset(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(workbook_path, tmp_path):
    workbook = data_manager.open_workbook(workbook_path)
    destination = tmp_path / "copies" / "copy.xlsx"

    data_manager.save_workbook(workbook, destination)

    assert destination.exists()
    assert openpyxl.load_workbook(destination).sheetnames == workbook.sheetnames


def test_load_workbook_snapshot_digest_tracks_file(workbook_path):
    workbook, digest = data_manager.load_workbook_snapshot(workbook_path)

    assert isinstance(workbook, OpenpyxlWorkbook)
    assert digest == data_manager.file_digest(workbook_path)

    workbook[PRODUCTS].append(["P1", "SHOP-1", "Tea"])
    data_manager.save_workbook(workbook, workbook_path)

    assert data_manager.file_digest(workbook_path) != digest


def test_file_digest_of_missing_file_is_none(tmp_path):
    assert data_manager.file_digest(tmp_path / "missing.xlsx") is None


def test_lookup_shop_id_reads_membership_sheet(workbook_path):
    workbook = data_manager.open_workbook(workbook_path)

    assert data_manager.lookup_shop_id(workbook, "owner@example.com") == "SHOP-1"
    assert data_manager.lookup_shop_id(workbook, "stranger@example.com") is None
    assert data_manager.lookup_shop_id(workbook, None) is None


def test_locate_row_unknown_column_raises(workbook_path):
    workbook = data_manager.open_workbook(workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, PRODUCTS, "Colour", "red")


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


def test_insert_allocates_identifier_and_version(store):
    record = store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea", "Stock": 4})

    assert record["RecordID"] == "R1"
    assert record["Version"] == 1
    assert store.get(PRODUCTS, "R1")["Name"] == "Tea"


def test_insert_normalizes_enums_and_dates(store):
    record = store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea", "ItemType": constants.ItemType.SERVICE})

    assert record["ItemType"] == "service"
    assert type(record["ItemType"]) is str


def test_insert_unknown_column_raises(store):
    with pytest.raises(KeyError):
        store.insert(PRODUCTS, {"Colour": "red"})


def test_insert_many_rejects_whole_batch_on_duplicate(store):
    """A batch with an internal duplicate writes nothing."""

    rows = [
        {"ShopID": "SHOP-1", "Name": "Asha", "MobileNumber": "999"},
        {"ShopID": "SHOP-1", "Name": "Ravi", "MobileNumber": "999"},
    ]

    with pytest.raises(data_manager.UniqueViolation):
        store.insert_many(CUSTOMERS, rows)
    assert store.query(CUSTOMERS) == []


def test_unique_keys_are_scoped_by_shop(store):
    store.insert(CUSTOMERS, {"ShopID": "SHOP-1", "Name": "Asha", "MobileNumber": "999"})
    store.insert(CUSTOMERS, {"ShopID": "SHOP-2", "Name": "Asha", "MobileNumber": "999"})

    assert len(store.query(CUSTOMERS, {"MobileNumber": "999"})) == 2


def test_query_filters_and_orders(store):
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea", "Stock": 4})
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Coffee", "Stock": 9})
    store.insert(PRODUCTS, {"ShopID": "SHOP-2", "Name": "Milk", "Stock": 1})

    names = [row["Name"] for row in store.query(PRODUCTS, {"ShopID": "SHOP-1"}, order="Name")]
    stocks = [row["Stock"] for row in store.query(PRODUCTS, order="-Stock")]

    assert names == ["Coffee", "Tea"]
    assert stocks == [9, 4, 1]


def test_update_bumps_version(store):
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea", "Stock": 4})

    updated = store.update(PRODUCTS, "R1", {"Stock": 7}, expected_version=1)

    assert updated["Version"] == 2
    stored = store.get(PRODUCTS, "R1")
    assert stored["Stock"] == 7
    assert stored["Version"] == 2


def test_update_with_stale_version_raises(store):
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea", "Stock": 4})
    store.update(PRODUCTS, "R1", {"Stock": 5})

    with pytest.raises(data_manager.VersionMismatch) as excinfo:
        store.update(PRODUCTS, "R1", {"Stock": 6}, expected_version=1)

    assert excinfo.value.actual == 2
    assert store.get(PRODUCTS, "R1")["Stock"] == 5


def test_update_rejects_managed_columns(store):
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea"})
    with pytest.raises(KeyError):
        store.update(PRODUCTS, "R1", {"Version": 9})


def test_update_missing_row_raises(store):
    with pytest.raises(data_manager.RecordNotFound):
        store.update(PRODUCTS, "nope", {"Stock": 1})


def test_delete_removes_row(store):
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea"})
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Coffee"})

    store.delete(PRODUCTS, "R1")

    assert [row["RecordID"] for row in store.query(PRODUCTS)] == ["R2"]
    with pytest.raises(data_manager.RecordNotFound):
        store.delete(PRODUCTS, "R1")


def test_records_survive_save_and_reload(store, workbook_path):
    store.insert(PRODUCTS, {"ShopID": "SHOP-1", "Name": "Tea", "Stock": 4, "SellingPrice": Decimal("12.5")})
    data_manager.save_workbook(store.workbook, workbook_path)

    reloaded = data_manager.WorkbookRecordStore(data_manager.open_workbook(workbook_path))
    product = data_manager.deserialize_product(reloaded.get(PRODUCTS, "R1"))

    assert product.stock == 4
    assert product.selling_price == Decimal("12.5")
    assert product.version == 1


# ---------------------------------------------------------------------------
# Deserializers
# ---------------------------------------------------------------------------


def test_deserialize_product_normalizes_numbers():
    product = data_manager.deserialize_product(
        {
            "RecordID": "P1",
            "ShopID": "SHOP-1",
            "Name": "Tea",
            "CostPrice": 2.5,
            "SellingPrice": None,
            "Stock": 3.0,
            "Category": None,
            "ItemType": None,
            "Version": 2,
        }
    )

    assert product.cost_price == Decimal("2.5")
    assert product.selling_price == Decimal("0.00")
    assert product.stock == 3
    assert product.item_type == "product"
    assert product.category is None


def test_deserialize_posting_reads_direction_and_amount():
    posting = data_manager.deserialize_posting(
        {"RecordID": "T1", "ShopID": "SHOP-1", "BankAccountID": "A1", "TransactionType": "debit", "Amount": 30}
    )

    assert posting.direction == "debit"
    assert posting.amount == Decimal("30")
    assert posting.account_id == "A1"
