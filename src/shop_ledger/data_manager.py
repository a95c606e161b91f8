"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the shop
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Record operations: the :class:`WorkbookRecordStore` exposes insert, batch
   insert, update, delete and filtered reads against named collections. Each
   call touches a single sheet; there is no multi-sheet commit.
"""


from __future__ import annotations

import configparser
import hashlib
import io
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    RECORD_ID,
    SHOP_ID,
    UNIQUE_KEYS,
    VERSION,
    Collection,
)


CONFIG_FILE_NAME = "config.ini"
DEFAULT_WRITE_ATTEMPTS = 3
DEFAULT_LOW_STOCK_THRESHOLD = 5

Record = Dict[str, Any]


class RecordNotFound(KeyError):
    """Raised when no row carries the requested ``RecordID``."""


class UniqueViolation(Exception):
    """Raised when a write would duplicate a unique column group."""

    def __init__(self, collection: str, columns: Sequence[str], values: Sequence[Any]) -> None:
        self.collection = collection
        self.columns = tuple(columns)
        self.values = tuple(values)
        super().__init__(
            f"Duplicate value for {collection}({', '.join(self.columns)}): {self.values}"
        )


class VersionMismatch(Exception):
    """Raised when ``expected_version`` no longer matches the stored row."""

    def __init__(self, collection: str, record_id: str, expected: int, actual: int) -> None:
        self.collection = collection
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{collection} row {record_id} is at version {actual}, expected {expected}"
        )


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    user_id: str
    write_attempts: int = DEFAULT_WRITE_ATTEMPTS
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    record_id: str
    shop_id: str
    name: str
    cost_price: Decimal
    selling_price: Decimal
    stock: int
    category: Optional[str]
    item_type: str
    version: int


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    record_id: str
    shop_id: str
    invoice_date: str
    customer_name: Optional[str]
    mobile_number: Optional[str]
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    payment_mode: str
    bill_type: str
    due_date: Optional[str]
    created_at: str


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    record_id: str
    sale_id: str
    product_id: Optional[str]
    product_name: str
    quantity: int
    rate: Decimal
    discount: Decimal
    total: Decimal
    item_type: str
    valid_from: Optional[str]
    valid_until: Optional[str]
    policy_number: Optional[str]


@dataclass(frozen=True)
class PurchaseRow:
    """In-memory view of a row from the ``Purchases`` sheet."""

    record_id: str
    date: str
    invoice_no: Optional[str]
    supplier_name: str
    product_id: Optional[str]
    item_name: str
    quantity: int
    cost: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class AccountRow:
    """In-memory view of a row from the ``BankAccounts`` sheet."""

    record_id: str
    shop_id: str
    account_name: str
    bank_name: str
    account_number: Optional[str]
    account_type: str
    current_balance: Decimal
    version: int


@dataclass(frozen=True)
class PostingRow:
    """In-memory view of a row from the ``BankTransactions`` sheet."""

    record_id: str
    shop_id: str
    account_id: str
    direction: str
    amount: Decimal
    description: Optional[str]
    reference_no: Optional[str]
    transaction_date: str


@dataclass(frozen=True)
class PartyRow:
    """In-memory view of a ``Customers`` or ``Suppliers`` row."""

    record_id: str
    shop_id: str
    name: str
    mobile_number: Optional[str]
    email: Optional[str]
    version: int


@dataclass(frozen=True)
class CashClosingRow:
    """In-memory view of a row from the ``CashClosings`` sheet."""

    record_id: str
    shop_id: str
    closing_date: str
    opening_cash: Decimal
    system_cash: Decimal
    physical_cash: Decimal
    difference: Decimal
    created_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Session]`` entries are mandatory. The ``[Ledger]``
    section is optional and falls back to the module defaults. Relative
    ``DataFile`` entries are anchored to ``base_path`` (or the current working
    directory) and resolved.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a ``[Ledger]`` option is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        user_id = parser.get("Session", "UserID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    write_attempts = parser.getint("Ledger", "WriteAttempts", fallback=DEFAULT_WRITE_ATTEMPTS)
    low_stock_threshold = parser.getint(
        "Ledger", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD
    )
    if write_attempts < 1:
        raise ValueError("Ledger.WriteAttempts must be at least 1")
    if low_stock_threshold < 0:
        raise ValueError("Ledger.LowStockThreshold must be zero or positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        user_id=user_id,
        write_attempts=write_attempts,
        low_stock_threshold=low_stock_threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the shop workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def load_workbook_snapshot(data_file: Path) -> Tuple[Workbook, str]:
    """Open the workbook together with the digest of the bytes it was read from.

    The digest lets a later save detect that another process rewrote the file
    in the meantime.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    payload = data_file.read_bytes()
    wb = openpyxl.load_workbook(io.BytesIO(payload))
    return wb, hashlib.sha256(payload).hexdigest()


def file_digest(path: Path) -> Optional[str]:
    """Return the SHA-256 of a file's bytes, or ``None`` when it is missing."""

    path = Path(path).expanduser().resolve()
    if not path.exists():
        return None
    return hashlib.sha256(path.read_bytes()).hexdigest()


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Tuple[Workbook, str]:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return load_workbook_snapshot(data_file)


def header_map(workbook: Workbook, collection: str) -> Dict[str, int]:
    """Map each header title of ``collection`` to its 1-based column index."""

    sheet = workbook[collection]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_records(workbook: Workbook, collection: str) -> Iterable[Record]:
    """Yield every populated row of ``collection`` as a header-keyed dict.

    The header row and fully empty rows are skipped.
    """

    sheet = workbook[collection]
    headers = [cell.value for cell in sheet[1]]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield {header: value for header, value in zip(headers, raw) if header is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value == key_value:
            return row_idx

    return None


def lookup_shop_id(workbook: Workbook, user_id: Optional[str]) -> Optional[str]:
    """Return the shop a user belongs to, or ``None`` when unassigned.

    This is the workbook rendition of the ``get_shop_id_for_current_user``
    lookup: the ``ShopMembers`` sheet maps each user to one shop.
    """

    if not user_id:
        return None
    for record in iter_records(workbook, Collection.SHOP_MEMBERS.value):
        if record.get("UserID") == user_id:
            shop_id = record.get(SHOP_ID)
            return str(shop_id) if shop_id is not None else None
    return None


def _new_record_id() -> str:
    return uuid.uuid4().hex


def _sort_key(column: str) -> Callable[[Record], tuple]:
    def key(record: Record) -> tuple:
        value = record.get(column)
        return (value is None, value if value is not None else 0)

    return key


class WorkbookRecordStore:
    """Keyed record access over the sheets of one workbook.

    Every collection sheet carries ``RecordID`` and ``Version`` columns. Inserts
    allocate the identifier and start the version at 1; updates bump it. An
    update may pass ``expected_version`` to make the write conditional on the
    row not having changed since it was read.

    Only single-sheet operations are offered. A caller that writes to several
    collections gets no rollback when a later write fails.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        unique_keys: Mapping[str, Sequence[Sequence[str]]] = UNIQUE_KEYS,
        id_factory: Callable[[], str] = _new_record_id,
    ) -> None:
        self.workbook = workbook
        self.unique_keys = unique_keys
        self.id_factory = id_factory

    def get(self, collection: str, record_id: str) -> Record:
        """Return the row with ``record_id``.

        Raises:
            RecordNotFound: If no row carries ``record_id``.
        """
        for record in iter_records(self.workbook, collection):
            if record.get(RECORD_ID) == record_id:
                return record
        raise RecordNotFound(f"{collection} row not found: {record_id}")

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
    ) -> List[Record]:
        """Return rows whose columns equal every value in ``filters``.

        ``order`` names a column to sort by; a leading ``-`` sorts descending.
        Blank values sort last in ascending order.
        """
        filters = dict(filters or {})
        self._require_columns(collection, filters)
        rows = [
            record
            for record in iter_records(self.workbook, collection)
            if all(record.get(column) == value for column, value in filters.items())
        ]
        if order:
            descending = order.startswith("-")
            column = order.lstrip("-")
            self._require_columns(collection, [column])
            rows.sort(key=_sort_key(column), reverse=descending)
        return rows

    def insert(self, collection: str, row: Mapping[str, Any]) -> Record:
        """Append one row and return it with its allocated identifier."""
        return self.insert_many(collection, [row])[0]

    def insert_many(self, collection: str, rows: Sequence[Mapping[str, Any]]) -> List[Record]:
        """Append a batch of rows to one collection.

        The whole batch is validated (columns and unique keys) before the first
        row is written, so a rejected batch leaves the sheet untouched.

        Raises:
            KeyError: If a row names a column the sheet does not have.
            UniqueViolation: If a row duplicates a unique column group.
        """
        columns = header_map(self.workbook, collection)
        prepared: List[Record] = []
        for row in rows:
            self._require_columns(collection, row, columns=columns)
            record: Record = {header: None for header in columns}
            record.update({column: _to_cell(value) for column, value in row.items()})
            record[RECORD_ID] = self.id_factory()
            record[VERSION] = 1
            prepared.append(record)

        existing = list(iter_records(self.workbook, collection))
        for index, record in enumerate(prepared):
            self._check_unique(collection, record, [*existing, *prepared[:index]])

        sheet = self.workbook[collection]
        ordered_headers = sorted(columns, key=columns.get)
        for record in prepared:
            sheet.append([record.get(header) for header in ordered_headers])
        log.debug("Inserted %d row(s) into %s", len(prepared), collection)
        return [dict(record) for record in prepared]

    def update(
        self,
        collection: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Record:
        """Overwrite selected columns of one row and bump its version.

        Raises:
            RecordNotFound: If the row does not exist.
            VersionMismatch: If ``expected_version`` differs from the stored one.
            UniqueViolation: If the patched row duplicates a unique column group.
            KeyError: If ``patch`` names an unknown or reserved column.
        """
        if RECORD_ID in patch or VERSION in patch:
            raise KeyError(f"{RECORD_ID} and {VERSION} are managed by the store")
        columns = header_map(self.workbook, collection)
        self._require_columns(collection, patch, columns=columns)

        row_index = locate_row(self.workbook, collection, RECORD_ID, record_id)
        if row_index is None:
            raise RecordNotFound(f"{collection} row not found: {record_id}")

        current = self.get(collection, record_id)
        current_version = int(current.get(VERSION) or 0)
        if expected_version is not None and current_version != expected_version:
            raise VersionMismatch(collection, record_id, expected_version, current_version)

        updated = dict(current)
        updated.update({column: _to_cell(value) for column, value in patch.items()})
        updated[VERSION] = current_version + 1
        others = [
            record
            for record in iter_records(self.workbook, collection)
            if record.get(RECORD_ID) != record_id
        ]
        self._check_unique(collection, updated, others)

        sheet = self.workbook[collection]
        for field in [*patch, VERSION]:
            sheet.cell(row=row_index, column=columns[field], value=updated[field])
        return updated

    def delete(self, collection: str, record_id: str) -> None:
        """Remove one row.

        Raises:
            RecordNotFound: If the row does not exist.
        """
        row_index = locate_row(self.workbook, collection, RECORD_ID, record_id)
        if row_index is None:
            raise RecordNotFound(f"{collection} row not found: {record_id}")
        self.workbook[collection].delete_rows(row_index, 1)

    def _require_columns(
        self,
        collection: str,
        names: Iterable[str],
        *,
        columns: Optional[Mapping[str, int]] = None,
    ) -> None:
        columns = columns if columns is not None else header_map(self.workbook, collection)
        for name in names:
            if name not in columns:
                raise KeyError(f"Unknown {collection} field: {name}")

    def _check_unique(self, collection: str, record: Mapping[str, Any], others: Iterable[Mapping[str, Any]]) -> None:
        groups = self.unique_keys.get(collection, ())
        if not groups:
            return
        others = list(others)
        for group in groups:
            values = tuple(record.get(column) for column in group)
            if any(value is None for value in values):
                continue
            for other in others:
                if tuple(other.get(column) for column in group) == values:
                    raise UniqueViolation(collection, group, values)


def _to_cell(value: Any) -> Any:
    """Normalize Python values into something a worksheet cell can hold."""

    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _decimal(raw: Any, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _int(raw: Any) -> int:
    return int(Decimal(str(raw))) if raw is not None else 0


def _optional_str(raw: Any) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_product(record: Mapping[str, Any]) -> ProductRow:
    """Convert a ``Products`` record into a strongly typed row.

    Numeric values are normalized into :class:`~decimal.Decimal` and ``int``
    instances so values that went through an Excel round trip as floats
    compare cleanly.
    """

    return ProductRow(
        record_id=str(record[RECORD_ID]),
        shop_id=str(record.get(SHOP_ID)),
        name=str(record.get("Name") or ""),
        cost_price=_decimal(record.get("CostPrice")),
        selling_price=_decimal(record.get("SellingPrice")),
        stock=_int(record.get("Stock")),
        category=_optional_str(record.get("Category")),
        item_type=str(record.get("ItemType") or "product"),
        version=_int(record.get(VERSION)),
    )


def deserialize_sale(record: Mapping[str, Any]) -> SaleRow:
    """Convert a ``Sales`` record into a strongly typed row."""

    return SaleRow(
        record_id=str(record[RECORD_ID]),
        shop_id=str(record.get(SHOP_ID)),
        invoice_date=str(record.get("InvoiceDate") or ""),
        customer_name=_optional_str(record.get("CustomerName")),
        mobile_number=_optional_str(record.get("MobileNumber")),
        total_amount=_decimal(record.get("TotalAmount")),
        paid_amount=_decimal(record.get("PaidAmount")),
        balance_amount=_decimal(record.get("BalanceAmount")),
        payment_mode=str(record.get("PaymentMode") or ""),
        bill_type=str(record.get("BillType") or ""),
        due_date=_optional_str(record.get("DueDate")),
        created_at=str(record.get("CreatedAt") or ""),
    )


def deserialize_sale_item(record: Mapping[str, Any]) -> SaleItemRow:
    """Convert a ``SaleItems`` record into a strongly typed row."""

    return SaleItemRow(
        record_id=str(record[RECORD_ID]),
        sale_id=str(record.get("SaleID")),
        product_id=_optional_str(record.get("ProductID")),
        product_name=str(record.get("ProductName") or ""),
        quantity=_int(record.get("Quantity")),
        rate=_decimal(record.get("Rate")),
        discount=_decimal(record.get("Discount")),
        total=_decimal(record.get("Total")),
        item_type=str(record.get("ItemType") or "product"),
        valid_from=_optional_str(record.get("ValidFrom")),
        valid_until=_optional_str(record.get("ValidUntil")),
        policy_number=_optional_str(record.get("PolicyNumber")),
    )


def deserialize_purchase(record: Mapping[str, Any]) -> PurchaseRow:
    """Convert a ``Purchases`` record into a strongly typed row."""

    return PurchaseRow(
        record_id=str(record[RECORD_ID]),
        date=str(record.get("Date") or ""),
        invoice_no=_optional_str(record.get("InvoiceNo")),
        supplier_name=str(record.get("SupplierName") or ""),
        product_id=_optional_str(record.get("ProductID")),
        item_name=str(record.get("ItemName") or ""),
        quantity=_int(record.get("Quantity")),
        cost=_decimal(record.get("Cost")),
        total_amount=_decimal(record.get("TotalAmount")),
    )


def deserialize_account(record: Mapping[str, Any]) -> AccountRow:
    """Convert a ``BankAccounts`` record into a strongly typed row."""

    return AccountRow(
        record_id=str(record[RECORD_ID]),
        shop_id=str(record.get(SHOP_ID)),
        account_name=str(record.get("AccountName") or ""),
        bank_name=str(record.get("BankName") or ""),
        account_number=_optional_str(record.get("AccountNumber")),
        account_type=str(record.get("AccountType") or "bank"),
        current_balance=_decimal(record.get("CurrentBalance")),
        version=_int(record.get(VERSION)),
    )


def deserialize_posting(record: Mapping[str, Any]) -> PostingRow:
    """Convert a ``BankTransactions`` record into a strongly typed row."""

    return PostingRow(
        record_id=str(record[RECORD_ID]),
        shop_id=str(record.get(SHOP_ID)),
        account_id=str(record.get("BankAccountID")),
        direction=str(record.get("TransactionType") or ""),
        amount=_decimal(record.get("Amount")),
        description=_optional_str(record.get("Description")),
        reference_no=_optional_str(record.get("ReferenceNo")),
        transaction_date=str(record.get("TransactionDate") or ""),
    )


def deserialize_party(record: Mapping[str, Any]) -> PartyRow:
    """Convert a ``Customers`` or ``Suppliers`` record into a typed row."""

    return PartyRow(
        record_id=str(record[RECORD_ID]),
        shop_id=str(record.get(SHOP_ID)),
        name=str(record.get("Name") or ""),
        mobile_number=_optional_str(record.get("MobileNumber")),
        email=_optional_str(record.get("Email")),
        version=_int(record.get(VERSION)),
    )


def deserialize_cash_closing(record: Mapping[str, Any]) -> CashClosingRow:
    """Convert a ``CashClosings`` record into a typed row."""

    return CashClosingRow(
        record_id=str(record[RECORD_ID]),
        shop_id=str(record.get(SHOP_ID)),
        closing_date=str(record.get("ClosingDate") or ""),
        opening_cash=_decimal(record.get("OpeningCash")),
        system_cash=_decimal(record.get("SystemCash")),
        physical_cash=_decimal(record.get("PhysicalCash")),
        difference=_decimal(record.get("Difference")),
        created_at=str(record.get("CreatedAt") or ""),
    )
