"""Enumerations and schema shared across the shop ledger modules.

Centralises domain constants so that the record store, the ledgers, and the
command-line front end rely on a single source of truth for collection names,
column layouts, and the textual values persisted in the workbook.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

RECORD_ID = "RecordID"
SHOP_ID = "ShopID"
VERSION = "Version"


class ItemType(str, Enum):
    """Kinds of catalog entries. Only ``PRODUCT`` entries carry stock."""

    PRODUCT = "product"
    SERVICE = "service"


class LineItemType(str, Enum):
    """Kinds of sale lines. Only ``PRODUCT`` lines move stock."""

    PRODUCT = "product"
    SERVICE = "service"
    RECHARGE = "recharge"
    INSURANCE = "insurance"


class PaymentMode(str, Enum):
    """Payment channels accepted at the till."""

    CASH = "Cash"
    UPI = "UPI"
    CARD = "Card"


class BillType(str, Enum):
    """Posting kind of a sale header."""

    INVOICE = "Invoice"
    RETURN = "Return"


class PostingDirection(str, Enum):
    """Direction of a bank posting. Credits raise the balance, debits lower it."""

    CREDIT = "credit"
    DEBIT = "debit"


class AccountType(str, Enum):
    """Kinds of monetary accounts."""

    BANK = "bank"
    WALLET = "wallet"
    UPI = "upi"


class StockPolicy(str, Enum):
    """How a workflow reacts when a product cannot be resolved.

    ``STRICT`` rejects the whole operation before any write (sales).
    ``BEST_EFFORT`` keeps the primary record and skips the stock update
    (purchase receipts).
    """

    STRICT = "strict"
    BEST_EFFORT = "best_effort"


class Collection(str, Enum):
    """Enumerate the workbook sheets managed by the record store."""

    SHOP_MEMBERS = "ShopMembers"
    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    PURCHASES = "Purchases"
    ACCOUNTS = "BankAccounts"
    POSTINGS = "BankTransactions"
    CUSTOMERS = "Customers"
    SUPPLIERS = "Suppliers"
    CASH_CLOSINGS = "CashClosings"


COLLECTION_COLUMNS: Mapping[str, Sequence[str]] = {
    Collection.SHOP_MEMBERS.value: [RECORD_ID, "UserID", SHOP_ID, VERSION],
    Collection.PRODUCTS.value: [
        RECORD_ID,
        SHOP_ID,
        "Name",
        "CostPrice",
        "SellingPrice",
        "Stock",
        "Category",
        "ItemType",
        VERSION,
    ],
    Collection.SALES.value: [
        RECORD_ID,
        SHOP_ID,
        "InvoiceDate",
        "CustomerName",
        "MobileNumber",
        "TotalAmount",
        "PaidAmount",
        "BalanceAmount",
        "PaymentMode",
        "BillType",
        "DueDate",
        "CreatedAt",
        VERSION,
    ],
    Collection.SALE_ITEMS.value: [
        RECORD_ID,
        SHOP_ID,
        "SaleID",
        "ProductID",
        "ProductName",
        "Quantity",
        "Rate",
        "Discount",
        "Total",
        "ItemType",
        "ValidFrom",
        "ValidUntil",
        "PolicyNumber",
        VERSION,
    ],
    Collection.PURCHASES.value: [
        RECORD_ID,
        SHOP_ID,
        "Date",
        "InvoiceNo",
        "SupplierName",
        "ProductID",
        "ItemName",
        "Quantity",
        "Cost",
        "TotalAmount",
        VERSION,
    ],
    Collection.ACCOUNTS.value: [
        RECORD_ID,
        SHOP_ID,
        "AccountName",
        "BankName",
        "AccountNumber",
        "AccountType",
        "CurrentBalance",
        VERSION,
    ],
    Collection.POSTINGS.value: [
        RECORD_ID,
        SHOP_ID,
        "BankAccountID",
        "TransactionType",
        "Amount",
        "Description",
        "ReferenceNo",
        "TransactionDate",
        VERSION,
    ],
    Collection.CUSTOMERS.value: [RECORD_ID, SHOP_ID, "Name", "MobileNumber", "Email", VERSION],
    Collection.SUPPLIERS.value: [RECORD_ID, SHOP_ID, "Name", "MobileNumber", VERSION],
    Collection.CASH_CLOSINGS.value: [
        RECORD_ID,
        SHOP_ID,
        "ClosingDate",
        "OpeningCash",
        "SystemCash",
        "PhysicalCash",
        "Difference",
        "CreatedAt",
        VERSION,
    ],
}

# Column groups that must be unique within a collection.
UNIQUE_KEYS: Mapping[str, Sequence[Sequence[str]]] = {
    Collection.SHOP_MEMBERS.value: [["UserID"]],
    Collection.CUSTOMERS.value: [[SHOP_ID, "MobileNumber"]],
    Collection.SUPPLIERS.value: [[SHOP_ID, "Name"]],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "RECORD_ID",
    "SHOP_ID",
    "VERSION",
    "ItemType",
    "LineItemType",
    "PaymentMode",
    "BillType",
    "PostingDirection",
    "AccountType",
    "StockPolicy",
    "Collection",
    "COLLECTION_COLUMNS",
    "UNIQUE_KEYS",
]
