"""Registration, maintenance and listing of the records the ledgers mutate.

Products and accounts are created here with their opening stock and opening
balance; afterwards only the ledgers change those numbers, so the update
functions below touch descriptive columns only. Customers and suppliers carry
uniqueness rules that the store enforces; violations come back as
:class:`~shop_ledger.errors.ConflictError` with a message fit for the till.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import balance_ledger, data_manager, log, stock_ledger
from .amounts import require_amount
from .concurrency import run_with_retry
from .constants import RECORD_ID, AccountType, Collection, ItemType
from .context import RuntimeContext
from .errors import ConflictError, NotFoundError, ValidationError


PRODUCTS = Collection.PRODUCTS.value
ACCOUNTS = Collection.ACCOUNTS.value
POSTINGS = Collection.POSTINGS.value
CUSTOMERS = Collection.CUSTOMERS.value
SUPPLIERS = Collection.SUPPLIERS.value

_CONFLICT_MESSAGES = {
    CUSTOMERS: "A customer with this mobile number already exists.",
    SUPPLIERS: "A supplier with this name already exists.",
}


def _require_text(value: Optional[str], label: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


def _insert(context: RuntimeContext, collection: str, row: Mapping[str, Any]) -> data_manager.Record:
    try:
        return context.store.insert(collection, context.tagged(row))
    except data_manager.UniqueViolation as exc:
        log.warning("Rejected duplicate %s row: %s", collection, exc)
        raise ConflictError(_CONFLICT_MESSAGES.get(collection, str(exc))) from exc


def _update(
    context: RuntimeContext,
    collection: str,
    record_id: str,
    load: Callable[[], Any],
    patch: Dict[str, Any],
) -> data_manager.Record:
    """Apply ``patch`` to a row re-read by ``load`` on every attempt."""

    def attempt() -> data_manager.Record:
        current = load()
        try:
            return context.store.update(collection, record_id, patch, expected_version=current.version)
        except data_manager.UniqueViolation as exc:
            log.warning("Rejected duplicate %s update: %s", collection, exc)
            raise ConflictError(_CONFLICT_MESSAGES.get(collection, str(exc))) from exc

    return run_with_retry(
        attempt,
        attempts=context.settings.write_attempts,
        description=f"updating {collection} row {record_id}",
    )


def _changes(**fields: Any) -> Dict[str, Any]:
    changes = {column: value for column, value in fields.items() if value is not None}
    if not changes:
        raise ValidationError("Nothing to update")
    return changes


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    cost_price: Decimal,
    selling_price: Decimal,
    stock: int = 0,
    category: Optional[str] = None,
    item_type: ItemType = ItemType.PRODUCT,
) -> data_manager.ProductRow:
    """Register a product or service. Services are always stored with zero stock."""
    name = _require_text(name, "Product name")
    item_type = ItemType(item_type)
    cost_price = require_amount(cost_price, "Cost price")
    selling_price = require_amount(selling_price, "Selling price")
    if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
        raise ValidationError("Opening stock must be a whole number of zero or more")
    if item_type is ItemType.SERVICE:
        stock = 0
    if _name_in_use(context, name):
        log.warning("Another product is already named '%s'; stock lookups by name will be ambiguous", name)
    record = _insert(
        context,
        PRODUCTS,
        {
            "Name": name,
            "CostPrice": cost_price,
            "SellingPrice": selling_price,
            "Stock": stock,
            "Category": category,
            "ItemType": item_type,
        },
    )
    product = data_manager.deserialize_product(record)
    log.info("Registered %s '%s' as '%s' (stock=%d)", item_type.value, name, product.record_id, stock)
    return product


def _name_in_use(context: RuntimeContext, name: str, *, exclude: Optional[str] = None) -> bool:
    return any(
        record[RECORD_ID] != exclude
        for record in context.store.query(PRODUCTS, context.shop_filters(Name=name))
    )


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    name: Optional[str] = None,
    cost_price: Optional[Decimal] = None,
    selling_price: Optional[Decimal] = None,
    category: Optional[str] = None,
) -> data_manager.ProductRow:
    """Change the name, prices or category of a product.

    Stock is not editable here; it moves only through the stock ledger.

    Raises:
        ValidationError: If no field is given or a value is invalid.
        NotFoundError: If the product is unknown or belongs to another shop.
    """
    changes = _changes(
        Name=_require_text(name, "Product name") if name is not None else None,
        CostPrice=require_amount(cost_price, "Cost price") if cost_price is not None else None,
        SellingPrice=require_amount(selling_price, "Selling price") if selling_price is not None else None,
        Category=category,
    )
    if "Name" in changes and _name_in_use(context, changes["Name"], exclude=product_id):
        log.warning("Another product is already named '%s'; stock lookups by name will be ambiguous", changes["Name"])
    record = _update(context, PRODUCTS, product_id, lambda: stock_ledger.get_product(context, product_id), changes)
    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(changes)))
    return data_manager.deserialize_product(record)


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product from the catalog.

    Sale items and purchases that referenced it keep their ``ProductID`` and
    the product name they were written with.

    Raises:
        NotFoundError: If the product is unknown or belongs to another shop.
    """
    product = stock_ledger.get_product(context, product_id)
    context.store.delete(PRODUCTS, product.record_id)
    log.info("Deleted product '%s' (%s) with stock %d", product.name, product.record_id, product.stock)


def list_products(context: RuntimeContext, *, item_type: Optional[ItemType] = None) -> List[data_manager.ProductRow]:
    """Return the shop's catalog ordered by name."""
    filters = context.shop_filters()
    if item_type is not None:
        filters["ItemType"] = ItemType(item_type).value
    records = context.store.query(PRODUCTS, filters, order="Name")
    return [data_manager.deserialize_product(record) for record in records]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def add_account(
    context: RuntimeContext,
    *,
    account_name: str,
    bank_name: str,
    account_type: AccountType = AccountType.BANK,
    opening_balance: Decimal = Decimal("0"),
    account_number: Optional[str] = None,
) -> data_manager.AccountRow:
    """Register a bank, wallet or UPI account with an opening balance.

    The opening balance may be negative (an overdrawn account) but must be a
    finite number.
    """
    record = _insert(
        context,
        ACCOUNTS,
        {
            "AccountName": _require_text(account_name, "Account name"),
            "BankName": _require_text(bank_name, "Bank name"),
            "AccountNumber": account_number,
            "AccountType": AccountType(account_type),
            "CurrentBalance": require_amount(opening_balance, "Opening balance", allow_negative=True),
        },
    )
    account = data_manager.deserialize_account(record)
    log.info("Registered account '%s' (%s)", account.account_name, account.record_id)
    return account


def update_account(
    context: RuntimeContext,
    account_id: str,
    *,
    account_name: Optional[str] = None,
    bank_name: Optional[str] = None,
    account_number: Optional[str] = None,
    account_type: Optional[AccountType] = None,
) -> data_manager.AccountRow:
    """Change the descriptive fields of an account.

    ``CurrentBalance`` is not editable here; it moves only through postings.
    """
    changes = _changes(
        AccountName=_require_text(account_name, "Account name") if account_name is not None else None,
        BankName=_require_text(bank_name, "Bank name") if bank_name is not None else None,
        AccountNumber=account_number,
        AccountType=AccountType(account_type) if account_type is not None else None,
    )
    record = _update(context, ACCOUNTS, account_id, lambda: balance_ledger.get_account(context, account_id), changes)
    log.info("Updated account '%s': %s", account_id, ", ".join(sorted(changes)))
    return data_manager.deserialize_account(record)


def delete_account(context: RuntimeContext, account_id: str, *, cascade: bool = False) -> int:
    """Remove an account.

    An account that still has postings is refused unless ``cascade`` is set.
    With ``cascade`` its postings are deleted too. No balance is adjusted:
    the balance they explained goes away with the account.

    Returns:
        int: Number of postings removed along with the account.

    Raises:
        NotFoundError: If the account is unknown or belongs to another shop.
        ConflictError: If postings reference the account and ``cascade`` is
            not set.
    """
    account = balance_ledger.get_account(context, account_id)
    referencing = context.store.query(POSTINGS, context.shop_filters(BankAccountID=account.record_id))
    if referencing and not cascade:
        log.warning("Refusing to delete account '%s' with %d posting(s)", account_id, len(referencing))
        raise ConflictError(
            f"Account '{account.account_name}' has {len(referencing)} posting(s); delete them first or cascade"
        )
    for posting in referencing:
        context.store.delete(POSTINGS, posting[RECORD_ID])
    context.store.delete(ACCOUNTS, account.record_id)
    log.info(
        "Deleted account '%s' (%s) holding %s and %d posting(s)",
        account.account_name,
        account.record_id,
        account.current_balance,
        len(referencing),
    )
    return len(referencing)


def list_accounts(context: RuntimeContext) -> List[data_manager.AccountRow]:
    records = context.store.query(ACCOUNTS, context.shop_filters(), order="AccountName")
    return [data_manager.deserialize_account(record) for record in records]


# ---------------------------------------------------------------------------
# Customers and suppliers
# ---------------------------------------------------------------------------


def get_party(context: RuntimeContext, collection: str, record_id: str) -> data_manager.PartyRow:
    """Load a customer or supplier of the current shop.

    Raises:
        NotFoundError: If the row is unknown or belongs to another shop.
    """
    try:
        record = context.store.get(collection, record_id)
    except data_manager.RecordNotFound as exc:
        raise NotFoundError(f"Unknown {collection} id: {record_id}") from exc
    party = data_manager.deserialize_party(record)
    if party.shop_id != context.shop_id():
        raise NotFoundError(f"Unknown {collection} id: {record_id}")
    return party


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    mobile_number: str,
    email: Optional[str] = None,
) -> data_manager.PartyRow:
    """Register a customer. Mobile numbers are unique within a shop."""
    record = _insert(
        context,
        CUSTOMERS,
        {
            "Name": _require_text(name, "Customer name"),
            "MobileNumber": _require_text(mobile_number, "Mobile number"),
            "Email": email,
        },
    )
    return data_manager.deserialize_party(record)


def update_customer(
    context: RuntimeContext,
    customer_id: str,
    *,
    name: Optional[str] = None,
    mobile_number: Optional[str] = None,
    email: Optional[str] = None,
) -> data_manager.PartyRow:
    changes = _changes(
        Name=_require_text(name, "Customer name") if name is not None else None,
        MobileNumber=_require_text(mobile_number, "Mobile number") if mobile_number is not None else None,
        Email=email,
    )
    record = _update(context, CUSTOMERS, customer_id, lambda: get_party(context, CUSTOMERS, customer_id), changes)
    return data_manager.deserialize_party(record)


def delete_customer(context: RuntimeContext, customer_id: str) -> None:
    """Remove a customer. Their sales keep the name and mobile number they carry."""
    customer = get_party(context, CUSTOMERS, customer_id)
    context.store.delete(CUSTOMERS, customer.record_id)
    log.info("Deleted customer '%s' (%s)", customer.name, customer.record_id)


def add_supplier(
    context: RuntimeContext,
    *,
    name: str,
    mobile_number: Optional[str] = None,
) -> data_manager.PartyRow:
    """Register a supplier. Supplier names are unique within a shop."""
    record = _insert(
        context,
        SUPPLIERS,
        {"Name": _require_text(name, "Supplier name"), "MobileNumber": mobile_number},
    )
    return data_manager.deserialize_party(record)


def update_supplier(
    context: RuntimeContext,
    supplier_id: str,
    *,
    name: Optional[str] = None,
    mobile_number: Optional[str] = None,
) -> data_manager.PartyRow:
    changes = _changes(
        Name=_require_text(name, "Supplier name") if name is not None else None,
        MobileNumber=mobile_number,
    )
    record = _update(context, SUPPLIERS, supplier_id, lambda: get_party(context, SUPPLIERS, supplier_id), changes)
    return data_manager.deserialize_party(record)


def delete_supplier(context: RuntimeContext, supplier_id: str) -> None:
    """Remove a supplier. Recorded purchases keep the supplier name."""
    supplier = get_party(context, SUPPLIERS, supplier_id)
    context.store.delete(SUPPLIERS, supplier.record_id)
    log.info("Deleted supplier '%s' (%s)", supplier.name, supplier.record_id)


def list_customers(context: RuntimeContext) -> List[data_manager.PartyRow]:
    records = context.store.query(CUSTOMERS, context.shop_filters(), order="Name")
    return [data_manager.deserialize_party(record) for record in records]


def list_suppliers(context: RuntimeContext) -> List[data_manager.PartyRow]:
    records = context.store.query(SUPPLIERS, context.shop_filters(), order="Name")
    return [data_manager.deserialize_party(record) for record in records]
