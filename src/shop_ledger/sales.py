"""Sale transaction orchestrator.

A sale is written in three steps against three collections: the ``Sales``
header, the batch of ``SaleItems`` rows, and one stock decrement per
stock-tracked product line. The store offers no commit spanning them, so
:func:`create_sale` validates everything it can before the first write and,
once writing has started, records every committed step in a
:class:`~shop_ledger.compensation.CompensationLog`. A failure after the header
is written surfaces as :class:`~shop_ledger.errors.PartialCompletionError`;
the caller may then finish the sale by hand or call
:func:`discard_partial_sale`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from . import data_manager, log, stock_ledger
from .amounts import require_amount
from .compensation import CompensationLog
from .constants import BillType, Collection, LineItemType, PaymentMode, StockPolicy
from .context import RuntimeContext, utc_now
from .errors import NotFoundError, PartialCompletionError, ValidationError


SALES = Collection.SALES.value
SALE_ITEMS = Collection.SALE_ITEMS.value

# Sale lines resolve products strictly: an unknown or ambiguous product rejects
# the sale before anything is written.
SALE_STOCK_POLICY = StockPolicy.STRICT


@dataclass(frozen=True)
class SaleLine:
    """One line of a sale as entered at the till."""

    product_name: str
    quantity: int
    rate: Decimal
    discount: Decimal = Decimal("0")
    item_type: LineItemType = LineItemType.PRODUCT
    product_id: Optional[str] = None
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None
    policy_number: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.quantity * self.rate - self.discount


@dataclass(frozen=True)
class SaleHeader:
    """Header fields of a sale."""

    paid_amount: Decimal
    payment_mode: PaymentMode = PaymentMode.CASH
    bill_type: BillType = BillType.INVOICE
    customer_name: Optional[str] = None
    mobile_number: Optional[str] = None
    due_date: Optional[date] = None
    invoice_date: Optional[datetime] = None
    total_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleResult:
    """A fully written sale."""

    sale: data_manager.SaleRow
    items: Tuple[data_manager.SaleItemRow, ...]
    movements: Tuple[stock_ledger.StockMovement, ...] = field(default=())


@dataclass(frozen=True)
class _PlannedLine:
    line: SaleLine
    product: Optional[data_manager.ProductRow]

    @property
    def moves_stock(self) -> bool:
        return (
            self.line.item_type is LineItemType.PRODUCT
            and self.product is not None
            and stock_ledger.is_stock_tracked(self.product)
        )


def validate_line(line: SaleLine) -> SaleLine:
    """Reject a malformed sale line before anything is written.

    Returns:
        SaleLine: ``line`` with its rate and discount converted to checked
            decimals.

    Raises:
        ValidationError: On a blank name, a non-positive quantity, a rate or
            discount that is negative or not a finite number, a negative line
            total, an unknown item type, or a validity window that ends before
            it starts.
    """
    if not line.product_name or not line.product_name.strip():
        raise ValidationError("Sale line needs a product name")
    if not isinstance(line.item_type, LineItemType):
        raise ValidationError(f"Unsupported sale line type: {line.item_type}")
    stock_ledger.require_positive_quantity(line.quantity)
    line = replace(
        line,
        rate=require_amount(line.rate, f"Rate on '{line.product_name}'"),
        discount=require_amount(line.discount, f"Discount on '{line.product_name}'"),
    )
    if line.total < Decimal("0"):
        log.error("Negative line total for '%s': %s", line.product_name, line.total)
        raise ValidationError(f"Line total for '{line.product_name}' is negative")
    if line.valid_from and line.valid_until and line.valid_until < line.valid_from:
        raise ValidationError(f"Validity window of '{line.product_name}' ends before it starts")
    return line


def compute_totals(header: SaleHeader, lines: Sequence[SaleLine]) -> Tuple[Decimal, Decimal, Decimal]:
    """Return ``(total, paid, balance)`` for a sale.

    The balance is ``total - paid`` clamped at zero. A header that states a
    total must agree with the sum of its lines.

    Raises:
        ValidationError: On a paid amount that is negative or not a finite
            number, or a header total that differs from the line totals.
    """
    total = sum((line.total for line in lines), Decimal("0"))
    if header.total_amount is not None and require_amount(header.total_amount, "Sale total") != total:
        raise ValidationError(
            f"Sale total {header.total_amount} does not match the line totals {total}"
        )
    paid = require_amount(header.paid_amount, "Paid amount")
    balance = max(Decimal("0"), total - paid)
    return total, paid, balance


def _resolve_product(context: RuntimeContext, line: SaleLine) -> Optional[data_manager.ProductRow]:
    if line.item_type is not LineItemType.PRODUCT:
        return None
    return stock_ledger.resolve_product(
        context, line.product_name, product_id=line.product_id, policy=SALE_STOCK_POLICY
    )


def _plan(context: RuntimeContext, lines: Sequence[SaleLine]) -> List[_PlannedLine]:
    if not lines:
        raise ValidationError("A sale needs at least one line")
    checked = [validate_line(line) for line in lines]
    return [_PlannedLine(line=line, product=_resolve_product(context, line)) for line in checked]


def _header_row(header: SaleHeader, total: Decimal, paid: Decimal, balance: Decimal, now: datetime) -> Dict[str, object]:
    return {
        "InvoiceDate": header.invoice_date or now,
        "CustomerName": header.customer_name,
        "MobileNumber": header.mobile_number,
        "TotalAmount": total,
        "PaidAmount": paid,
        "BalanceAmount": balance,
        "PaymentMode": header.payment_mode,
        "BillType": header.bill_type,
        "DueDate": header.due_date,
        "CreatedAt": now,
    }


def _item_row(planned: _PlannedLine, sale_id: str) -> Dict[str, object]:
    line = planned.line
    return {
        "SaleID": sale_id,
        "ProductID": planned.product.record_id if planned.product is not None else line.product_id,
        "ProductName": line.product_name,
        "Quantity": line.quantity,
        "Rate": line.rate,
        "Discount": line.discount,
        "Total": line.total,
        "ItemType": line.item_type,
        "ValidFrom": line.valid_from,
        "ValidUntil": line.valid_until,
        "PolicyNumber": line.policy_number,
    }


def create_sale(context: RuntimeContext, header: SaleHeader, lines: Sequence[SaleLine]) -> SaleResult:
    """Write a sale header, its line items and the matching stock decrements.

    Steps:

    1. Validate the header and every line, and resolve each product line to
       a product of the shop. Nothing is written if this fails.
    2. Insert the ``Sales`` header.
    3. Insert all ``SaleItems`` rows in one batch.
    4. Decrement stock once per product line whose product is stock-tracked,
       with floor semantics. Service, recharge and insurance lines are skipped.

    Returns:
        SaleResult: The header, its items and the stock movements applied.

    Raises:
        ValidationError: If the input is rejected in step 1.
        NotFoundError: If a product line references an unknown product.
        ConflictError: If a product line names an ambiguous product.
        PartialCompletionError: If step 3 or 4 fails after the header was
            written. The error carries the compensation log.
    """
    context.shop_id()
    planned = _plan(context, lines)
    total, paid, balance = compute_totals(header, [plan.line for plan in planned])
    now = utc_now()

    compensation = CompensationLog("create_sale")
    store = context.store

    sale_record = store.insert(SALES, context.tagged(_header_row(header, total, paid, balance, now)))
    sale = data_manager.deserialize_sale(sale_record)
    compensation.record(
        "insert_header",
        f"sale {sale.record_id}",
        lambda: store.delete(SALES, sale.record_id),
    )
    log.info("Inserted sale header '%s' (total=%s, paid=%s)", sale.record_id, total, paid)

    def fail(step: str, exc: Exception) -> PartialCompletionError:
        log.error(
            "Sale '%s' incomplete: step '%s' failed after %s: %s",
            sale.record_id,
            step,
            ", ".join(compensation.completed_steps),
            exc,
        )
        return PartialCompletionError(
            "create_sale",
            failed_step=step,
            completed_steps=compensation.completed_steps,
            record_id=sale.record_id,
            compensation=compensation,
        )

    try:
        item_records = store.insert_many(
            SALE_ITEMS,
            [context.tagged(_item_row(plan, sale.record_id)) for plan in planned],
        )
    except Exception as exc:
        raise fail("insert_items", exc) from exc
    items = tuple(data_manager.deserialize_sale_item(record) for record in item_records)
    item_ids = [item.record_id for item in items]
    compensation.record(
        "insert_items",
        f"{len(item_ids)} item(s) of sale {sale.record_id}",
        lambda: _delete_items(context, item_ids),
    )

    movements: List[stock_ledger.StockMovement] = []
    for plan in planned:
        if not plan.moves_stock:
            continue
        product_id = plan.product.record_id
        step = f"decrement_stock:{product_id}"
        try:
            movement = stock_ledger.decrement(context, product_id, plan.line.quantity)
        except Exception as exc:
            raise fail(step, exc) from exc
        movements.append(movement)
        if movement.applied:
            compensation.record(
                step,
                f"removed {-movement.applied} of product {product_id}",
                _restock(context, product_id, -movement.applied),
            )

    log.info(
        "Recorded sale '%s' with %d item(s) and %d stock movement(s)",
        sale.record_id,
        len(items),
        len(movements),
    )
    return SaleResult(sale=sale, items=items, movements=tuple(movements))


def _restock(context: RuntimeContext, product_id: str, quantity: int):
    return lambda: stock_ledger.increment(context, product_id, quantity)


def _delete_items(context: RuntimeContext, item_ids: Sequence[str]) -> None:
    for item_id in item_ids:
        try:
            context.store.delete(SALE_ITEMS, item_id)
        except data_manager.RecordNotFound:
            log.debug("Sale item '%s' already removed", item_id)


def discard_partial_sale(error: PartialCompletionError) -> Tuple[str, ...]:
    """Undo what a failed :func:`create_sale` committed.

    Stock removed by the run is put back, the inserted items are deleted and
    the header is deleted last.

    Returns:
        tuple[str, ...]: Names of the steps that were undone.
    """
    if error.operation != "create_sale":
        raise ValidationError(f"Cannot discard a partial '{error.operation}' as a sale")
    log.warning("Discarding partial sale '%s'", error.record_id)
    return error.compensation.compensate()


def get_sale_with_items(context: RuntimeContext, sale_id: str) -> SaleResult:
    """Load a sale of the current shop together with its items.

    Raises:
        NotFoundError: If the sale is unknown or belongs to another shop.
    """
    try:
        record = context.store.get(SALES, sale_id)
    except data_manager.RecordNotFound as exc:
        raise NotFoundError(f"Unknown sale id: {sale_id}") from exc
    sale = data_manager.deserialize_sale(record)
    if sale.shop_id != context.shop_id():
        raise NotFoundError(f"Unknown sale id: {sale_id}")
    items = context.store.query(SALE_ITEMS, context.shop_filters(SaleID=sale_id))
    return SaleResult(sale=sale, items=tuple(data_manager.deserialize_sale_item(item) for item in items))


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return the shop's sales, newest invoice first."""
    records = context.store.query(SALES, context.shop_filters(), order="-InvoiceDate")
    return [data_manager.deserialize_sale(record) for record in records]
