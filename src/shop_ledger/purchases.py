"""Purchase receipt handler.

A receipt inserts one ``Purchases`` row and raises stock on the matching
product. Product resolution is best-effort: when no product can be matched
the purchase is still recorded and stock is left alone. Sales resolve
strictly instead; the two policies are deliberately different.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from . import data_manager, log, stock_ledger
from .amounts import require_amount
from .compensation import CompensationLog
from .constants import Collection, StockPolicy
from .context import RuntimeContext, utc_now
from .errors import PartialCompletionError, ValidationError


PURCHASES = Collection.PURCHASES.value

PURCHASE_STOCK_POLICY = StockPolicy.BEST_EFFORT


@dataclass(frozen=True)
class PurchaseReceipt:
    """A recorded purchase and the stock movement it caused, if any."""

    purchase: data_manager.PurchaseRow
    movement: Optional[stock_ledger.StockMovement]

    @property
    def stock_updated(self) -> bool:
        return self.movement is not None


def receive_purchase(
    context: RuntimeContext,
    supplier_name: str,
    item_name: str,
    quantity: int,
    unit_cost: Decimal,
    *,
    product_id: Optional[str] = None,
    invoice_no: Optional[str] = None,
    purchase_date: Optional[date] = None,
) -> PurchaseReceipt:
    """Record a purchase and increment the purchased product's stock.

    ``total = quantity * unit_cost``. The product is looked up by
    ``product_id`` when given, otherwise by a unique ``item_name``.

    Raises:
        ValidationError: On a blank supplier or item, a non-positive quantity
            or a unit cost that is negative or not a finite number. Nothing is
            written.
        PartialCompletionError: If the stock increment fails after the
            purchase row was inserted.
    """
    if not supplier_name or not supplier_name.strip():
        raise ValidationError("Purchase needs a supplier name")
    if not item_name or not item_name.strip():
        raise ValidationError("Purchase needs an item name")
    stock_ledger.require_positive_quantity(quantity)
    cost = require_amount(unit_cost, "Unit cost")
    total = quantity * cost

    product = stock_ledger.resolve_product(
        context, item_name, product_id=product_id, policy=PURCHASE_STOCK_POLICY
    )

    record = context.store.insert(
        PURCHASES,
        context.tagged(
            {
                "Date": purchase_date or utc_now(),
                "InvoiceNo": invoice_no,
                "SupplierName": supplier_name,
                "ProductID": product.record_id if product is not None else None,
                "ItemName": item_name,
                "Quantity": quantity,
                "Cost": cost,
                "TotalAmount": total,
            }
        ),
    )
    purchase = data_manager.deserialize_purchase(record)
    log.info(
        "Recorded purchase '%s' of %d x '%s' from '%s' (total=%s)",
        purchase.record_id,
        quantity,
        item_name,
        supplier_name,
        total,
    )
    if product is None:
        return PurchaseReceipt(purchase=purchase, movement=None)

    compensation = CompensationLog("receive_purchase")
    compensation.record(
        "insert_purchase",
        f"purchase {purchase.record_id}",
        lambda: context.store.delete(PURCHASES, purchase.record_id),
    )
    try:
        movement = stock_ledger.increment(context, product.record_id, quantity)
    except Exception as exc:
        log.error("Purchase '%s' recorded but stock increment failed: %s", purchase.record_id, exc)
        raise PartialCompletionError(
            "receive_purchase",
            failed_step=f"increment_stock:{product.record_id}",
            completed_steps=compensation.completed_steps,
            record_id=purchase.record_id,
            compensation=compensation,
        ) from exc
    return PurchaseReceipt(purchase=purchase, movement=movement)


def list_purchases(context: RuntimeContext, *, supplier_name: Optional[str] = None) -> List[data_manager.PurchaseRow]:
    """Return purchases of the shop, newest first, optionally for one supplier."""
    filters = context.shop_filters()
    if supplier_name is not None:
        filters["SupplierName"] = supplier_name
    records = context.store.query(PURCHASES, filters, order="-Date")
    return [data_manager.deserialize_purchase(record) for record in records]
