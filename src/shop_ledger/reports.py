"""Read-side summaries over the shop's sales, stock and accounts.

Nothing here writes. Figures are recomputed from the stored rows on every
call, except account balances which are read from the cached
``CurrentBalance`` column maintained by the balance ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from . import catalog, log, purchases, sales
from .constants import ItemType, PaymentMode
from .context import RuntimeContext, utc_now
from .data_manager import ProductRow, PurchaseRow, SaleRow


@dataclass(frozen=True)
class SalesSummary:
    total_sales: Decimal
    today_collection: Decimal
    total_dues: Decimal


def _sale_day(sale: SaleRow) -> Optional[date]:
    try:
        return datetime.fromisoformat(sale.invoice_date).date()
    except ValueError:
        log.warning("Sale '%s' has an unreadable invoice date: %r", sale.record_id, sale.invoice_date)
        return None


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, Decimal("0"))


def sales_summary(context: RuntimeContext, *, now: Optional[datetime] = None) -> SalesSummary:
    """Total sales, today's collection and outstanding dues.

    "Today" is the calendar day of ``now`` (UTC by default), compared against
    each sale's invoice date.
    """
    today = (now or utc_now()).date()
    all_sales = sales.list_sales(context)
    return SalesSummary(
        total_sales=_sum(sale.total_amount for sale in all_sales),
        today_collection=_sum(sale.paid_amount for sale in all_sales if _sale_day(sale) == today),
        total_dues=_sum(sale.balance_amount for sale in all_sales),
    )


def customer_due(context: RuntimeContext, mobile_number: Optional[str]) -> Decimal:
    """Outstanding balance across every sale billed to ``mobile_number``."""
    if not mobile_number:
        return Decimal("0")
    return _sum(
        sale.balance_amount for sale in sales.list_sales(context) if sale.mobile_number == mobile_number
    )


def low_stock_products(context: RuntimeContext, *, threshold: Optional[int] = None) -> List[ProductRow]:
    """Stock-tracked products below ``threshold``, lowest stock first.

    The threshold defaults to ``Ledger.LowStockThreshold`` from the config.
    """
    if threshold is None:
        threshold = context.settings.low_stock_threshold
    products = catalog.list_products(context, item_type=ItemType.PRODUCT)
    return sorted(
        (product for product in products if product.stock < threshold),
        key=lambda product: (product.stock, product.name),
    )


def total_balance(context: RuntimeContext) -> Decimal:
    return _sum(account.current_balance for account in catalog.list_accounts(context))


def system_cash_for_day(context: RuntimeContext, day: Optional[date] = None) -> Decimal:
    """Cash taken at the till on ``day``: the figure a cash closing checks against."""
    day = day or utc_now().date()
    return _sum(
        sale.paid_amount
        for sale in sales.list_sales(context)
        if sale.payment_mode == PaymentMode.CASH.value and _sale_day(sale) == day
    )


def supplier_purchase_history(context: RuntimeContext, supplier_name: str) -> List[PurchaseRow]:
    return purchases.list_purchases(context, supplier_name=supplier_name)


def customer_purchase_history(context: RuntimeContext, mobile_number: Optional[str]) -> List[SaleRow]:
    """Sales billed to ``mobile_number``, newest invoice first."""
    if not mobile_number:
        return []
    return [sale for sale in sales.list_sales(context) if sale.mobile_number == mobile_number]
