"""Tests for end-of-day cash closings."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from conftest import row_count
from shop_ledger import cash_closing, sales
from shop_ledger.constants import Collection, LineItemType, PaymentMode
from shop_ledger.errors import ValidationError


CLOSING_DAY = date(2024, 5, 10)


def _cash_sale(context, paid: str, *, mode: PaymentMode = PaymentMode.CASH, day: int = 10):
    header = sales.SaleHeader(
        paid_amount=Decimal(paid),
        payment_mode=mode,
        invoice_date=datetime(2024, 5, day, 12, 0, tzinfo=UTC),
    )
    line = sales.SaleLine(product_name="Recharge", quantity=1, rate=Decimal(paid), item_type=LineItemType.RECHARGE)
    sales.create_sale(context, header, [line])


def test_closing_records_shortfall_against_cash_sales(runtime_context):
    _cash_sale(runtime_context, "150")
    _cash_sale(runtime_context, "50")
    _cash_sale(runtime_context, "70", mode=PaymentMode.UPI)
    _cash_sale(runtime_context, "30", day=9)

    closing = cash_closing.record_cash_closing(
        runtime_context, Decimal("190"), opening_cash=Decimal("500"), day=CLOSING_DAY
    )

    assert closing.closing_date == "2024-05-10"
    assert closing.system_cash == Decimal("200")
    assert closing.physical_cash == Decimal("190")
    assert closing.opening_cash == Decimal("500")
    assert closing.difference == Decimal("-10")
    assert closing.shop_id == "SHOP-1"
    assert closing.created_at


def test_balanced_closing_has_zero_difference(runtime_context):
    _cash_sale(runtime_context, "80")

    closing = cash_closing.record_cash_closing(runtime_context, "80", day=CLOSING_DAY)

    assert closing.difference == Decimal("0")


@pytest.mark.parametrize(
    "physical, opening",
    [(Decimal("-1"), Decimal("0")), (Decimal("NaN"), Decimal("0")), (Decimal("10"), Decimal("Infinity")), ("lots", "0")],
)
def test_invalid_cash_figures_write_nothing(runtime_context, physical, opening):
    with pytest.raises(ValidationError):
        cash_closing.record_cash_closing(runtime_context, physical, opening_cash=opening, day=CLOSING_DAY)
    assert row_count(runtime_context, Collection.CASH_CLOSINGS) == 0


def test_closings_listed_latest_first_per_shop(runtime_context, other_shop_context):
    cash_closing.record_cash_closing(runtime_context, Decimal("0"), day=date(2024, 5, 8))
    cash_closing.record_cash_closing(runtime_context, Decimal("0"), day=date(2024, 5, 10))
    cash_closing.record_cash_closing(runtime_context, Decimal("0"), day=date(2024, 5, 9))
    cash_closing.record_cash_closing(other_shop_context, Decimal("0"), day=date(2024, 5, 11))

    days = [closing.closing_date for closing in cash_closing.list_cash_closings(runtime_context)]

    assert days == ["2024-05-10", "2024-05-09", "2024-05-08"]
    assert len(cash_closing.list_cash_closings(other_shop_context)) == 1
