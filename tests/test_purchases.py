"""Tests for purchase receipts and their best-effort stock updates."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import product_stock, row_count
from shop_ledger import purchases, stock_ledger
from shop_ledger.constants import Collection
from shop_ledger.errors import PartialCompletionError, ValidationError


def test_purchase_increments_matching_product(runtime_context, make_product):
    product = make_product("Biscuit", stock=4)

    receipt = purchases.receive_purchase(runtime_context, "Acme Foods", "Biscuit", 6, Decimal("22.5"))

    assert receipt.stock_updated
    assert receipt.purchase.total_amount == Decimal("135.0")
    assert receipt.purchase.product_id == product.record_id
    assert product_stock(runtime_context, product.record_id) == 10


def test_unknown_item_keeps_purchase_without_stock(runtime_context):
    receipt = purchases.receive_purchase(runtime_context, "Acme Foods", "Mystery box", 2, Decimal("10"))

    assert not receipt.stock_updated
    assert receipt.purchase.product_id is None
    assert row_count(runtime_context, Collection.PURCHASES) == 1


def test_ambiguous_item_keeps_purchase_without_stock(runtime_context, make_product):
    first = make_product("Biscuit", stock=1)
    second = make_product("Biscuit", stock=1)

    receipt = purchases.receive_purchase(runtime_context, "Acme Foods", "Biscuit", 5, Decimal("10"))

    assert not receipt.stock_updated
    assert product_stock(runtime_context, first.record_id) == 1
    assert product_stock(runtime_context, second.record_id) == 1


def test_product_id_disambiguates(runtime_context, make_product):
    make_product("Biscuit", stock=1)
    second = make_product("Biscuit", stock=1)

    receipt = purchases.receive_purchase(
        runtime_context, "Acme Foods", "Biscuit", 5, Decimal("10"), product_id=second.record_id
    )

    assert receipt.movement.current_stock == 6


@pytest.mark.parametrize(
    "supplier, item, quantity, cost",
    [
        ("", "Biscuit", 1, Decimal("1")),
        ("Acme", " ", 1, Decimal("1")),
        ("Acme", "Biscuit", 0, Decimal("1")),
        ("Acme", "Biscuit", 1, Decimal("-1")),
        ("Acme", "Biscuit", 1, Decimal("NaN")),
        ("Acme", "Biscuit", 1, Decimal("Infinity")),
        ("Acme", "Biscuit", 1, "cheap"),
    ],
)
def test_invalid_purchase_writes_nothing(runtime_context, make_product, supplier, item, quantity, cost):
    product = make_product("Biscuit", stock=4)

    with pytest.raises(ValidationError):
        purchases.receive_purchase(runtime_context, supplier, item, quantity, cost)
    assert row_count(runtime_context, Collection.PURCHASES) == 0
    assert product_stock(runtime_context, product.record_id) == 4


def test_increment_failure_reports_partial_purchase(runtime_context, make_product, monkeypatch):
    make_product("Biscuit", stock=1)

    def failing_increment(*_args, **_kwargs):
        raise OSError("sheet locked")

    monkeypatch.setattr(stock_ledger, "increment", failing_increment)

    with pytest.raises(PartialCompletionError) as excinfo:
        purchases.receive_purchase(runtime_context, "Acme Foods", "Biscuit", 5, Decimal("10"))

    error = excinfo.value
    assert error.completed_steps == ("insert_purchase",)
    assert row_count(runtime_context, Collection.PURCHASES) == 1

    error.compensation.compensate()

    assert row_count(runtime_context, Collection.PURCHASES) == 0


def test_list_purchases_filters_by_supplier(runtime_context):
    purchases.receive_purchase(runtime_context, "Acme Foods", "Tea", 1, Decimal("1"))
    purchases.receive_purchase(runtime_context, "Bharat Traders", "Tea", 1, Decimal("1"))

    history = purchases.list_purchases(runtime_context, supplier_name="Acme Foods")

    assert [p.supplier_name for p in history] == ["Acme Foods"]
