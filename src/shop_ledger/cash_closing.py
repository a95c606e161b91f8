"""End-of-day cash closing.

A closing records the cash the till should hold according to the day's cash
sales next to the cash actually counted, and the difference between them.
Closings are a log: they are written once and never adjusted.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional

from . import data_manager, log, reports
from .amounts import require_amount
from .constants import Collection
from .context import RuntimeContext, utc_now


CASH_CLOSINGS = Collection.CASH_CLOSINGS.value


def record_cash_closing(
    context: RuntimeContext,
    physical_cash: Decimal,
    *,
    opening_cash: Decimal = Decimal("0"),
    day: Optional[date] = None,
) -> data_manager.CashClosingRow:
    """Close the till for ``day`` (today by default).

    ``system_cash`` is the paid amount of the day's cash sales and
    ``difference = physical_cash - system_cash``; a negative difference is a
    shortfall.

    Raises:
        ValidationError: If either cash figure is negative or not a finite
            number.
    """
    physical = require_amount(physical_cash, "Physical cash")
    opening = require_amount(opening_cash, "Opening cash")
    now = utc_now()
    day = day or now.date()
    system = reports.system_cash_for_day(context, day)
    difference = physical - system
    record = context.store.insert(
        CASH_CLOSINGS,
        context.tagged(
            {
                "ClosingDate": day,
                "OpeningCash": opening,
                "SystemCash": system,
                "PhysicalCash": physical,
                "Difference": difference,
                "CreatedAt": now,
            }
        ),
    )
    closing = data_manager.deserialize_cash_closing(record)
    if difference:
        log.warning("Cash closing for %s is off by %s (system %s, counted %s)", day, difference, system, physical)
    else:
        log.info("Cash closing for %s balanced at %s", day, system)
    return closing


def list_cash_closings(context: RuntimeContext) -> List[data_manager.CashClosingRow]:
    """Return the shop's cash closings, latest closing day first."""
    records = context.store.query(CASH_CLOSINGS, context.shop_filters(), order="-ClosingDate")
    return [data_manager.deserialize_cash_closing(record) for record in records]
