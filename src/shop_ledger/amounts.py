"""Conversion of user-entered money values into checked decimals."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from . import log
from .errors import ValidationError


def require_amount(
    value: Any,
    label: str = "Amount",
    *,
    allow_zero: bool = True,
    allow_negative: bool = False,
) -> Decimal:
    """Return ``value`` as a finite :class:`~decimal.Decimal`.

    Text, ``NaN`` and infinities are rejected, as are negative values unless
    ``allow_negative`` is set and zero when ``allow_zero`` is cleared.

    Raises:
        ValidationError: If ``value`` is not an acceptable amount.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{label} is not a number: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        log.error("%s validation failed: %r", label, value)
        raise ValidationError(f"{label} is not a number: {value!r}") from exc
    if not amount.is_finite():
        log.error("%s validation failed: %r", label, value)
        raise ValidationError(f"{label} must be a finite number")
    if amount < 0 and not allow_negative:
        raise ValidationError(f"{label} must be zero or positive")
    if amount == 0 and not allow_zero:
        raise ValidationError(f"{label} must be greater than zero")
    return amount
