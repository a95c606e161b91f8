"""Account balance ledger.

``CurrentBalance`` on each account is a derived cache of its postings. It is
never recomputed on read; every posting and every reversal adjusts it in place
through :func:`post` and :func:`reverse`.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from . import data_manager, log
from .amounts import require_amount
from .concurrency import run_with_retry
from .constants import Collection, PostingDirection
from .context import RuntimeContext
from .errors import NotFoundError, ValidationError


ACCOUNTS = Collection.ACCOUNTS.value


@dataclass(frozen=True)
class BalanceMovement:
    """Outcome of one balance mutation."""

    account: data_manager.AccountRow
    previous_balance: Decimal

    @property
    def current_balance(self) -> Decimal:
        return self.account.current_balance

    @property
    def applied(self) -> Decimal:
        return self.account.current_balance - self.previous_balance


def coerce_direction(direction: Union[PostingDirection, str]) -> PostingDirection:
    """Accept a direction enum or its text value.

    Raises:
        ValidationError: If ``direction`` is neither ``credit`` nor ``debit``.
    """
    try:
        return PostingDirection(direction)
    except ValueError as exc:
        log.error("Unsupported posting direction: %s", direction)
        raise ValidationError(f"Unsupported posting direction: {direction}") from exc


def require_positive_amount(amount: Decimal) -> Decimal:
    """Validate that a posting amount is a finite number above zero."""
    return require_amount(amount, "Amount", allow_zero=False)


def signed_amount(direction: PostingDirection, amount: Decimal) -> Decimal:
    """Balance effect of a posting: positive for credits, negative for debits."""
    return amount if direction is PostingDirection.CREDIT else -amount


def get_account(context: RuntimeContext, account_id: str) -> data_manager.AccountRow:
    """Resolve an account of the current shop.

    Raises:
        NotFoundError: If the account is unknown or belongs to another shop.
    """
    try:
        record = context.store.get(ACCOUNTS, account_id)
    except data_manager.RecordNotFound as exc:
        log.warning("Account lookup failed for id '%s'", account_id)
        raise NotFoundError(f"Unknown account id: {account_id}") from exc
    account = data_manager.deserialize_account(record)
    if account.shop_id != context.shop_id():
        log.warning("Account '%s' belongs to another shop", account_id)
        raise NotFoundError(f"Unknown account id: {account_id}")
    return account


def post(
    context: RuntimeContext,
    account_id: str,
    direction: Union[PostingDirection, str],
    amount: Decimal,
) -> BalanceMovement:
    """Apply a posting: credits add ``amount``, debits subtract it."""
    direction = coerce_direction(direction)
    amount = require_positive_amount(amount)
    return _apply(context, account_id, signed_amount(direction, amount), action=f"post {direction.value}")


def reverse(
    context: RuntimeContext,
    account_id: str,
    direction: Union[PostingDirection, str],
    amount: Decimal,
) -> BalanceMovement:
    """Undo a posting: a credit reversal subtracts, a debit reversal adds."""
    direction = coerce_direction(direction)
    amount = require_positive_amount(amount)
    return _apply(context, account_id, -signed_amount(direction, amount), action=f"reverse {direction.value}")


def _apply(context: RuntimeContext, account_id: str, delta: Decimal, *, action: str) -> BalanceMovement:
    def attempt() -> BalanceMovement:
        account = get_account(context, account_id)
        record = context.store.update(
            ACCOUNTS,
            account.record_id,
            {"CurrentBalance": account.current_balance + delta},
            expected_version=account.version,
        )
        return BalanceMovement(
            account=data_manager.deserialize_account(record),
            previous_balance=account.current_balance,
        )

    movement = run_with_retry(
        attempt,
        attempts=context.settings.write_attempts,
        description=f"applying balance {action} to account {account_id}",
    )
    log.info(
        "Balance %s on account '%s': %s -> %s",
        action,
        account_id,
        movement.previous_balance,
        movement.current_balance,
    )
    return movement
