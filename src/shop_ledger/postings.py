"""Bank postings: creation and reversal on delete.

A posting row and its account's ``CurrentBalance`` live in different sheets.
Creation inserts the posting before moving the balance, and deletion moves
the balance back before removing the posting, so an interrupted run always
leaves a posting row behind that explains the balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from . import balance_ledger, data_manager, log
from .compensation import CompensationLog
from .constants import Collection, PostingDirection
from .context import RuntimeContext, utc_now
from .errors import NotFoundError, PartialCompletionError


POSTINGS = Collection.POSTINGS.value


@dataclass(frozen=True)
class PostingResult:
    posting: data_manager.PostingRow
    movement: balance_ledger.BalanceMovement


def get_posting(context: RuntimeContext, posting_id: str) -> data_manager.PostingRow:
    """Load a posting of the current shop.

    Raises:
        NotFoundError: If the posting is unknown, already deleted, or belongs
            to another shop.
    """
    try:
        record = context.store.get(POSTINGS, posting_id)
    except data_manager.RecordNotFound as exc:
        log.warning("Posting lookup failed for id '%s'", posting_id)
        raise NotFoundError(f"Unknown posting id: {posting_id}") from exc
    posting = data_manager.deserialize_posting(record)
    if posting.shop_id != context.shop_id():
        raise NotFoundError(f"Unknown posting id: {posting_id}")
    return posting


def record_posting(
    context: RuntimeContext,
    account_id: str,
    direction: Union[PostingDirection, str],
    amount: Decimal,
    *,
    description: Optional[str] = None,
    reference_no: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
) -> PostingResult:
    """Insert a posting and apply it to its account balance.

    Raises:
        ValidationError: On a non-positive amount or unknown direction.
        NotFoundError: If the account does not exist.
        PartialCompletionError: If the balance update fails after the posting
            was inserted.
    """
    direction = balance_ledger.coerce_direction(direction)
    amount = balance_ledger.require_positive_amount(amount)
    balance_ledger.get_account(context, account_id)

    record = context.store.insert(
        POSTINGS,
        context.tagged(
            {
                "BankAccountID": account_id,
                "TransactionType": direction,
                "Amount": amount,
                "Description": description,
                "ReferenceNo": reference_no,
                "TransactionDate": transaction_date or utc_now(),
            }
        ),
    )
    posting = data_manager.deserialize_posting(record)

    compensation = CompensationLog("record_posting")
    compensation.record(
        "insert_posting",
        f"posting {posting.record_id}",
        lambda: context.store.delete(POSTINGS, posting.record_id),
    )
    try:
        movement = balance_ledger.post(context, account_id, direction, amount)
    except Exception as exc:
        log.error("Posting '%s' inserted but balance update failed: %s", posting.record_id, exc)
        raise PartialCompletionError(
            "record_posting",
            failed_step="post_balance",
            completed_steps=compensation.completed_steps,
            record_id=posting.record_id,
            compensation=compensation,
        ) from exc

    log.info(
        "Recorded %s posting '%s' of %s on account '%s'",
        direction.value,
        posting.record_id,
        amount,
        account_id,
    )
    return PostingResult(posting=posting, movement=movement)


def delete_posting(context: RuntimeContext, posting_id: str) -> balance_ledger.BalanceMovement:
    """Reverse a posting's balance effect, then delete the posting row.

    Deleting the same posting twice fails the second time with
    :class:`NotFoundError` and leaves the balance untouched.

    Raises:
        NotFoundError: If the posting or its account does not exist.
        PartialCompletionError: If the row cannot be deleted after the balance
            was reversed. Compensating re-applies the posting.
    """
    posting = get_posting(context, posting_id)
    movement = balance_ledger.reverse(context, posting.account_id, posting.direction, posting.amount)

    compensation = CompensationLog("delete_posting")
    compensation.record(
        "reverse_balance",
        f"reversed {posting.direction} {posting.amount} on account {posting.account_id}",
        lambda: balance_ledger.post(context, posting.account_id, posting.direction, posting.amount),
    )
    try:
        context.store.delete(POSTINGS, posting.record_id)
    except Exception as exc:
        log.error("Balance reversed but posting '%s' could not be deleted: %s", posting_id, exc)
        raise PartialCompletionError(
            "delete_posting",
            failed_step="delete_posting",
            completed_steps=compensation.completed_steps,
            record_id=posting.record_id,
            compensation=compensation,
        ) from exc

    log.info("Deleted posting '%s' and reversed its balance effect", posting_id)
    return movement


def list_postings(context: RuntimeContext, account_id: Optional[str] = None) -> List[data_manager.PostingRow]:
    """Return postings of the shop, newest first, optionally for one account."""
    filters = context.shop_filters()
    if account_id is not None:
        filters["BankAccountID"] = account_id
    records = context.store.query(POSTINGS, filters, order="-TransactionDate")
    return [data_manager.deserialize_posting(record) for record in records]
