"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the ledger modules. Keeping the CLI thin
ensures the same parser configuration can be reused by tests, scripts, or any
alternative front-end.
"""

from __future__ import annotations

import argparse
import io
import sys
from contextlib import redirect_stdout
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import cash_closing, catalog, log, postings, purchases, reports, sales, stock_ledger
from .amounts import require_amount
from .constants import AccountType, BillType, ItemType, LineItemType, PaymentMode, PostingDirection
from .context import (
    RuntimeContext,
    ensure_schema_version,
    load_runtime_context as _load_context,
    persist_context,
    refresh_context,
)
from .errors import ConflictError, NotFoundError, PartialCompletionError, StaleWorkbookError, ValidationError


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_NOT_FOUND = 3
EXIT_CONFLICT = 4
EXIT_PARTIAL = 5


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Command-line tools for the Shop Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini above the working directory).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Act as this user instead of the one named in config.ini.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and postings."""
    specs = {
        "add-product": _spec("add-product", "Register a product or service.", _add_product_args, run_add_product),
        "add-account": _spec("add-account", "Register a bank, wallet or UPI account.", _add_account_args, run_add_account),
        "sale": _spec("sale", "Record a sale with its line items.", _sale_args, run_sale),
        "purchase": _spec("purchase", "Record a purchase and restock the item.", _purchase_args, run_purchase),
        "post": _spec("post", "Record a credit or debit on an account.", _post_args, run_post),
        "delete-posting": _spec(
            "delete-posting", "Delete a posting and reverse its balance effect.", _delete_posting_args, run_delete_posting
        ),
        "adjust-stock": _spec("adjust-stock", "Correct a product's stock by hand.", _adjust_args, run_adjust_stock),
        "delete-account": _spec(
            "delete-account", "Delete an account, optionally with its postings.", _delete_account_args, run_delete_account
        ),
        "close-cash": _spec("close-cash", "Record the day's cash closing.", _close_cash_args, run_close_cash),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": _spec("stock", "Display current stock levels.", _no_args, run_stock_report, mutates=False),
        "low-stock": _spec("low-stock", "Display products below the stock threshold.", _low_stock_args, run_low_stock_report, mutates=False),
        "balances": _spec("balances", "Display account balances.", _no_args, run_balances_report, mutates=False),
        "postings": _spec("postings", "Display postings, optionally for one account.", _postings_args, run_postings_report, mutates=False),
        "summary": _spec("summary", "Display sales, collection and dues totals.", _no_args, run_summary_report, mutates=False),
        "closings": _spec("closings", "Display cash closings, latest first.", _no_args, run_closings_report, mutates=False),
        "customer-history": _spec(
            "customer-history", "Display the sales billed to a mobile number.", _customer_history_args, run_customer_history, mutates=False
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _spec(
    name: str,
    help_text: str,
    add_arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[RuntimeContext, argparse.Namespace], int],
    *,
    mutates: bool = True,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def _no_args(parser: argparse.ArgumentParser) -> None:
    return None


def _add_product_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--cost-price", required=True)
    parser.add_argument("--selling-price", required=True)
    parser.add_argument("--stock", type=int, default=0)
    parser.add_argument("--category", default=None)
    parser.add_argument("--service", action="store_true", help="Register a service without stock.")


def _add_account_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account-name", required=True)
    parser.add_argument("--bank-name", required=True)
    parser.add_argument("--account-type", choices=[member.value for member in AccountType], default=AccountType.BANK.value)
    parser.add_argument("--opening-balance", default="0")
    parser.add_argument("--account-number", default=None)


def _sale_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--line",
        action="append",
        required=True,
        dest="lines",
        help="NAME:QTY:RATE[:DISCOUNT[:TYPE]]; repeat once per line.",
    )
    parser.add_argument("--paid", required=True)
    parser.add_argument("--payment-mode", choices=[member.value for member in PaymentMode], default=PaymentMode.CASH.value)
    parser.add_argument("--bill-type", choices=[member.value for member in BillType], default=BillType.INVOICE.value)
    parser.add_argument("--customer-name", default=None)
    parser.add_argument("--mobile-number", default=None)


def _purchase_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--supplier", required=True)
    parser.add_argument("--item", required=True)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--unit-cost", required=True)
    parser.add_argument("--product-id", default=None)
    parser.add_argument("--invoice-no", default=None)


def _post_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account-id", required=True)
    parser.add_argument("--direction", choices=[member.value for member in PostingDirection], required=True)
    parser.add_argument("--amount", required=True)
    parser.add_argument("--description", default=None)
    parser.add_argument("--reference-no", default=None)


def _delete_posting_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--posting-id", required=True)


def _adjust_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--delta", type=int, required=True)


def _delete_account_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account-id", required=True)
    parser.add_argument("--cascade", action="store_true", help="Also delete the account's postings.")


def _close_cash_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--physical-cash", required=True)
    parser.add_argument("--opening-cash", default="0")


def _customer_history_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--mobile-number", required=True)


def _low_stock_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--threshold", type=int, default=None)


def _postings_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account-id", default=None)


def dispatch_command(
    context: RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_decimal(raw: str, label: str) -> Decimal:
    """Parse a finite decimal; range checks are left to the ledgers."""
    return require_amount(raw, label, allow_negative=True)


def parse_line_spec(text: str) -> sales.SaleLine:
    """Translate ``NAME:QTY:RATE[:DISCOUNT[:TYPE]]`` into a sale line."""
    parts = text.split(":")
    if not 3 <= len(parts) <= 5:
        raise ValidationError(f"Sale line must look like NAME:QTY:RATE[:DISCOUNT[:TYPE]], got {text!r}")
    name, quantity_raw, rate_raw = parts[:3]
    discount = parse_decimal(parts[3], "Discount") if len(parts) > 3 and parts[3] else Decimal("0")
    try:
        quantity = int(quantity_raw)
        item_type = LineItemType(parts[4]) if len(parts) > 4 else LineItemType.PRODUCT
    except ValueError as exc:
        raise ValidationError(f"Invalid sale line {text!r}: {exc}") from exc
    return sales.SaleLine(
        product_name=name,
        quantity=quantity,
        rate=parse_decimal(rate_raw, "Rate"),
        discount=discount,
        item_type=item_type,
    )


def translate_sale(args: argparse.Namespace) -> tuple[sales.SaleHeader, List[sales.SaleLine]]:
    """Translate CLI args into a sale header and its lines."""
    header = sales.SaleHeader(
        paid_amount=parse_decimal(args.paid, "Paid amount"),
        payment_mode=PaymentMode(args.payment_mode),
        bill_type=BillType(args.bill_type),
        customer_name=args.customer_name,
        mobile_number=args.mobile_number,
    )
    return header, [parse_line_spec(text) for text in args.lines]


def run_add_product(context: RuntimeContext, args: argparse.Namespace) -> int:
    product = catalog.add_product(
        context,
        name=args.name,
        cost_price=parse_decimal(args.cost_price, "Cost price"),
        selling_price=parse_decimal(args.selling_price, "Selling price"),
        stock=args.stock,
        category=args.category,
        item_type=ItemType.SERVICE if args.service else ItemType.PRODUCT,
    )
    print(product.record_id)
    return EXIT_OK


def run_add_account(context: RuntimeContext, args: argparse.Namespace) -> int:
    account = catalog.add_account(
        context,
        account_name=args.account_name,
        bank_name=args.bank_name,
        account_type=AccountType(args.account_type),
        opening_balance=parse_decimal(args.opening_balance, "Opening balance"),
        account_number=args.account_number,
    )
    print(account.record_id)
    return EXIT_OK


def run_sale(context: RuntimeContext, args: argparse.Namespace) -> int:
    header, lines = translate_sale(args)
    result = sales.create_sale(context, header, lines)
    print(f"{result.sale.record_id} total={result.sale.total_amount} balance={result.sale.balance_amount}")
    return EXIT_OK


def run_purchase(context: RuntimeContext, args: argparse.Namespace) -> int:
    receipt = purchases.receive_purchase(
        context,
        args.supplier,
        args.item,
        args.quantity,
        parse_decimal(args.unit_cost, "Unit cost"),
        product_id=args.product_id,
        invoice_no=args.invoice_no,
    )
    suffix = "" if receipt.stock_updated else " (stock not updated)"
    print(f"{receipt.purchase.record_id} total={receipt.purchase.total_amount}{suffix}")
    return EXIT_OK


def run_post(context: RuntimeContext, args: argparse.Namespace) -> int:
    result = postings.record_posting(
        context,
        args.account_id,
        PostingDirection(args.direction),
        parse_decimal(args.amount, "Amount"),
        description=args.description,
        reference_no=args.reference_no,
    )
    print(f"{result.posting.record_id} balance={result.movement.current_balance}")
    return EXIT_OK


def run_delete_posting(context: RuntimeContext, args: argparse.Namespace) -> int:
    movement = postings.delete_posting(context, args.posting_id)
    print(f"balance={movement.current_balance}")
    return EXIT_OK


def run_adjust_stock(context: RuntimeContext, args: argparse.Namespace) -> int:
    movement = stock_ledger.adjust(context, args.product_id, args.delta)
    print(f"stock={movement.current_stock}")
    return EXIT_OK


def run_delete_account(context: RuntimeContext, args: argparse.Namespace) -> int:
    removed = catalog.delete_account(context, args.account_id, cascade=args.cascade)
    print(f"deleted postings={removed}")
    return EXIT_OK


def run_close_cash(context: RuntimeContext, args: argparse.Namespace) -> int:
    closing = cash_closing.record_cash_closing(
        context,
        parse_decimal(args.physical_cash, "Physical cash"),
        opening_cash=parse_decimal(args.opening_cash, "Opening cash"),
    )
    print(f"{closing.record_id} system={closing.system_cash} difference={closing.difference}")
    return EXIT_OK


def run_stock_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    for product in catalog.list_products(context, item_type=ItemType.PRODUCT):
        print(f"{product.record_id}\t{product.name}\t{product.stock}")
    return EXIT_OK


def run_low_stock_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    for product in reports.low_stock_products(context, threshold=args.threshold):
        print(f"{product.record_id}\t{product.name}\t{product.stock}")
    return EXIT_OK


def run_balances_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    for account in catalog.list_accounts(context):
        print(f"{account.record_id}\t{account.account_name}\t{account.current_balance}")
    print(f"total\t\t{reports.total_balance(context)}")
    return EXIT_OK


def run_postings_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    for posting in postings.list_postings(context, args.account_id):
        print(f"{posting.record_id}\t{posting.transaction_date}\t{posting.direction}\t{posting.amount}")
    return EXIT_OK


def run_summary_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    summary = reports.sales_summary(context)
    print(f"total_sales\t{summary.total_sales}")
    print(f"today_collection\t{summary.today_collection}")
    print(f"total_dues\t{summary.total_dues}")
    return EXIT_OK


def run_closings_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    for closing in cash_closing.list_cash_closings(context):
        print(f"{closing.closing_date}\t{closing.system_cash}\t{closing.physical_cash}\t{closing.difference}")
    return EXIT_OK


def run_customer_history(context: RuntimeContext, args: argparse.Namespace) -> int:
    for sale in reports.customer_purchase_history(context, args.mobile_number):
        print(f"{sale.record_id}\t{sale.invoice_date}\t{sale.total_amount}\t{sale.balance_amount}")
    print(f"due\t\t\t{reports.customer_due(context, args.mobile_number)}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, PartialCompletionError):
        log.error("%s; completed steps: %s", error, ", ".join(error.completed_steps))
        return EXIT_PARTIAL
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return EXIT_VALIDATION
    if isinstance(error, (NotFoundError, FileNotFoundError)):
        log.error("%s", error)
        return EXIT_NOT_FOUND
    if isinstance(error, ConflictError):
        log.error("%s", error)
        return EXIT_CONFLICT
    log.error("%s", error)
    return EXIT_FAILURE


def load_runtime_context(config_path: Optional[Path] = None, user_id: Optional[str] = None) -> RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``config_path`` the data layer searches upward from the working
    directory for ``config.ini``.
    """
    target = Path(config_path) if config_path is not None else None
    return _load_context(target, user_id=user_id)


def persist_workbook(context: RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def run_mutation(
    context: RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Run a mutating command and save the workbook.

    When another session saved the workbook after it was loaded, the save is
    refused; the workbook is reloaded and the command runs again against the
    fresh rows, up to ``Ledger.WriteAttempts`` times. Output of a discarded
    run is dropped so every result is printed once.

    Partially completed operations are persisted as well, so the rows that
    did reach the workbook stay visible for manual repair.
    """
    attempts = context.settings.write_attempts
    for attempt in range(1, attempts + 1):
        output = io.StringIO()
        try:
            with redirect_stdout(output):
                exit_code = dispatch_command(context, args, command_table)
            if exit_code == EXIT_OK:
                persist_workbook(context)
        except PartialCompletionError:
            persist_workbook(context)
            sys.stdout.write(output.getvalue())
            raise
        except StaleWorkbookError as error:
            if attempt == attempts:
                raise
            log.warning("Retrying '%s' on a reloaded workbook (attempt %d/%d): %s", args.command, attempt, attempts, error)
            context = refresh_context(context)
            continue
        sys.stdout.write(output.getvalue())
        return exit_code
    raise StaleWorkbookError(f"Gave up '{args.command}' after {attempts} attempt(s)")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(args.config, args.user)
        spec = command_table[args.command]
        if not spec.mutates:
            return dispatch_command(context, args, command_table)
        ensure_schema_version(context)
        return run_mutation(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
