"""Shared pytest fixtures and utilities for Shop Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from shop_ledger import catalog, cli, constants, context as runtime, data_manager  # noqa: E402
from shop_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "owner@example.com"
DEFAULT_SHOP_ID = "SHOP-1"
OTHER_USER_ID = "clerk@other.example"
OTHER_SHOP_ID = "SHOP-2"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Session]\n"
    "UserID = {user_id}\n\n"
    "[Ledger]\n"
    "WriteAttempts = {write_attempts}\n"
    "LowStockThreshold = 5\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    user_id: str
    schema_version: str
    shop_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized shop workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        user_id: str = DEFAULT_USER_ID,
        shop_id: str = DEFAULT_SHOP_ID,
        filename: str = "shop_ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, user_id=user_id, shop_id=shop_id, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        user_id: str = DEFAULT_USER_ID,
        write_attempts: int = 3,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", user_id=user_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                user_id=user_id,
                write_attempts=write_attempts,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            user_id=user_id,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> runtime.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = runtime.load_runtime_context(config_file)
    runtime.ensure_schema_version(context)
    return context


@pytest.fixture
def other_shop_context(runtime_context: runtime.RuntimeContext) -> runtime.RuntimeContext:
    """A second shop's session sharing the same workbook."""

    runtime_context.store.insert(
        constants.Collection.SHOP_MEMBERS.value,
        {"UserID": OTHER_USER_ID, constants.SHOP_ID: OTHER_SHOP_ID},
    )
    return runtime.build_context(runtime_context.settings, runtime_context.workbook, user_id=OTHER_USER_ID)


# ---------------------------------------------------------------------------
# Catalog fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_product(runtime_context: runtime.RuntimeContext) -> Callable[..., data_manager.ProductRow]:
    """Register products in the default shop with sensible defaults."""

    def _make(
        name: str = "Biscuit",
        *,
        stock: int = 10,
        selling_price: str = "40",
        item_type: constants.ItemType = constants.ItemType.PRODUCT,
    ) -> data_manager.ProductRow:
        return catalog.add_product(
            runtime_context,
            name=name,
            cost_price=Decimal("25"),
            selling_price=Decimal(selling_price),
            stock=stock,
            item_type=item_type,
        )

    return _make


@pytest.fixture
def make_account(runtime_context: runtime.RuntimeContext) -> Callable[..., data_manager.AccountRow]:
    """Register accounts in the default shop."""

    def _make(opening_balance: str = "100", *, account_name: str = "Current") -> data_manager.AccountRow:
        return catalog.add_account(
            runtime_context,
            account_name=account_name,
            bank_name="State Bank",
            opening_balance=Decimal(opening_balance),
        )

    return _make


def product_stock(context: runtime.RuntimeContext, product_id: str) -> int:
    """Read the stored stock of a product straight from the store."""

    record = context.store.get(constants.Collection.PRODUCTS.value, product_id)
    return int(record["Stock"])


def account_balance(context: runtime.RuntimeContext, account_id: str) -> Decimal:
    """Read the stored balance of an account straight from the store."""

    record = context.store.get(constants.Collection.ACCOUNTS.value, account_id)
    return Decimal(str(record["CurrentBalance"]))


def row_count(context: runtime.RuntimeContext, collection: constants.Collection) -> int:
    return len(context.store.query(collection.value))


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="shop-ledger", description="Shop Ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
