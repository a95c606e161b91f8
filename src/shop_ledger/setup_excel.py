"""Utility for initializing the shop workbook.

The module doubles as a script (``python -m shop_ledger.setup_excel``) and as
a library used by tests or other tooling. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from .constants import COLLECTION_COLUMNS, RECORD_ID, SHOP_ID, VERSION, Collection

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    user_id: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config file's
    directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        user_id = parser.get("Session", "UserID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path, user_id=user_id)


def create_master_workbook(
    destination: Path,
    *,
    user_id: str,
    shop_id: Optional[str] = None,
    sheet_columns: Mapping[str, Sequence[str]] = COLLECTION_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the shop workbook at ``destination``.

    One sheet is created per collection with a bold header row, and
    ``user_id`` is registered as a member of ``shop_id`` (a fresh identifier
    when omitted). When ``overwrite`` is ``False`` (the default) this function
    raises ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    members = workbook[Collection.SHOP_MEMBERS.value]
    member = {
        RECORD_ID: uuid.uuid4().hex,
        "UserID": user_id,
        SHOP_ID: shop_id or uuid.uuid4().hex,
        VERSION: 1,
    }
    members.append([member[column] for column in sheet_columns[Collection.SHOP_MEMBERS.value]])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, shop_id: Optional[str] = None, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini`` for its session user."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        user_id=settings.user_id,
        shop_id=shop_id,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the shop ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--shop-id",
        default=None,
        help="Shop identifier to assign to the configured user (default: generated).",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Shop Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, shop_id=args.shop_id, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created shop workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
