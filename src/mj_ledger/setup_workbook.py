"""Utility for initializing the MJ stock ledger master workbook.

The module doubles as a script (``mj-ledger-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager
from .constants import Collection, UserRole
from .data_manager import SettingsRow, UserRow

CONFIG_FILE = "config.ini"

DEFAULT_USER_NAME = "admin"
DEFAULT_USER_FULL_NAME = "Shop Administrator"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    shop_name: str
    default_user_id: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory, the same way the ledger resolves them at runtime.
    """

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return SetupSettings(
        data_file=settings.data_file,
        shop_name=settings.shop_name,
        default_user_id=settings.default_user_id,
    )


def build_master_workbook(
    *,
    default_user_id: str,
    shop_settings: Optional[SettingsRow] = None,
    sheet_columns: Mapping[Collection, Sequence[str]] = data_manager.COLLECTION_COLUMNS,
    timestamp: Optional[datetime] = None,
) -> Workbook:
    """Build an in-memory workbook with every collection sheet and its header.

    The ``settings`` sheet receives one row (``shop_settings`` or the
    defaults) and the ``users`` sheet receives the administrator account
    identified by ``default_user_id``.
    """

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for collection, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=collection.value)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    when = (timestamp or datetime.now(UTC)).isoformat()
    data_manager.append_record(
        workbook,
        Collection.SETTINGS,
        shop_settings or data_manager.default_settings(),
    )
    data_manager.append_record(
        workbook,
        Collection.USERS,
        UserRow(
            user_id=default_user_id,
            username=DEFAULT_USER_NAME,
            full_name=DEFAULT_USER_FULL_NAME,
            role=UserRole.ADMIN.value,
            is_active=True,
            created_at=when,
        ),
    )
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    default_user_id: str,
    shop_name: Optional[str] = None,
    overwrite: bool = False,
) -> Path:
    """Create the MJ stock ledger master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    shop_settings = data_manager.default_settings()
    if shop_name:
        shop_settings = replace(shop_settings, shop_name=shop_name)

    workbook = build_master_workbook(default_user_id=default_user_id, shop_settings=shop_settings)
    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        default_user_id=settings.default_user_id,
        shop_name=settings.shop_name,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the MJ stock ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
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

    print("--- MJ Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except data_manager.StorageFailure as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
