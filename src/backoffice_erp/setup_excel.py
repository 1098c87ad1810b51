"""Utility for initializing the back-office ledger workbook.

The module doubles as a script (``backoffice-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from .constants import CounterName, SheetName

# Column order must match the serializers in ``data_manager``.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "CustomerName",
        "IsDistributor",
        "OutstandingBalance",
        "PendingPayment",
        "Version",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "InvoiceNumber",
        "CustomerID",
        "Date",
        "DistributorID",
        "TotalAmount",
        "SettlementID",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleID",
        "ProductID",
        "Quantity",
        "Price",
        "CostToDistributor",
    ],
    SheetName.SALE_PAYMENTS.value: [
        "PaymentID",
        "SaleID",
        "Amount",
        "Date",
        "Mode",
    ],
    SheetName.EXPENSES.value: [
        "ExpenseID",
        "Title",
        "Category",
        "Amount",
        "Date",
        "DistributorID",
        "SettlementID",
        "Notes",
    ],
    SheetName.SETTLEMENTS.value: [
        "SettlementID",
        "DistributorID",
        "PeriodStartDate",
        "PeriodEndDate",
        "SettledOn",
        "SaleIDs",
        "ExpenseIDs",
        "TotalSalesValue",
        "TotalDistributorValue",
        "FinalMargin",
        "Adjustments",
        "AppliedOutstandingBalance",
        "SettlementAmount",
    ],
    SheetName.COUNTERS.value: [
        "CounterName",
        "Value",
    ],
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    Every sheet receives a bold header row and the ``Counters`` sheet is
    seeded with each known counter at zero. When ``overwrite`` is ``False``
    (the default) an existing file is left alone and ``FileExistsError`` is
    raised.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
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

    counters_name = SheetName.COUNTERS.value
    if counters_name in workbook.sheetnames:
        counters_sheet = workbook[counters_name]
        for counter in CounterName:
            counters_sheet.append([counter.value, 0])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the back-office ledger workbook")
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

    print("--- Back-office Ledger Setup ---")
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
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
