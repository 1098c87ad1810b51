"""Data access layer for the back-office ledger.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` ledger. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection operations: loading structured records and replacing entire
   collections (customers, sales, expenses, settlements) in one call.
4. Snapshots: capturing and restoring raw sheet contents so callers can roll
   back a group of writes that failed halfway.
"""


from __future__ import annotations

import configparser
import os
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import ID_LIST_SEPARATOR, SheetName


CONFIG_FILE_NAME = "config.ini"
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
SALE_PAYMENTS_SHEET = SheetName.SALE_PAYMENTS.value
EXPENSES_SHEET = SheetName.EXPENSES.value
SETTLEMENTS_SHEET = SheetName.SETTLEMENTS.value
COUNTERS_SHEET = SheetName.COUNTERS.value

LEDGER_SHEETS: Tuple[str, ...] = (
    CUSTOMERS_SHEET,
    SALES_SHEET,
    SALE_ITEMS_SHEET,
    SALE_PAYMENTS_SHEET,
    EXPENSES_SHEET,
    SETTLEMENTS_SHEET,
    COUNTERS_SHEET,
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    invoice_prefix: str


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet.

    Distributors are customers flagged with ``is_distributor``. The two
    balances are kept apart and are never netted into a single signed figure:
    ``outstanding_balance`` is what the customer owes the business and
    ``pending_payment`` is what the business owes the customer.
    """

    customer_id: str
    customer_name: str
    is_distributor: bool
    outstanding_balance: Decimal
    pending_payment: Decimal
    version: int = 0


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_id: str
    product_id: str
    quantity: Decimal
    price: Decimal
    cost_to_distributor: Optional[Decimal] = None


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``SalePayments`` sheet."""

    payment_id: str
    sale_id: str
    amount: Decimal
    date_iso: str
    mode: str


@dataclass(frozen=True)
class SaleRow:
    """A sale joined with its line items and end-customer payments."""

    sale_id: str
    invoice_number: str
    customer_id: str
    date_iso: str
    distributor_id: Optional[str]
    total_amount: Decimal
    settlement_id: Optional[str]
    items: Tuple[SaleItemRow, ...] = ()
    payments: Tuple[PaymentRow, ...] = ()


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    title: str
    category: str
    amount: Decimal
    date_iso: str
    distributor_id: Optional[str]
    settlement_id: Optional[str]
    notes: Optional[str] = None


@dataclass(frozen=True)
class SettlementRow:
    """In-memory view of a row from the ``Settlements`` sheet."""

    settlement_id: str
    distributor_id: str
    period_start_date: str
    period_end_date: str
    settled_on: str
    sale_ids: Tuple[str, ...]
    expense_ids: Tuple[str, ...]
    total_sales_value: Decimal
    total_distributor_value: Decimal
    final_margin: Decimal
    adjustments: Decimal
    applied_outstanding_balance: Decimal
    settlement_amount: Decimal


@dataclass(frozen=True)
class CounterRow:
    """In-memory view of a row from the ``Counters`` sheet."""

    counter_name: str
    value: int


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME`` and returns the first match.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile``, ``BusinessName`` and ``SchemaVersion`` are required.
    ``[Numbering] InvoicePrefix`` is optional and defaults to ``INV``. Relative
    data file paths are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    invoice_prefix = parser.get("Numbering", "InvoicePrefix", fallback="INV")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        invoice_prefix=invoice_prefix,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``master_workbook.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` in a single atomic step.

    The workbook is written to a staging file next to the destination and
    then moved over it with :func:`os.replace`, so the ledger on disk is
    either the previous version or the new one and never a partial write.
    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f"~{dest.stem}.staging{dest.suffix}")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[Any, ...]]:
    """Yield raw data rows of ``sheet_name`` skipping the header and blanks."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def _rewrite_sheet(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> int:
    """Replace every data row of ``sheet_name`` while keeping the header row.

    Cells are written by explicit coordinates because ``Worksheet.append``
    keeps counting from the pre-deletion row index.

    Returns:
        int: Number of data rows written.
    """

    sheet = workbook[sheet_name]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)

    count = 0
    for row_idx, values in enumerate(rows, start=2):
        for col_idx, value in enumerate(values, start=1):
            sheet.cell(row=row_idx, column=col_idx, value=value)
        count += 1
    log.debug("Rewrote sheet '%s' with %d rows", sheet_name, count)
    return count


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over customer and distributor records in the ``Customers`` sheet.

    Args:
        workbook (Workbook): Workbook containing the ``Customers`` sheet.

    Yields:
        CustomerRow: One structured row for each populated record.
    """

    for raw in _iter_raw_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sales joined with their items and payments.

    The ``SaleItems`` and ``SalePayments`` sheets are grouped by ``SaleID``
    first so every yielded :class:`SaleRow` carries its complete nested data
    in worksheet order.

    Args:
        workbook (Workbook): Workbook containing the three sale sheets.

    Yields:
        SaleRow: Normalized sale record for each populated ``Sales`` row.
    """

    items_by_sale: Dict[str, List[SaleItemRow]] = defaultdict(list)
    for raw in _iter_raw_rows(workbook, SALE_ITEMS_SHEET):
        item = deserialize_sale_item(raw)
        items_by_sale[item.sale_id].append(item)

    payments_by_sale: Dict[str, List[PaymentRow]] = defaultdict(list)
    for raw in _iter_raw_rows(workbook, SALE_PAYMENTS_SHEET):
        payment = deserialize_payment(raw)
        payments_by_sale[payment.sale_id].append(payment)

    for raw in _iter_raw_rows(workbook, SALES_SHEET):
        sale_id = str(raw[0])
        yield deserialize_sale(
            raw,
            items=items_by_sale.get(sale_id, ()),
            payments=payments_by_sale.get(sale_id, ()),
        )


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    """Iterate over the ``Expenses`` worksheet and yield typed records."""

    for raw in _iter_raw_rows(workbook, EXPENSES_SHEET):
        yield deserialize_expense(raw)


def iter_settlements(workbook: Workbook) -> Iterable[SettlementRow]:
    """Iterate over the immutable settlement records in ``Settlements``."""

    for raw in _iter_raw_rows(workbook, SETTLEMENTS_SHEET):
        yield deserialize_settlement(raw)


def iter_counters(workbook: Workbook) -> Iterable[CounterRow]:
    """Iterate over the document numbering counters."""

    for raw in _iter_raw_rows(workbook, COUNTERS_SHEET):
        yield CounterRow(counter_name=str(raw[0]), value=int(raw[1] or 0))


def replace_customers(workbook: Workbook, records: Iterable[CustomerRow]) -> None:
    """Replace the whole ``Customers`` collection with ``records``."""

    _rewrite_sheet(workbook, CUSTOMERS_SHEET, (serialize_customer(r) for r in records))


def replace_sales(workbook: Workbook, records: Iterable[SaleRow]) -> None:
    """Replace the whole sales collection, including items and payments.

    The three sale sheets are rewritten together from the nested
    :class:`SaleRow` values so the join performed by :func:`iter_sales` stays
    consistent.

    Args:
        workbook (Workbook): Workbook whose sale sheets should be replaced.
        records (Iterable[SaleRow]): Complete new sales collection.
    """

    sales = list(records)
    _rewrite_sheet(workbook, SALES_SHEET, (serialize_sale(s) for s in sales))
    _rewrite_sheet(
        workbook,
        SALE_ITEMS_SHEET,
        (serialize_sale_item(item) for sale in sales for item in sale.items),
    )
    _rewrite_sheet(
        workbook,
        SALE_PAYMENTS_SHEET,
        (serialize_payment(payment) for sale in sales for payment in sale.payments),
    )


def replace_expenses(workbook: Workbook, records: Iterable[ExpenseRow]) -> None:
    """Replace the whole ``Expenses`` collection with ``records``."""

    _rewrite_sheet(workbook, EXPENSES_SHEET, (serialize_expense(r) for r in records))


def replace_settlements(workbook: Workbook, records: Iterable[SettlementRow]) -> None:
    """Replace the whole ``Settlements`` collection with ``records``."""

    _rewrite_sheet(workbook, SETTLEMENTS_SHEET, (serialize_settlement(r) for r in records))


def write_counter(workbook: Workbook, counter_name: str, value: int) -> None:
    """Store ``value`` for ``counter_name``, appending the counter if new.

    Args:
        workbook (Workbook): Workbook containing the ``Counters`` sheet.
        counter_name (str): Name of the counter to update.
        value (int): New counter value.
    """

    row_index = locate_row(workbook, COUNTERS_SHEET, "CounterName", counter_name)
    sheet = workbook[COUNTERS_SHEET]
    if row_index is None:
        row_index = max(sheet.max_row, 1) + 1
        sheet.cell(row=row_index, column=1, value=counter_name)
    sheet.cell(row=row_index, column=2, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def snapshot_sheets(workbook: Workbook, sheet_names: Sequence[str] = LEDGER_SHEETS) -> Dict[str, List[Tuple[Any, ...]]]:
    """Capture the raw data rows of ``sheet_names`` for a later rollback.

    Args:
        workbook (Workbook): Workbook to snapshot.
        sheet_names (Sequence[str]): Sheets to capture. Defaults to every
            ledger sheet.

    Returns:
        dict[str, list[tuple]]: Raw cell values per sheet, header excluded.
    """

    return {name: list(_iter_raw_rows(workbook, name)) for name in sheet_names}


def restore_sheets(workbook: Workbook, snapshot: Mapping[str, Sequence[Sequence[object]]]) -> None:
    """Write a snapshot produced by :func:`snapshot_sheets` back in place."""

    for name, rows in snapshot.items():
        _rewrite_sheet(workbook, name, rows)
    log.debug("Restored %d sheets from snapshot", len(snapshot))


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _split_ids(raw: object) -> Tuple[str, ...]:
    if raw is None:
        return ()
    return tuple(part for part in str(raw).split(ID_LIST_SEPARATOR) if part)


def serialize_customer(record: CustomerRow) -> list[object]:
    """Arrange a customer as ``[CustomerID, CustomerName, IsDistributor,
    OutstandingBalance, PendingPayment, Version]``."""

    return [
        record.customer_id,
        record.customer_name,
        record.is_distributor,
        record.outstanding_balance,
        record.pending_payment,
        record.version,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange the header fields of a sale in ``Sales`` column order."""

    return [
        record.sale_id,
        record.invoice_number,
        record.customer_id,
        record.date_iso,
        record.distributor_id,
        record.total_amount,
        record.settlement_id,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [record.sale_id, record.product_id, record.quantity, record.price, record.cost_to_distributor]


def serialize_payment(record: PaymentRow) -> list[object]:
    return [record.payment_id, record.sale_id, record.amount, record.date_iso, record.mode]


def serialize_expense(record: ExpenseRow) -> list[object]:
    return [
        record.expense_id,
        record.title,
        record.category,
        record.amount,
        record.date_iso,
        record.distributor_id,
        record.settlement_id,
        record.notes,
    ]


def serialize_settlement(record: SettlementRow) -> list[object]:
    """Convert a settlement into the ``Settlements`` column order.

    Identifier lists are joined with :data:`ID_LIST_SEPARATOR` so the record
    stays a single row.
    """

    return [
        record.settlement_id,
        record.distributor_id,
        record.period_start_date,
        record.period_end_date,
        record.settled_on,
        ID_LIST_SEPARATOR.join(record.sale_ids),
        ID_LIST_SEPARATOR.join(record.expense_ids),
        record.total_sales_value,
        record.total_distributor_value,
        record.final_margin,
        record.adjustments,
        record.applied_outstanding_balance,
        record.settlement_amount,
    ]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw ``Customers`` row into a :class:`CustomerRow`.

    Missing balances become zero and a missing version becomes ``0`` so rows
    typed in by hand remain usable.
    """

    customer_id, customer_name, is_distributor, outstanding_raw, pending_raw, version_raw = raw_row[:6]
    return CustomerRow(
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        is_distributor=bool(is_distributor),
        outstanding_balance=_to_decimal(outstanding_raw),
        pending_payment=_to_decimal(pending_raw),
        version=int(version_raw) if version_raw is not None else 0,
    )


def deserialize_sale(
    raw_row: Sequence[object],
    *,
    items: Iterable[SaleItemRow] = (),
    payments: Iterable[PaymentRow] = (),
) -> SaleRow:
    """Convert a raw ``Sales`` row plus its nested rows into a :class:`SaleRow`."""

    sale_id, invoice_number, customer_id, date_raw, distributor_id, total_raw, settlement_id = raw_row[:7]
    return SaleRow(
        sale_id=str(sale_id),
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        customer_id=str(customer_id),
        date_iso=str(date_raw) if date_raw is not None else "",
        distributor_id=_optional_str(distributor_id),
        total_amount=_to_decimal(total_raw),
        settlement_id=_optional_str(settlement_id),
        items=tuple(items),
        payments=tuple(payments),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    """Convert a raw ``SaleItems`` row into a :class:`SaleItemRow`.

    A blank ``CostToDistributor`` stays ``None`` (the price is used instead),
    whereas an explicit ``0`` is preserved as a zero cost.
    """

    sale_id, product_id, quantity_raw, price_raw, cost_raw = raw_row[:5]
    return SaleItemRow(
        sale_id=str(sale_id),
        product_id=str(product_id),
        quantity=_to_decimal(quantity_raw, "0"),
        price=_to_decimal(price_raw),
        cost_to_distributor=Decimal(str(cost_raw)) if cost_raw is not None else None,
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    payment_id, sale_id, amount_raw, date_raw, mode = raw_row[:5]
    return PaymentRow(
        payment_id=str(payment_id),
        sale_id=str(sale_id),
        amount=_to_decimal(amount_raw),
        date_iso=str(date_raw) if date_raw is not None else "",
        mode=str(mode) if mode is not None else "",
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    expense_id, title, category, amount_raw, date_raw, distributor_id, settlement_id, notes = raw_row[:8]
    return ExpenseRow(
        expense_id=str(expense_id),
        title=str(title) if title is not None else "",
        category=str(category) if category is not None else "",
        amount=_to_decimal(amount_raw),
        date_iso=str(date_raw) if date_raw is not None else "",
        distributor_id=_optional_str(distributor_id),
        settlement_id=_optional_str(settlement_id),
        notes=_optional_str(notes),
    )


def deserialize_settlement(raw_row: Sequence[object]) -> SettlementRow:
    """Convert a raw ``Settlements`` row into a :class:`SettlementRow`.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        SettlementRow: Settlement with identifier lists split back into tuples
            and monetary columns as :class:`~decimal.Decimal`.
    """

    (
        settlement_id,
        distributor_id,
        period_start,
        period_end,
        settled_on,
        sale_ids_raw,
        expense_ids_raw,
        total_sales_raw,
        total_distributor_raw,
        final_margin_raw,
        adjustments_raw,
        applied_raw,
        settlement_amount_raw,
    ) = raw_row[:13]

    return SettlementRow(
        settlement_id=str(settlement_id),
        distributor_id=str(distributor_id),
        period_start_date=str(period_start) if period_start is not None else "",
        period_end_date=str(period_end) if period_end is not None else "",
        settled_on=str(settled_on) if settled_on is not None else "",
        sale_ids=_split_ids(sale_ids_raw),
        expense_ids=_split_ids(expense_ids_raw),
        total_sales_value=_to_decimal(total_sales_raw),
        total_distributor_value=_to_decimal(total_distributor_raw),
        final_margin=_to_decimal(final_margin_raw),
        adjustments=_to_decimal(adjustments_raw),
        applied_outstanding_balance=_to_decimal(applied_raw),
        settlement_amount=_to_decimal(settlement_amount_raw),
    )
