"""Business logic layer for the back-office ledger.

This module owns the runtime context, the cached views of the four ledger
collections (customers, sales, expenses, settlements), and the operations that
create sales, end-customer payments, and distributor payments. It consumes
the Data Access Layer (DAL) for all I/O. Distributor settlement lives in
:mod:`backoffice_erp.settlement` and builds on the primitives defined here,
most importantly :func:`ledger_transaction`.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    CounterName,
    ExpenseCategory,
    PaymentMode,
    PaymentStatus,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced customer, sale, or expense is unknown."""


class ValidationError(BusinessRuleViolation):
    """Raised when a settlement request is rejected before any mutation."""


class EmptySaleSelection(ValidationError):
    """Raised when a settlement is requested without any sale."""


class SaleAlreadySettled(ValidationError):
    """Raised when a selected sale already belongs to a settlement."""


class ExpenseAlreadySettled(ValidationError):
    """Raised when a selected advance payment already belongs to a settlement."""


class DistributorNotFound(ValidationError, MissingReferenceError):
    """Raised when an id does not resolve to a flagged distributor."""


class ForeignSelection(ValidationError):
    """Raised when a selected record belongs to another distributor."""


class ConcurrentModificationError(BusinessRuleViolation):
    """Raised when a distributor changed after a settlement was computed."""


ZERO = Decimal("0")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``_lock`` serializes every write to the workbook. It is re-entrant so a
    settlement can reconcile and apply inside one critical section.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class Distributor:
    """Settlement-facing view of a customer flagged as a distributor."""

    distributor_id: str
    name: str
    outstanding_balance: Decimal
    pending_payment: Decimal
    version: int

    @classmethod
    def from_customer(cls, customer: data_manager.CustomerRow) -> "Distributor":
        return cls(
            distributor_id=customer.customer_id,
            name=customer.customer_name,
            outstanding_balance=customer.outstanding_balance,
            pending_payment=customer.pending_payment,
            version=customer.version,
        )


@dataclass(frozen=True)
class CustomerCommand:
    """User intent for registering a customer or a distributor."""

    customer_name: str
    is_distributor: bool = False
    customer_id: Optional[str] = None
    outstanding_balance: Decimal = ZERO
    pending_payment: Decimal = ZERO


@dataclass(frozen=True)
class SaleItemCommand:
    """One line of a :class:`SaleCommand`."""

    product_id: str
    quantity: Decimal
    price: Decimal
    cost_to_distributor: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating an invoice."""

    customer_id: str
    items: Tuple[SaleItemCommand, ...]
    sale_date: Optional[date] = None
    distributor_id: Optional[str] = None
    initial_payment: Decimal = ZERO
    payment_mode: PaymentMode = PaymentMode.CASH


@dataclass(frozen=True)
class SalePaymentCommand:
    """User intent for recording money collected from an end customer."""

    sale_id: str
    amount: Decimal
    mode: PaymentMode = PaymentMode.CASH
    payment_date: Optional[date] = None


@dataclass(frozen=True)
class AdvancePaymentCommand:
    """User intent for paying a distributor ahead of settlement."""

    distributor_id: str
    amount: Decimal
    title: str = "Distributor advance"
    expense_date: Optional[date] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PayoutCommand:
    """User intent for paying down what the business owes a distributor."""

    distributor_id: str
    amount: Decimal
    title: str = "Distributor payout"
    expense_date: Optional[date] = None
    notes: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC datetime when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's UTC date when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC).date()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries keyed by derived view (``all``,
    ``by_id``) so repeated reads do not rescan the workbook.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for one collection.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored. Passing no name clears every bucket.
    """

    if not names:
        log.debug("Invalidating all cache buckets")
        context._cache.clear()
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


_COLLECTIONS: Dict[str, Tuple[Callable[[Workbook], Iterable[Any]], str]] = {
    "customers": (lambda wb: data_manager.iter_customers(wb), "customer_id"),
    "sales": (lambda wb: data_manager.iter_sales(wb), "sale_id"),
    "expenses": (lambda wb: data_manager.iter_expenses(wb), "expense_id"),
    "settlements": (lambda wb: data_manager.iter_settlements(wb), "settlement_id"),
}


def _ensure_collection_cache(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Populate the cache bucket for collection ``name`` on demand.

    Returns:
        dict[str, Any]: Bucket containing the ``all`` list in sheet order and
            a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        loader, key = _COLLECTIONS[name]
        rows = list(loader(context.workbook))
        bucket["by_id"] = {getattr(row, key): row for row in rows}
        bucket["all"] = rows
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache, and its own write lock.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


@contextmanager
def ledger_lock(context: RuntimeContext) -> Iterator[RuntimeContext]:
    """Hold the context's write lock so reads see no half-applied writes."""
    with context._lock:
        yield context


@contextmanager
def ledger_transaction(context: RuntimeContext) -> Iterator[RuntimeContext]:
    """Group several collection writes into one all-or-nothing unit.

    The context's write lock is held for the whole block and every ledger
    sheet is snapshotted on entry. If the block raises, the snapshot is
    written back, all caches are dropped, and the exception propagates, so no
    partial application is observable. Nothing is written to disk here;
    :func:`persist_context` saves the workbook as a single file.

    Yields:
        RuntimeContext: The same context, for convenience.
    """

    with context._lock:
        snapshot = data_manager.snapshot_sheets(context.workbook)
        try:
            yield context
        except BaseException:
            log.warning("Rolling back ledger transaction")
            data_manager.restore_sheets(context.workbook, snapshot)
            _invalidate_cache(context)
            raise


def get_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return a copy of the customer collection in sheet order."""
    return list(_ensure_collection_cache(context, "customers")["all"])


def get_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return a copy of the sales collection in sheet order."""
    return list(_ensure_collection_cache(context, "sales")["all"])


def get_expenses(context: RuntimeContext) -> List[data_manager.ExpenseRow]:
    """Return a copy of the expense collection in sheet order."""
    return list(_ensure_collection_cache(context, "expenses")["all"])


def get_settlements(context: RuntimeContext) -> List[data_manager.SettlementRow]:
    """Return a copy of the settlement ledger in sheet order."""
    return list(_ensure_collection_cache(context, "settlements")["all"])


def set_customers(context: RuntimeContext, records: Iterable[data_manager.CustomerRow]) -> None:
    """Replace the customer collection and drop its cache."""
    with context._lock:
        data_manager.replace_customers(context.workbook, records)
        _invalidate_cache(context, "customers")


def set_sales(context: RuntimeContext, records: Iterable[data_manager.SaleRow]) -> None:
    """Replace the sales collection and drop its cache."""
    with context._lock:
        data_manager.replace_sales(context.workbook, records)
        _invalidate_cache(context, "sales")


def set_expenses(context: RuntimeContext, records: Iterable[data_manager.ExpenseRow]) -> None:
    """Replace the expense collection and drop its cache."""
    with context._lock:
        data_manager.replace_expenses(context.workbook, records)
        _invalidate_cache(context, "expenses")


def set_settlements(context: RuntimeContext, records: Iterable[data_manager.SettlementRow]) -> None:
    """Replace the settlement ledger and drop its cache."""
    with context._lock:
        data_manager.replace_settlements(context.workbook, records)
        _invalidate_cache(context, "settlements")


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        MissingReferenceError: If ``customer_id`` is absent from the workbook.
    """
    cache = _ensure_collection_cache(context, "customers")
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def get_distributor(context: RuntimeContext, distributor_id: str) -> Distributor:
    """Resolve ``distributor_id`` to a :class:`Distributor`.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        distributor_id (str): Identifier of a customer flagged as distributor.

    Returns:
        Distributor: Snapshot of the distributor's balances and version.

    Raises:
        DistributorNotFound: If the id is unknown or the customer is not a
            distributor.
    """
    customer = _ensure_collection_cache(context, "customers")["by_id"].get(distributor_id)
    if customer is None or not customer.is_distributor:
        log.warning("Distributor lookup failed for id '%s'", distributor_id)
        raise DistributorNotFound(f"Unknown distributor id: {distributor_id}")
    return Distributor.from_customer(customer)


def list_distributors(context: RuntimeContext) -> List[Distributor]:
    """Return every distributor in sheet order."""
    return [
        Distributor.from_customer(customer)
        for customer in _ensure_collection_cache(context, "customers")["all"]
        if customer.is_distributor
    ]


def distributor_balances(context: RuntimeContext) -> Dict[str, Tuple[Decimal, Decimal]]:
    """Map each distributor id to ``(outstanding_balance, pending_payment)``."""
    return {
        distributor.distributor_id: (distributor.outstanding_balance, distributor.pending_payment)
        for distributor in list_distributors(context)
    }


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale by id, raising :class:`MissingReferenceError` if unknown."""
    cache = _ensure_collection_cache(context, "sales")
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def get_expense(context: RuntimeContext, expense_id: str) -> data_manager.ExpenseRow:
    """Resolve an expense by id, raising :class:`MissingReferenceError` if unknown."""
    cache = _ensure_collection_cache(context, "expenses")
    try:
        return cache["by_id"][expense_id]
    except KeyError as exc:
        log.warning("Expense lookup failed for id '%s'", expense_id)
        raise MissingReferenceError(f"Unknown expense id: {expense_id}") from exc


def next_document_number(
    context: RuntimeContext, counter: CounterName, prefix: str, *, padding: int = 3, separator: str = "-"
) -> str:
    """Advance ``counter`` and format the new value as a document number.

    Counters only ever grow and are stored in the ``Counters`` sheet, so
    numbers stay unique across sessions once the workbook is persisted.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        counter (CounterName): Counter to advance.
        prefix (str): Text placed before the zero padded number.
        padding (int): Minimum number of digits.
        separator (str): Text placed between prefix and number.

    Returns:
        str: Identifier formatted as ``{prefix}{separator}{value}``, e.g. ``INV-007``.
    """
    with context._lock:
        current = {row.counter_name: row.value for row in data_manager.iter_counters(context.workbook)}
        value = current.get(counter.value, 0) + 1
        data_manager.write_counter(context.workbook, counter.value, value)
    log.debug("Advanced counter '%s' to %d", counter.value, value)
    return f"{prefix}{separator}{value:0{padding}d}"


def sale_amount_collected(sale: data_manager.SaleRow) -> Decimal:
    """Sum the payments actually received from the end customer for ``sale``."""
    return sum((payment.amount for payment in sale.payments), ZERO)


def payment_status(sale: data_manager.SaleRow) -> PaymentStatus:
    """Derive whether ``sale`` is paid, partially paid, or unpaid."""
    collected = sale_amount_collected(sale)
    if collected >= sale.total_amount and collected > ZERO:
        return PaymentStatus.PAID
    if collected > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


def add_customer(context: RuntimeContext, command: CustomerCommand) -> data_manager.CustomerRow:
    """Register a customer or distributor with its opening balances.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (CustomerCommand): Structured registration intent.

    Returns:
        data_manager.CustomerRow: Newly appended customer row.

    Raises:
        BusinessRuleViolation: If the name is blank or the id already exists.
        ValueError: If an opening balance is negative.
    """
    name = command.customer_name.strip()
    if not name:
        raise BusinessRuleViolation("Customer name must not be blank")
    require_nonnegative_money(command.outstanding_balance)
    require_nonnegative_money(command.pending_payment)

    with ledger_transaction(context):
        customers = get_customers(context)
        taken = {existing.customer_id for existing in customers}
        customer_id = command.customer_id
        if not customer_id:
            prefix = "D" if command.is_distributor else "C"
            customer_id = next_document_number(context, CounterName.CUSTOMER, prefix, padding=4, separator="")
            # Explicit ids may already occupy generated numbers.
            while customer_id in taken:
                customer_id = next_document_number(context, CounterName.CUSTOMER, prefix, padding=4, separator="")
        if customer_id in taken:
            log.warning("Duplicate customer id '%s'", customer_id)
            raise BusinessRuleViolation(f"Customer '{customer_id}' already exists")

        record = data_manager.CustomerRow(
            customer_id=customer_id,
            customer_name=name,
            is_distributor=command.is_distributor,
            outstanding_balance=command.outstanding_balance,
            pending_payment=command.pending_payment,
            version=0,
        )
        set_customers(context, [*customers, record])

    log.info(
        "Registered %s '%s' (%s)",
        "distributor" if record.is_distributor else "customer",
        record.customer_id,
        record.customer_name,
    )
    return record


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate and append an invoice with its items and optional first payment.

    The sale is numbered through the invoice counter using the configured
    prefix. ``TotalAmount`` is the sum of ``price * quantity`` over the items.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: Newly appended sale.

    Raises:
        BusinessRuleViolation: If the sale has no items.
        MissingReferenceError: If the customer is unknown.
        DistributorNotFound: If ``distributor_id`` is not a distributor.
        ValueError: When a quantity or amount validation fails.
    """
    if not command.items:
        log.warning("Attempted sale without items for customer '%s'", command.customer_id)
        raise BusinessRuleViolation("A sale requires at least one item")
    get_customer(context, command.customer_id)
    if command.distributor_id is not None:
        get_distributor(context, command.distributor_id)
    for item in command.items:
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.price)
        if item.cost_to_distributor is not None:
            require_nonnegative_money(item.cost_to_distributor)
    require_nonnegative_money(command.initial_payment)

    sale_date = _resolve_date(command.sale_date).isoformat()
    total_amount = sum((item.price * item.quantity for item in command.items), ZERO)

    with ledger_transaction(context):
        sale_id = next_document_number(context, CounterName.INVOICE, context.settings.invoice_prefix)
        items = tuple(
            data_manager.SaleItemRow(
                sale_id=sale_id,
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price,
                cost_to_distributor=item.cost_to_distributor,
            )
            for item in command.items
        )
        payments: Tuple[data_manager.PaymentRow, ...] = ()
        if command.initial_payment > ZERO:
            payments = (
                data_manager.PaymentRow(
                    payment_id=next_document_number(context, CounterName.PAYMENT, "PAY", padding=4),
                    sale_id=sale_id,
                    amount=command.initial_payment,
                    date_iso=sale_date,
                    mode=command.payment_mode.value,
                ),
            )
        sale = data_manager.SaleRow(
            sale_id=sale_id,
            invoice_number=sale_id,
            customer_id=command.customer_id,
            date_iso=sale_date,
            distributor_id=command.distributor_id,
            total_amount=total_amount,
            settlement_id=None,
            items=items,
            payments=payments,
        )
        set_sales(context, [*get_sales(context), sale])

    log.info(
        "Recorded sale '%s' for customer '%s' (total=%s, distributor=%s)",
        sale.sale_id,
        sale.customer_id,
        sale.total_amount,
        sale.distributor_id,
    )
    return sale


def record_sale_payment(context: RuntimeContext, command: SalePaymentCommand) -> data_manager.PaymentRow:
    """Append an end-customer payment to an existing sale.

    Payments on a sale that is already settled are accepted: the settlement
    record keeps the amount collected at settlement time.

    Raises:
        MissingReferenceError: If the sale is unknown.
        ValueError: If the amount is not strictly positive.
    """
    require_positive_money(command.amount)

    with ledger_transaction(context):
        sale = get_sale(context, command.sale_id)
        payment = data_manager.PaymentRow(
            payment_id=next_document_number(context, CounterName.PAYMENT, "PAY", padding=4),
            sale_id=sale.sale_id,
            amount=command.amount,
            date_iso=_resolve_date(command.payment_date).isoformat(),
            mode=command.mode.value,
        )
        updated = replace(sale, payments=(*sale.payments, payment))
        set_sales(context, [updated if s.sale_id == sale.sale_id else s for s in get_sales(context)])

    log.info(
        "Recorded payment '%s' of %s against sale '%s'%s",
        payment.payment_id,
        payment.amount,
        sale.sale_id,
        f" (settled in '{sale.settlement_id}')" if sale.settlement_id else "",
    )
    return payment


def record_advance_payment(context: RuntimeContext, command: AdvancePaymentCommand) -> data_manager.ExpenseRow:
    """Record an unsettled advance paid to a distributor.

    The advance is stored as a ``Distributor Payment`` expense. Balances are
    left untouched; the amount is offset against the margin when the advance
    is selected in a settlement.

    Raises:
        DistributorNotFound: If the distributor is unknown.
        ValueError: If the amount is not strictly positive.
    """
    require_positive_money(command.amount)
    distributor = get_distributor(context, command.distributor_id)

    with ledger_transaction(context):
        expense = data_manager.ExpenseRow(
            expense_id=next_document_number(context, CounterName.EXPENSE, "EXP"),
            title=command.title,
            category=ExpenseCategory.DISTRIBUTOR_PAYMENT.value,
            amount=command.amount,
            date_iso=_resolve_date(command.expense_date).isoformat(),
            distributor_id=distributor.distributor_id,
            settlement_id=None,
            notes=command.notes,
        )
        set_expenses(context, [*get_expenses(context), expense])

    log.info(
        "Recorded advance '%s' of %s to distributor '%s'",
        expense.expense_id,
        expense.amount,
        distributor.distributor_id,
    )
    return expense


def record_distributor_payout(context: RuntimeContext, command: PayoutCommand) -> data_manager.ExpenseRow:
    """Pay down the amount the business owes a distributor.

    The distributor's ``pending_payment`` is reduced by the amount and a
    ``Distributor Payout`` expense is appended. Payouts are not advances and
    are never offered for settlement.

    Raises:
        DistributorNotFound: If the distributor is unknown.
        BusinessRuleViolation: If the amount exceeds the pending payment.
        ValueError: If the amount is not strictly positive.
    """
    require_positive_money(command.amount)

    with ledger_transaction(context):
        distributor = get_distributor(context, command.distributor_id)
        if command.amount > distributor.pending_payment:
            log.warning(
                "Payout of %s exceeds pending payment %s for distributor '%s'",
                command.amount,
                distributor.pending_payment,
                distributor.distributor_id,
            )
            raise BusinessRuleViolation(
                f"Payout {command.amount} exceeds pending payment {distributor.pending_payment}"
            )

        customers = [
            replace(
                customer,
                pending_payment=customer.pending_payment - command.amount,
                version=customer.version + 1,
            )
            if customer.customer_id == distributor.distributor_id
            else customer
            for customer in get_customers(context)
        ]
        set_customers(context, customers)

        expense = data_manager.ExpenseRow(
            expense_id=next_document_number(context, CounterName.EXPENSE, "EXP"),
            title=command.title,
            category=ExpenseCategory.DISTRIBUTOR_PAYOUT.value,
            amount=command.amount,
            date_iso=_resolve_date(command.expense_date).isoformat(),
            distributor_id=distributor.distributor_id,
            settlement_id=None,
            notes=command.notes,
        )
        set_expenses(context, [*get_expenses(context), expense])

    log.info(
        "Recorded payout '%s' of %s to distributor '%s'",
        expense.expense_id,
        expense.amount,
        distributor.distributor_id,
    )
    return expense


def list_unsettled_sales(
    context: RuntimeContext,
    distributor_id: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[data_manager.SaleRow]:
    """Return the distributor's sales that no settlement has claimed yet.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        distributor_id (str): Distributor whose sales are listed.
        start (date | None): Inclusive lower bound on the sale date.
        end (date | None): Inclusive upper bound on the sale date.

    Returns:
        list[data_manager.SaleRow]: Matching sales ordered by date.
    """
    lower = start.isoformat() if start is not None else None
    upper = end.isoformat() if end is not None else None
    sales = [
        sale
        for sale in get_sales(context)
        if sale.distributor_id == distributor_id
        and sale.settlement_id is None
        and (lower is None or sale.date_iso >= lower)
        and (upper is None or sale.date_iso <= upper)
    ]
    return sorted(sales, key=lambda sale: sale.date_iso)


def list_unsettled_advances(context: RuntimeContext, distributor_id: str) -> List[data_manager.ExpenseRow]:
    """Return the distributor's advance payments not yet offset by a settlement."""
    return [
        expense
        for expense in get_expenses(context)
        if expense.category == ExpenseCategory.DISTRIBUTOR_PAYMENT.value
        and expense.distributor_id == distributor_id
        and expense.settlement_id is None
    ]


def list_distributor_settlements(context: RuntimeContext, distributor_id: str) -> List[data_manager.SettlementRow]:
    """Return the settlement history of one distributor in creation order."""
    return [s for s in get_settlements(context) if s.distributor_id == distributor_id]


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= ZERO:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    """Validate that a payment amount is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= ZERO:
        log.error("Payment amount validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")
