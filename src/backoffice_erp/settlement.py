"""Distributor settlement and margin reconciliation.

A settlement folds a distributor's unsettled sales, the advances already paid
to the distributor, and the distributor's own outstanding debt into one net
figure, then applies it to four collections at once:

1. the distributor's balances in ``Customers``,
2. the append-only ``Settlements`` ledger,
3. the ``SettlementID`` of every reconciled sale,
4. the ``SettlementID`` of every offset advance.

The computation is split in three steps so callers can preview before
committing: :func:`calculate_margin` is pure, :func:`reconcile_settlement`
validates the selection and produces an immutable :class:`SettlementPlan`,
and :func:`apply_settlement` performs the writes inside
:func:`core_logic.ledger_transaction`. A plan records the distributor version
it was computed against and is rejected if that version moved in between, or
if the collected, billed or advanced amounts of its selection changed.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import AbstractSet, Iterable, List, Optional, Tuple

from . import core_logic, data_manager, log
from .constants import ExpenseCategory
from .core_logic import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    Distributor,
    EmptySaleSelection,
    ExpenseAlreadySettled,
    ForeignSelection,
    MissingReferenceError,
    RuntimeContext,
    SaleAlreadySettled,
    ZERO,
)


@dataclass(frozen=True)
class MarginSummary:
    """Gross settlement inputs computed over a set of sales."""

    total_amount_collected: Decimal
    amount_billed_to_distributor: Decimal
    final_margin: Decimal


@dataclass(frozen=True)
class SettlementCommand:
    """User intent for settling a selection of sales and advances."""

    distributor_id: str
    sale_ids: AbstractSet[str]
    expense_ids: AbstractSet[str] = frozenset()
    settled_on: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceChange:
    """Before/after balances of the distributor touched by a settlement."""

    distributor_id: str
    outstanding_before: Decimal
    outstanding_after: Decimal
    pending_before: Decimal
    pending_after: Decimal


@dataclass(frozen=True)
class SettlementPlan:
    """A reconciled settlement together with the writes needed to apply it."""

    settlement: data_manager.SettlementRow
    balance_change: BalanceChange
    distributor_version: int

    @property
    def sale_ids(self) -> Tuple[str, ...]:
        return self.settlement.sale_ids

    @property
    def expense_ids(self) -> Tuple[str, ...]:
        return self.settlement.expense_ids

    @property
    def is_payable(self) -> bool:
        """``True`` when the business owes the distributor money."""
        return self.settlement.settlement_amount > ZERO

    @property
    def is_receivable(self) -> bool:
        """``True`` when the distributor owes the business money."""
        return self.settlement.settlement_amount < ZERO


def item_distributor_value(item: data_manager.SaleItemRow) -> Decimal:
    """Return what ``item`` is billed to the distributor.

    A missing ``cost_to_distributor`` falls back to the customer price; an
    explicit zero cost stays zero.
    """

    unit_cost = item.cost_to_distributor if item.cost_to_distributor is not None else item.price
    return unit_cost * item.quantity


def calculate_margin(distributor_id: str, sales_for_settlement: Iterable[data_manager.SaleRow]) -> MarginSummary:
    """Compute collected amount, distributor billing, and margin for ``sales``.

    Only payments actually received from end customers count as collected,
    so unpaid or partially paid sales contribute what was collected so far.
    The margin may be negative. The function performs no I/O and accepts an
    empty selection (all figures are zero).

    Args:
        distributor_id (str): Distributor the sales were filtered for; used for
            diagnostics only.
        sales_for_settlement (Iterable[SaleRow]): Sales already filtered to
            the distributor's unsettled sales.

    Returns:
        MarginSummary: Collected total, billed total, and their difference.
    """

    total_collected = ZERO
    total_billed = ZERO
    count = 0
    for sale in sales_for_settlement:
        total_collected += core_logic.sale_amount_collected(sale)
        total_billed += sum((item_distributor_value(item) for item in sale.items), ZERO)
        count += 1

    margin = total_collected - total_billed
    log.debug(
        "Margin for distributor '%s' over %d sales: collected=%s billed=%s margin=%s",
        distributor_id,
        count,
        total_collected,
        total_billed,
        margin,
    )
    return MarginSummary(
        total_amount_collected=total_collected,
        amount_billed_to_distributor=total_billed,
        final_margin=margin,
    )


def compute_balance_change(distributor: Distributor, settlement: data_manager.SettlementRow) -> BalanceChange:
    """Derive the distributor's new balances from a settlement.

    The applied part of the outstanding balance is cleared first. A positive
    settlement amount is then added to the pending payment (payable); a
    negative one is added to the outstanding balance (receivable).

    Raises:
        BusinessRuleViolation: If the applied part is negative or exceeds the
            outstanding balance, if the settlement amount does not equal
            ``final_margin - adjustments - applied_outstanding_balance``, if
            debt is paid down while money is owed by the distributor, or if
            either resulting balance would be negative.
    """

    applied = settlement.applied_outstanding_balance
    remainder = settlement.final_margin - settlement.adjustments
    if applied < ZERO or applied > distributor.outstanding_balance:
        log.error(
            "Settlement '%s' applies %s against an outstanding balance of %s for '%s'",
            settlement.settlement_id,
            applied,
            distributor.outstanding_balance,
            distributor.distributor_id,
        )
        raise BusinessRuleViolation("Applied outstanding balance must lie between zero and the distributor's debt")
    if settlement.settlement_amount != remainder - applied or (applied > ZERO and remainder < applied):
        log.error(
            "Settlement '%s' is inconsistent: margin=%s adjustments=%s applied=%s amount=%s",
            settlement.settlement_id,
            settlement.final_margin,
            settlement.adjustments,
            applied,
            settlement.settlement_amount,
        )
        raise BusinessRuleViolation("Settlement amount does not match margin, adjustments and applied balance")

    new_outstanding = distributor.outstanding_balance - settlement.applied_outstanding_balance
    new_pending = distributor.pending_payment
    if settlement.settlement_amount > ZERO:
        new_pending += settlement.settlement_amount
    elif settlement.settlement_amount < ZERO:
        new_outstanding += abs(settlement.settlement_amount)

    if new_outstanding < ZERO or new_pending < ZERO:
        log.error(
            "Settlement '%s' would leave negative balances for '%s' (outstanding=%s pending=%s)",
            settlement.settlement_id,
            distributor.distributor_id,
            new_outstanding,
            new_pending,
        )
        raise BusinessRuleViolation("Settlement would leave a negative distributor balance")

    return BalanceChange(
        distributor_id=distributor.distributor_id,
        outstanding_before=distributor.outstanding_balance,
        outstanding_after=new_outstanding,
        pending_before=distributor.pending_payment,
        pending_after=new_pending,
    )


def generate_settlement_id(*, prefix: str = "ST", when: Optional[datetime] = None) -> str:
    """Generate a sortable settlement identifier from a UTC timestamp.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or core_logic._resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _unique_settlement_id(context: RuntimeContext, when: datetime) -> str:
    """Return a settlement id for ``when`` that is not yet in the ledger."""

    taken = {existing.settlement_id for existing in core_logic.get_settlements(context)}
    base = generate_settlement_id(when=when)
    candidate = base
    suffix = 1
    while candidate in taken:
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate


def _resolve_sales(
    context: RuntimeContext,
    distributor: Distributor,
    sale_ids: AbstractSet[str],
) -> List[data_manager.SaleRow]:
    """Load the selected sales in ledger order, rejecting ineligible ones."""

    known = {sale.sale_id for sale in core_logic.get_sales(context)}
    for sale_id in sorted(sale_ids):
        if sale_id not in known:
            log.warning("Settlement selection references unknown sale '%s'", sale_id)
            raise MissingReferenceError(f"Unknown sale id: {sale_id}")

    selected = [sale for sale in core_logic.get_sales(context) if sale.sale_id in sale_ids]
    for sale in selected:
        if sale.distributor_id != distributor.distributor_id:
            log.warning(
                "Sale '%s' belongs to distributor '%s', not '%s'",
                sale.sale_id,
                sale.distributor_id,
                distributor.distributor_id,
            )
            raise ForeignSelection(
                f"Sale '{sale.sale_id}' was not sold through distributor '{distributor.distributor_id}'"
            )
        if sale.settlement_id:
            log.warning("Sale '%s' already settled in '%s'", sale.sale_id, sale.settlement_id)
            raise SaleAlreadySettled(
                f"Sale '{sale.sale_id}' is already part of settlement '{sale.settlement_id}'"
            )
    return selected


def _resolve_expenses(
    context: RuntimeContext,
    distributor: Distributor,
    expense_ids: AbstractSet[str],
) -> List[data_manager.ExpenseRow]:
    """Load the selected advances in ledger order, rejecting ineligible ones."""

    known = {expense.expense_id for expense in core_logic.get_expenses(context)}
    for expense_id in sorted(expense_ids):
        if expense_id not in known:
            log.warning("Settlement selection references unknown expense '%s'", expense_id)
            raise MissingReferenceError(f"Unknown expense id: {expense_id}")

    selected = [e for e in core_logic.get_expenses(context) if e.expense_id in expense_ids]
    for expense in selected:
        if expense.category != ExpenseCategory.DISTRIBUTOR_PAYMENT.value:
            log.warning("Expense '%s' is a '%s', not an advance", expense.expense_id, expense.category)
            raise ForeignSelection(f"Expense '{expense.expense_id}' is not a distributor advance")
        if expense.distributor_id != distributor.distributor_id:
            log.warning(
                "Advance '%s' belongs to distributor '%s', not '%s'",
                expense.expense_id,
                expense.distributor_id,
                distributor.distributor_id,
            )
            raise ForeignSelection(
                f"Advance '{expense.expense_id}' was not paid to distributor '{distributor.distributor_id}'"
            )
        if expense.settlement_id:
            log.warning("Advance '%s' already settled in '%s'", expense.expense_id, expense.settlement_id)
            raise ExpenseAlreadySettled(
                f"Advance '{expense.expense_id}' is already part of settlement '{expense.settlement_id}'"
            )
    return selected


def reconcile_settlement(context: RuntimeContext, command: SettlementCommand) -> SettlementPlan:
    """Validate a selection and compute the resulting settlement.

    Order of the computation:

    1. ``final_margin`` over the selected sales (:func:`calculate_margin`).
    2. ``adjustments`` as the sum of the selected advances.
    3. ``amount_after_advances = final_margin - adjustments``.
    4. ``applied_outstanding_balance = min(outstanding, max(0, amount_after_advances))``
       so the distributor's debt is only paid down from what is left after
       advances, and never beyond the debt itself.
    5. ``settlement_amount = amount_after_advances - applied_outstanding_balance``;
       positive means payable to the distributor, negative receivable.

    The period covers the earliest and latest date among the selected sales.
    Nothing is written to the workbook.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SettlementCommand): Distributor and selected ids.

    Returns:
        SettlementPlan: Immutable settlement record and its balance change.

    Raises:
        EmptySaleSelection: If no sale is selected. Checked first.
        DistributorNotFound: If the distributor id is unknown or not flagged.
        MissingReferenceError: If a selected id does not exist.
        ForeignSelection: If a selected sale or advance belongs elsewhere.
        SaleAlreadySettled: If a selected sale already has a settlement.
        ExpenseAlreadySettled: If a selected advance already has a settlement.
    """
    if not command.sale_ids:
        log.warning("Settlement for distributor '%s' rejected: no sales selected", command.distributor_id)
        raise EmptySaleSelection("Select at least one sale to settle")

    distributor = core_logic.get_distributor(context, command.distributor_id)
    sales = _resolve_sales(context, distributor, command.sale_ids)
    expenses = _resolve_expenses(context, distributor, command.expense_ids)

    margin = calculate_margin(distributor.distributor_id, sales)
    total_adjustments = sum((expense.amount for expense in expenses), ZERO)
    amount_after_advances = margin.final_margin - total_adjustments
    applied_outstanding = min(distributor.outstanding_balance, max(ZERO, amount_after_advances))
    net_settlement = amount_after_advances - applied_outstanding

    settled_on = core_logic._resolve_timestamp(command.settled_on)
    sale_dates = sorted(sale.date_iso for sale in sales)
    settlement = data_manager.SettlementRow(
        settlement_id=_unique_settlement_id(context, settled_on),
        distributor_id=distributor.distributor_id,
        period_start_date=sale_dates[0],
        period_end_date=sale_dates[-1],
        settled_on=settled_on.isoformat(),
        sale_ids=tuple(sale.sale_id for sale in sales),
        expense_ids=tuple(expense.expense_id for expense in expenses),
        total_sales_value=margin.total_amount_collected,
        total_distributor_value=margin.amount_billed_to_distributor,
        final_margin=margin.final_margin,
        adjustments=total_adjustments,
        applied_outstanding_balance=applied_outstanding,
        settlement_amount=net_settlement,
    )
    plan = SettlementPlan(
        settlement=settlement,
        balance_change=compute_balance_change(distributor, settlement),
        distributor_version=distributor.version,
    )
    log.info(
        "Reconciled settlement '%s' for distributor '%s': margin=%s adjustments=%s applied=%s amount=%s",
        settlement.settlement_id,
        distributor.distributor_id,
        settlement.final_margin,
        settlement.adjustments,
        settlement.applied_outstanding_balance,
        settlement.settlement_amount,
    )
    return plan


def apply_settlement(context: RuntimeContext, plan: SettlementPlan) -> data_manager.SettlementRow:
    """Apply a reconciled settlement to the ledger as one transaction.

    Inside :func:`core_logic.ledger_transaction` the distributor is re-read
    and its version compared with the one the plan was computed against, the
    selected sales and advances are checked to still be unsettled and to add
    up to the amounts the plan was computed from, and then:

    1. the distributor's balances are updated and its version bumped,
    2. the settlement is appended to the settlement ledger,
    3. every reconciled sale receives the settlement id,
    4. every offset advance receives the settlement id.

    Any failure restores the workbook to its state before step 1.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        plan (SettlementPlan): Result of :func:`reconcile_settlement`.

    Returns:
        data_manager.SettlementRow: The persisted settlement record.

    Raises:
        ConcurrentModificationError: If the distributor or the collected,
            billed or advanced amounts of the selection changed since the plan
            was computed.
        SaleAlreadySettled: If a sale was settled in the meantime.
        ExpenseAlreadySettled: If an advance was settled in the meantime.
        BusinessRuleViolation: If the settlement id is already recorded.
    """
    settlement = plan.settlement
    with core_logic.ledger_transaction(context):
        current = core_logic.get_distributor(context, settlement.distributor_id)
        if current.version != plan.distributor_version:
            log.warning(
                "Distributor '%s' changed since settlement '%s' was computed (version %d != %d)",
                current.distributor_id,
                settlement.settlement_id,
                current.version,
                plan.distributor_version,
            )
            raise ConcurrentModificationError(
                f"Distributor '{current.distributor_id}' was modified; reconcile the settlement again"
            )

        settlements = core_logic.get_settlements(context)
        if any(existing.settlement_id == settlement.settlement_id for existing in settlements):
            raise BusinessRuleViolation(f"Settlement '{settlement.settlement_id}' is already recorded")

        sale_ids = set(settlement.sale_ids)
        expense_ids = set(settlement.expense_ids)
        margin = calculate_margin(current.distributor_id, _resolve_sales(context, current, sale_ids))
        adjustments = sum((expense.amount for expense in _resolve_expenses(context, current, expense_ids)), ZERO)
        if (
            margin.total_amount_collected != settlement.total_sales_value
            or margin.amount_billed_to_distributor != settlement.total_distributor_value
            or adjustments != settlement.adjustments
        ):
            log.warning(
                "Selection of settlement '%s' changed since it was computed (collected %s != %s, adjustments %s != %s)",
                settlement.settlement_id,
                margin.total_amount_collected,
                settlement.total_sales_value,
                adjustments,
                settlement.adjustments,
            )
            raise ConcurrentModificationError(
                f"Sales or advances of settlement '{settlement.settlement_id}' were modified; reconcile again"
            )

        change = compute_balance_change(current, settlement)
        core_logic.set_customers(
            context,
            [
                replace(
                    customer,
                    outstanding_balance=change.outstanding_after,
                    pending_payment=change.pending_after,
                    version=customer.version + 1,
                )
                if customer.customer_id == current.distributor_id
                else customer
                for customer in core_logic.get_customers(context)
            ],
        )

        core_logic.set_settlements(context, [*settlements, settlement])

        core_logic.set_sales(
            context,
            [
                replace(sale, settlement_id=settlement.settlement_id) if sale.sale_id in sale_ids else sale
                for sale in core_logic.get_sales(context)
            ],
        )

        core_logic.set_expenses(
            context,
            [
                replace(expense, settlement_id=settlement.settlement_id)
                if expense.expense_id in expense_ids
                else expense
                for expense in core_logic.get_expenses(context)
            ],
        )

    log.info(
        "Applied settlement '%s' to distributor '%s': outstanding %s -> %s, pending %s -> %s",
        settlement.settlement_id,
        change.distributor_id,
        change.outstanding_before,
        change.outstanding_after,
        change.pending_before,
        change.pending_after,
    )
    return settlement


def preview_settlement(context: RuntimeContext, command: SettlementCommand) -> SettlementPlan:
    """Reconcile ``command`` against a consistent ledger without applying it."""
    with core_logic.ledger_lock(context):
        return reconcile_settlement(context, command)


def settle_distributor(context: RuntimeContext, command: SettlementCommand) -> data_manager.SettlementRow:
    """Reconcile and apply a settlement while holding the ledger write lock.

    Concurrent callers for the same distributor are serialized, so each one
    reconciles against the balances left by the previous settlement.
    """
    with core_logic.ledger_transaction(context):
        plan = reconcile_settlement(context, command)
        return apply_settlement(context, plan)
