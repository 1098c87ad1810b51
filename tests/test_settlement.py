"""Tests for margin calculation, settlement reconciliation and application."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from backoffice_erp import constants, core_logic, data_manager, settlement

SETTLED_ON = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)
ADVANCE = constants.ExpenseCategory.DISTRIBUTOR_PAYMENT.value


def _distributor(customer_id: str = "D0001", *, outstanding: str = "0", pending: str = "0", version: int = 0):
    return data_manager.CustomerRow(customer_id, f"Distributor {customer_id}", True, Decimal(outstanding), Decimal(pending), version)


def _sale(
    sale_id: str,
    *,
    collected: str,
    billed: str,
    distributor_id: str | None = "D0001",
    date_iso: str = "2024-03-01",
    settlement_id: str | None = None,
) -> data_manager.SaleRow:
    """Single-item sale where ``billed`` is the distributor cost."""

    payments = ()
    if Decimal(collected) > 0:
        payments = (data_manager.PaymentRow(f"PAY-{sale_id}", sale_id, Decimal(collected), date_iso, "cash"),)
    return data_manager.SaleRow(
        sale_id=sale_id,
        invoice_number=sale_id,
        customer_id="C0001",
        date_iso=date_iso,
        distributor_id=distributor_id,
        total_amount=max(Decimal(collected), Decimal(billed)),
        settlement_id=settlement_id,
        items=(data_manager.SaleItemRow(sale_id, "WIDGET", Decimal("1"), Decimal(collected), Decimal(billed)),),
        payments=payments,
    )


def _advance(expense_id: str, amount: str, *, distributor_id: str = "D0001", category: str = ADVANCE, settlement_id=None):
    return data_manager.ExpenseRow(expense_id, "Advance", category, Decimal(amount), "2024-03-02", distributor_id, settlement_id)


@pytest.fixture
def install_ledger(monkeypatch):
    """Serve the given rows from the mocked DAL readers."""

    def _install(*, customers=(), sales=(), expenses=(), settlements=()):
        monkeypatch.setattr(data_manager, "iter_customers", Mock(return_value=list(customers)))
        monkeypatch.setattr(data_manager, "iter_sales", Mock(return_value=list(sales)))
        monkeypatch.setattr(data_manager, "iter_expenses", Mock(return_value=list(expenses)))
        monkeypatch.setattr(data_manager, "iter_settlements", Mock(return_value=list(settlements)))

    return _install


def _command(*sale_ids: str, expense_ids=(), distributor_id: str = "D0001") -> settlement.SettlementCommand:
    return settlement.SettlementCommand(
        distributor_id=distributor_id,
        sale_ids=frozenset(sale_ids),
        expense_ids=frozenset(expense_ids),
        settled_on=SETTLED_ON,
    )


# ---------------------------------------------------------------------------
# Margin calculator
# ---------------------------------------------------------------------------


def test_calculate_margin_of_empty_selection_is_zero():
    summary = settlement.calculate_margin("D0001", [])
    assert summary == settlement.MarginSummary(Decimal("0"), Decimal("0"), Decimal("0"))


def test_calculate_margin_counts_only_collected_payments():
    """Unpaid and partially paid sales contribute what was received."""

    unpaid = _sale("INV-001", collected="0", billed="300")
    partial = replace_payments(_sale("INV-002", collected="1000", billed="600"), "250")

    summary = settlement.calculate_margin("D0001", [unpaid, partial])

    assert summary.total_amount_collected == Decimal("250")
    assert summary.amount_billed_to_distributor == Decimal("900")
    assert summary.final_margin == Decimal("-650")


def test_item_distributor_value_falls_back_to_price_only_when_cost_missing():
    """A missing cost bills the price; an explicit zero cost bills nothing."""

    missing = data_manager.SaleItemRow("INV-001", "WIDGET", Decimal("3"), Decimal("10"), None)
    free = data_manager.SaleItemRow("INV-001", "SAMPLE", Decimal("3"), Decimal("10"), Decimal("0"))
    costed = data_manager.SaleItemRow("INV-001", "GADGET", Decimal("2"), Decimal("10"), Decimal("4"))

    assert settlement.item_distributor_value(missing) == Decimal("30")
    assert settlement.item_distributor_value(free) == Decimal("0")
    assert settlement.item_distributor_value(costed) == Decimal("8")


# ---------------------------------------------------------------------------
# Reconciliation scenarios
# ---------------------------------------------------------------------------


def test_margin_smaller_than_debt_clears_part_of_outstanding(context, install_ledger):
    """Margin 400 against debt 500: nothing changes hands, debt drops to 100."""

    install_ledger(
        customers=[_distributor(outstanding="500")],
        sales=[_sale("INV-001", collected="1000", billed="600")],
    )

    plan = settlement.reconcile_settlement(context, _command("INV-001"))

    record = plan.settlement
    assert record.final_margin == Decimal("400")
    assert record.adjustments == Decimal("0")
    assert record.applied_outstanding_balance == Decimal("400")
    assert record.settlement_amount == Decimal("0")
    assert plan.balance_change.outstanding_after == Decimal("100")
    assert plan.balance_change.pending_after == Decimal("0")
    assert not plan.is_payable and not plan.is_receivable


def test_margin_after_advances_and_debt_is_payable(context, install_ledger):
    """Margin 2000, advances 300, debt 500: 1200 becomes payable."""

    install_ledger(
        customers=[_distributor(outstanding="500")],
        sales=[
            _sale("INV-001", collected="1000", billed="400", date_iso="2024-03-01"),
            _sale("INV-002", collected="2000", billed="600", date_iso="2024-03-05"),
        ],
        expenses=[_advance("EXP-001", "100"), _advance("EXP-002", "200")],
    )

    plan = settlement.reconcile_settlement(
        context, _command("INV-001", "INV-002", expense_ids=("EXP-001", "EXP-002"))
    )

    record = plan.settlement
    assert record.total_sales_value == Decimal("3000")
    assert record.total_distributor_value == Decimal("1000")
    assert record.final_margin == Decimal("2000")
    assert record.adjustments == Decimal("300")
    assert record.applied_outstanding_balance == Decimal("500")
    assert record.settlement_amount == Decimal("1200")
    assert plan.balance_change.outstanding_after == Decimal("0")
    assert plan.balance_change.pending_after == Decimal("1200")
    assert plan.is_payable
    assert (record.period_start_date, record.period_end_date) == ("2024-03-01", "2024-03-05")
    assert plan.sale_ids == ("INV-001", "INV-002")
    assert plan.expense_ids == ("EXP-001", "EXP-002")


def test_negative_margin_becomes_receivable(context, install_ledger):
    """Margin -300 with no debt: the distributor now owes 300."""

    install_ledger(
        customers=[_distributor(pending="40")],
        sales=[_sale("INV-001", collected="200", billed="500")],
    )

    plan = settlement.reconcile_settlement(context, _command("INV-001"))

    assert plan.settlement.final_margin == Decimal("-300")
    assert plan.settlement.applied_outstanding_balance == Decimal("0")
    assert plan.settlement.settlement_amount == Decimal("-300")
    assert plan.balance_change.outstanding_after == Decimal("300")
    assert plan.balance_change.pending_after == Decimal("40")
    assert plan.is_receivable


def test_empty_selection_rejected_before_any_lookup(context, monkeypatch):
    """EmptySaleSelection wins even for an unknown distributor."""

    margin = Mock(side_effect=AssertionError("margin must not be computed"))
    monkeypatch.setattr(settlement, "calculate_margin", margin)
    monkeypatch.setattr(data_manager, "iter_customers", Mock(return_value=[]))

    with pytest.raises(core_logic.EmptySaleSelection):
        settlement.reconcile_settlement(context, _command(distributor_id="D9999"))
    margin.assert_not_called()


def test_already_settled_sale_is_rejected(context, install_ledger):
    """A sale carrying a settlement id must not be silently dropped."""

    install_ledger(
        customers=[_distributor()],
        sales=[
            _sale("INV-001", collected="100", billed="50"),
            _sale("INV-002", collected="100", billed="50", settlement_id="ST1"),
        ],
    )

    with pytest.raises(core_logic.SaleAlreadySettled):
        settlement.reconcile_settlement(context, _command("INV-001", "INV-002"))


# ---------------------------------------------------------------------------
# Selection validation
# ---------------------------------------------------------------------------


def test_unknown_distributor_is_rejected(context, install_ledger):
    install_ledger(customers=[data_manager.CustomerRow("C0001", "Walk-in", False, Decimal("0"), Decimal("0"))])

    with pytest.raises(core_logic.DistributorNotFound):
        settlement.reconcile_settlement(context, _command("INV-001", distributor_id="C0001"))


def test_unknown_sale_is_a_missing_reference(context, install_ledger):
    install_ledger(customers=[_distributor()], sales=[])

    with pytest.raises(core_logic.MissingReferenceError):
        settlement.reconcile_settlement(context, _command("INV-404"))


@pytest.mark.parametrize("owner", ["D0002", None])
def test_sale_of_another_distributor_is_foreign(context, install_ledger, owner):
    install_ledger(
        customers=[_distributor()],
        sales=[_sale("INV-001", collected="100", billed="50", distributor_id=owner)],
    )

    with pytest.raises(core_logic.ForeignSelection):
        settlement.reconcile_settlement(context, _command("INV-001"))


@pytest.mark.parametrize(
    ("expense", "error"),
    [
        (_advance("EXP-001", "50", distributor_id="D0002"), core_logic.ForeignSelection),
        (_advance("EXP-001", "50", category=constants.ExpenseCategory.DISTRIBUTOR_PAYOUT.value), core_logic.ForeignSelection),
        (_advance("EXP-001", "50", category="Rent"), core_logic.ForeignSelection),
        (_advance("EXP-001", "50", settlement_id="ST1"), core_logic.ExpenseAlreadySettled),
    ],
)
def test_ineligible_expenses_are_rejected(context, install_ledger, expense, error):
    install_ledger(
        customers=[_distributor()],
        sales=[_sale("INV-001", collected="100", billed="50")],
        expenses=[expense],
    )

    with pytest.raises(error):
        settlement.reconcile_settlement(context, _command("INV-001", expense_ids=("EXP-001",)))


def test_unknown_expense_is_a_missing_reference(context, install_ledger):
    install_ledger(customers=[_distributor()], sales=[_sale("INV-001", collected="100", billed="50")])

    with pytest.raises(core_logic.MissingReferenceError):
        settlement.reconcile_settlement(context, _command("INV-001", expense_ids=("EXP-404",)))


# ---------------------------------------------------------------------------
# Balance properties
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("outstanding", ["0", "150", "5000"])
@pytest.mark.parametrize(
    ("collected", "billed", "advances"),
    [
        ("1000", "600", "0"),
        ("1000", "600", "100"),
        ("1000", "600", "700"),
        ("200", "500", "0"),
        ("200", "500", "50"),
        ("500", "500", "0"),
    ],
)
def test_settlement_amount_and_balances_are_consistent(context, install_ledger, outstanding, collected, billed, advances):
    """Applied debt stays within bounds and balances never turn negative."""

    expenses = [_advance("EXP-001", advances)] if Decimal(advances) > 0 else []
    install_ledger(
        customers=[_distributor(outstanding=outstanding, pending="10")],
        sales=[_sale("INV-001", collected=collected, billed=billed)],
        expenses=expenses,
    )

    plan = settlement.reconcile_settlement(
        context, _command("INV-001", expense_ids=[e.expense_id for e in expenses])
    )

    record = plan.settlement
    assert record.settlement_amount == record.final_margin - record.adjustments - record.applied_outstanding_balance
    assert Decimal("0") <= record.applied_outstanding_balance <= Decimal(outstanding)
    assert plan.balance_change.outstanding_after >= 0
    assert plan.balance_change.pending_after >= 0
    net_position_before = plan.balance_change.pending_before - plan.balance_change.outstanding_before
    net_position_after = plan.balance_change.pending_after - plan.balance_change.outstanding_after
    assert net_position_after - net_position_before == record.final_margin - record.adjustments


def _record(final_margin: str, adjustments: str, applied: str, amount: str) -> data_manager.SettlementRow:
    return data_manager.SettlementRow(
        "ST1", "D0001", "2024-03-01", "2024-03-01", SETTLED_ON.isoformat(), ("INV-001",), (),
        Decimal("0"), Decimal("0"), Decimal(final_margin), Decimal(adjustments), Decimal(applied), Decimal(amount),
    )


@pytest.mark.parametrize(
    "final_margin, adjustments, applied, amount",
    [
        ("0", "0", "20", "-20"),
        ("0", "0", "-5", "5"),
        ("-50", "0", "0", "30"),
        ("100", "0", "10", "50"),
        ("5", "0", "10", "-5"),
    ],
)
def test_compute_balance_change_rejects_inconsistent_records(final_margin, adjustments, applied, amount):
    """Applied debt must stay within the outstanding balance and the amounts must add up."""

    distributor = core_logic.Distributor("D0001", "Acme", Decimal("10"), Decimal("0"), 0)

    with pytest.raises(core_logic.BusinessRuleViolation):
        settlement.compute_balance_change(distributor, _record(final_margin, adjustments, applied, amount))


def test_compute_balance_change_clears_debt_then_adds_payable():
    distributor = core_logic.Distributor("D0001", "Acme", Decimal("10"), Decimal("5"), 0)

    change = settlement.compute_balance_change(distributor, _record("100", "30", "10", "60"))

    assert change.outstanding_after == Decimal("0")
    assert change.pending_after == Decimal("65")


# ---------------------------------------------------------------------------
# Settlement identifiers
# ---------------------------------------------------------------------------


def test_generate_settlement_id_is_timestamp_based():
    assert settlement.generate_settlement_id(when=SETTLED_ON) == "ST20240310120000000000"


def test_settlement_id_gets_suffix_when_taken(context, install_ledger):
    existing = data_manager.SettlementRow(
        "ST20240310120000000000", "D0001", "2024-02-01", "2024-02-01", SETTLED_ON.isoformat(), ("INV-000",), (),
        Decimal("0"), Decimal("0"), Decimal("0"), Decimal("0"), Decimal("0"), Decimal("0"),
    )
    install_ledger(
        customers=[_distributor()],
        sales=[_sale("INV-001", collected="100", billed="50")],
        settlements=[existing],
    )

    plan = settlement.reconcile_settlement(context, _command("INV-001"))

    assert plan.settlement.settlement_id == "ST20240310120000000000-2"


def test_reconcile_defaults_settled_on_to_now(context, install_ledger, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 4, 1, 8, 30, tzinfo=UTC))
    install_ledger(customers=[_distributor()], sales=[_sale("INV-001", collected="100", billed="50")])

    plan = settlement.reconcile_settlement(
        context, settlement.SettlementCommand(distributor_id="D0001", sale_ids=frozenset({"INV-001"}))
    )

    assert plan.settlement.settled_on == moment.isoformat()
    assert plan.settlement.settlement_id == "ST20240401083000000000"


# ---------------------------------------------------------------------------
# Applying settlements against a real workbook
# ---------------------------------------------------------------------------


@pytest.fixture
def settlement_ledger(runtime_context, distributor_factory, distributor_sale_factory):
    """Distributor with debt 500, two sales of margin 400 and one advance."""

    distributor = distributor_factory(outstanding_balance="500")
    first = distributor_sale_factory(distributor.customer_id, price="1000", cost="600", paid="1000", sale_date="2024-03-01")
    second = distributor_sale_factory(distributor.customer_id, price="1000", cost="600", paid="1000", sale_date="2024-03-04")
    advance = core_logic.record_advance_payment(
        runtime_context,
        core_logic.AdvancePaymentCommand(distributor_id=distributor.customer_id, amount=Decimal("100")),
    )
    return distributor, first, second, advance


def test_apply_settlement_updates_all_four_collections(runtime_context, settlement_ledger):
    distributor, first, second, advance = settlement_ledger
    command = settlement.SettlementCommand(
        distributor_id=distributor.customer_id,
        sale_ids=frozenset({first.sale_id, second.sale_id}),
        expense_ids=frozenset({advance.expense_id}),
        settled_on=SETTLED_ON,
    )

    plan = settlement.reconcile_settlement(runtime_context, command)
    record = settlement.apply_settlement(runtime_context, plan)

    after = core_logic.get_distributor(runtime_context, distributor.customer_id)
    assert (after.outstanding_balance, after.pending_payment) == (Decimal("0"), Decimal("200"))
    assert after.version == distributor.version + 1
    assert core_logic.list_distributor_settlements(runtime_context, distributor.customer_id) == [record]
    assert {core_logic.get_sale(runtime_context, sid).settlement_id for sid in record.sale_ids} == {record.settlement_id}
    assert core_logic.get_expense(runtime_context, advance.expense_id).settlement_id == record.settlement_id
    assert core_logic.list_unsettled_sales(runtime_context, distributor.customer_id) == []
    assert core_logic.list_unsettled_advances(runtime_context, distributor.customer_id) == []


def test_settled_sale_cannot_be_settled_again(runtime_context, settlement_ledger):
    distributor, first, _, _ = settlement_ledger
    command = settlement.SettlementCommand(distributor.customer_id, frozenset({first.sale_id}), settled_on=SETTLED_ON)
    settlement.settle_distributor(runtime_context, command)

    with pytest.raises(core_logic.SaleAlreadySettled):
        settlement.reconcile_settlement(runtime_context, command)
    assert len(core_logic.get_settlements(runtime_context)) == 1


def test_stale_plan_is_rejected(runtime_context, settlement_ledger):
    """Two plans computed from the same balances cannot both be applied."""

    distributor, first, second, _ = settlement_ledger
    plan_a = settlement.reconcile_settlement(
        runtime_context, settlement.SettlementCommand(distributor.customer_id, frozenset({first.sale_id}), settled_on=SETTLED_ON)
    )
    plan_b = settlement.reconcile_settlement(
        runtime_context,
        settlement.SettlementCommand(
            distributor.customer_id, frozenset({second.sale_id}), settled_on=datetime(2024, 3, 10, 12, 1, tzinfo=UTC)
        ),
    )

    settlement.apply_settlement(runtime_context, plan_a)
    with pytest.raises(core_logic.ConcurrentModificationError):
        settlement.apply_settlement(runtime_context, plan_b)

    after = core_logic.get_distributor(runtime_context, distributor.customer_id)
    assert after.outstanding_balance == Decimal("100")
    assert core_logic.get_sale(runtime_context, second.sale_id).settlement_id is None
    assert [s.settlement_id for s in core_logic.get_settlements(runtime_context)] == [plan_a.settlement.settlement_id]


def test_plan_is_rejected_after_payment_on_selected_sale(runtime_context, distributor_factory, distributor_sale_factory):
    """A payment recorded between reconcile and apply invalidates the plan."""

    distributor = distributor_factory()
    sale = distributor_sale_factory(distributor.customer_id, price="1000", cost="600", paid="0")
    command = settlement.SettlementCommand(distributor.customer_id, frozenset({sale.sale_id}), settled_on=SETTLED_ON)
    stale = settlement.reconcile_settlement(runtime_context, command)
    assert stale.settlement.settlement_amount == Decimal("-600")

    core_logic.record_sale_payment(
        runtime_context, core_logic.SalePaymentCommand(sale_id=sale.sale_id, amount=Decimal("1000"))
    )

    with pytest.raises(core_logic.ConcurrentModificationError):
        settlement.apply_settlement(runtime_context, stale)
    assert core_logic.get_settlements(runtime_context) == []
    assert core_logic.get_sale(runtime_context, sale.sale_id).settlement_id is None
    assert core_logic.get_distributor(runtime_context, distributor.customer_id).outstanding_balance == Decimal("0")

    record = settlement.apply_settlement(runtime_context, settlement.reconcile_settlement(runtime_context, command))

    assert record.total_sales_value == Decimal("1000")
    after = core_logic.get_distributor(runtime_context, distributor.customer_id)
    assert (after.outstanding_balance, after.pending_payment) == (Decimal("0"), Decimal("400"))


def test_failed_apply_leaves_no_partial_state(runtime_context, settlement_ledger, monkeypatch):
    """A failure in the last step should undo the first three."""

    distributor, first, _, advance = settlement_ledger
    plan = settlement.reconcile_settlement(
        runtime_context,
        settlement.SettlementCommand(
            distributor.customer_id,
            frozenset({first.sale_id}),
            frozenset({advance.expense_id}),
            settled_on=SETTLED_ON,
        ),
    )

    def failing_replace(*_: object) -> None:
        raise OSError("sheet locked")

    monkeypatch.setattr(data_manager, "replace_expenses", failing_replace)
    with pytest.raises(OSError, match="sheet locked"):
        settlement.apply_settlement(runtime_context, plan)
    monkeypatch.undo()

    after = core_logic.get_distributor(runtime_context, distributor.customer_id)
    assert (after.outstanding_balance, after.pending_payment, after.version) == (Decimal("500"), Decimal("0"), 0)
    assert core_logic.get_settlements(runtime_context) == []
    assert core_logic.get_sale(runtime_context, first.sale_id).settlement_id is None
    assert core_logic.get_expense(runtime_context, advance.expense_id).settlement_id is None

    # The untouched plan still applies once the failure is gone.
    settlement.apply_settlement(runtime_context, plan)
    assert core_logic.get_distributor(runtime_context, distributor.customer_id).outstanding_balance == Decimal("200")


def test_preview_settlement_does_not_write(runtime_context, settlement_ledger):
    distributor, first, second, _ = settlement_ledger

    plan = settlement.preview_settlement(
        runtime_context,
        settlement.SettlementCommand(distributor.customer_id, frozenset({first.sale_id, second.sale_id}), settled_on=SETTLED_ON),
    )

    assert plan.settlement.settlement_amount == Decimal("300")
    assert core_logic.get_settlements(runtime_context) == []
    assert core_logic.get_distributor(runtime_context, distributor.customer_id).outstanding_balance == Decimal("500")


def test_concurrent_settlements_do_not_lose_updates(runtime_context, settlement_ledger):
    """Disjoint settlements racing on one distributor both reach the balances."""

    distributor, first, second, _ = settlement_ledger
    barrier = threading.Barrier(2)
    errors: list[Exception] = []

    def settle(sale_id: str, minute: int) -> None:
        command = settlement.SettlementCommand(
            distributor.customer_id,
            frozenset({sale_id}),
            settled_on=datetime(2024, 3, 10, 12, minute, tzinfo=UTC),
        )
        barrier.wait()
        try:
            settlement.settle_distributor(runtime_context, command)
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [
        threading.Thread(target=settle, args=(first.sale_id, 0)),
        threading.Thread(target=settle, args=(second.sale_id, 1)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    after = core_logic.get_distributor(runtime_context, distributor.customer_id)
    assert (after.outstanding_balance, after.pending_payment) == (Decimal("0"), Decimal("300"))
    assert after.version == 2
    assert len(core_logic.list_distributor_settlements(runtime_context, distributor.customer_id)) == 2


def replace_payments(sale: data_manager.SaleRow, amount: str) -> data_manager.SaleRow:
    """Return ``sale`` with a single payment of ``amount``."""

    payment = data_manager.PaymentRow(f"PAY-{sale.sale_id}", sale.sale_id, Decimal(amount), sale.date_iso, "cash")
    return replace(sale, payments=(payment,))
