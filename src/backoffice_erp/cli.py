"""Command-line entry points for the back-office ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin lets tests, scripts, or any
other front-end reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, settlement
from .constants import PaymentMode


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="backoffice-cli",
        description="Command-line tools for the back-office ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as sales and settlements."""
    specs = {
        "add-customer": register_add_customer_command(subparsers),
        "add-distributor": register_add_distributor_command(subparsers),
        "sale": register_sale_command(subparsers),
        "pay": register_pay_command(subparsers),
        "advance": register_advance_command(subparsers),
        "payout": register_payout_command(subparsers),
        "settle": register_settle_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and previews."""
    specs = {
        "unsettled": register_unsettled_command(subparsers),
        "preview-settlement": register_preview_settlement_command(subparsers),
        "settlements": register_settlements_command(subparsers),
        "balances": register_balances_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_iso_date(value: str) -> date:
    """argparse ``type`` converting ``YYYY-MM-DD`` into a :class:`date`."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}") from exc


def parse_sale_item(value: str) -> core_logic.SaleItemCommand:
    """argparse ``type`` converting ``PRODUCT:QTY:PRICE[:COST]`` into an item."""
    parts = value.split(":")
    if len(parts) not in (3, 4) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Invalid item (expected PRODUCT:QTY:PRICE[:COST]): {value}")
    try:
        quantity = Decimal(parts[1])
        price = Decimal(parts[2])
        cost = Decimal(parts[3]) if len(parts) == 4 and parts[3] != "" else None
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid number in item: {value}") from exc
    return core_logic.SaleItemCommand(
        product_id=parts[0],
        quantity=quantity,
        price=price,
        cost_to_distributor=cost,
    )


def _add_customer_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--customer-id", default=None)
    parser.add_argument("--outstanding-balance", default="0")
    parser.add_argument("--pending-payment", default="0")


def _add_selection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--distributor-id", required=True)
    parser.add_argument("--sale-id", dest="sale_ids", action="append", default=[])
    parser.add_argument("--start", type=parse_iso_date, default=None, help="Select unsettled sales from this date.")
    parser.add_argument("--end", type=parse_iso_date, default=None, help="Select unsettled sales up to this date.")
    parser.add_argument("--expense-id", dest="expense_ids", action="append", default=[])
    parser.add_argument("--all-advances", action="store_true", help="Offset every unsettled advance.")


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_customer_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_add_distributor_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-distributor``."""
    name = "add-distributor"
    help_text = "Register a new distributor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_customer_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_distributor)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            type=parse_sale_item,
            action="append",
            required=True,
            help="Line item as PRODUCT:QTY:PRICE[:COST_TO_DISTRIBUTOR]; repeatable.",
        )
        parser.add_argument("--distributor-id", default=None)
        parser.add_argument("--date", dest="sale_date", type=parse_iso_date, default=None)
        parser.add_argument("--paid-amount", default="0")
        parser.add_argument(
            "--payment-mode",
            choices=[member.value for member in PaymentMode],
            default=PaymentMode.CASH.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment collected from an end customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument(
            "--mode",
            choices=[member.value for member in PaymentMode],
            default=PaymentMode.CASH.value,
        )
        parser.add_argument("--date", dest="payment_date", type=parse_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_advance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``advance``."""
    name = "advance"
    help_text = "Record an advance paid to a distributor before settlement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--distributor-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--title", default="Distributor advance")
        parser.add_argument("--date", dest="expense_date", type=parse_iso_date, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_advance)


def register_payout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payout``."""
    name = "payout"
    help_text = "Pay down the amount owed to a distributor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--distributor-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--title", default="Distributor payout")
        parser.add_argument("--date", dest="expense_date", type=parse_iso_date, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payout)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Settle selected sales and advances with a distributor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_selection_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_unsettled_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``unsettled``."""
    name = "unsettled"
    help_text = "List a distributor's unsettled sales and advances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--distributor-id", required=True)
        parser.add_argument("--start", type=parse_iso_date, default=None)
        parser.add_argument("--end", type=parse_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_unsettled_report, mutates=False)


def register_preview_settlement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``preview-settlement``."""
    name = "preview-settlement"
    help_text = "Compute a settlement without applying it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_selection_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_preview_settlement, mutates=False)


def register_settlements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settlements``."""
    name = "settlements"
    help_text = "Display the settlement history of a distributor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--distributor-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settlements_report, mutates=False)


def register_balances_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Display outstanding and pending balances of every distributor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def translate_customer(args: argparse.Namespace, *, is_distributor: bool) -> core_logic.CustomerCommand:
    """Translate CLI args into a customer registration command."""
    return core_logic.CustomerCommand(
        customer_name=args.name,
        is_distributor=is_distributor,
        customer_id=args.customer_id,
        outstanding_balance=Decimal(args.outstanding_balance),
        pending_payment=Decimal(args.pending_payment),
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        customer_id=args.customer_id,
        items=tuple(args.items),
        sale_date=args.sale_date,
        distributor_id=args.distributor_id,
        initial_payment=Decimal(args.paid_amount),
        payment_mode=PaymentMode(args.payment_mode),
    )


def translate_pay(args: argparse.Namespace) -> core_logic.SalePaymentCommand:
    """Translate CLI args into a sale payment command object."""
    return core_logic.SalePaymentCommand(
        sale_id=args.sale_id,
        amount=Decimal(args.amount),
        mode=PaymentMode(args.mode),
        payment_date=args.payment_date,
    )


def translate_advance(args: argparse.Namespace) -> core_logic.AdvancePaymentCommand:
    """Translate CLI args into an advance payment command object."""
    return core_logic.AdvancePaymentCommand(
        distributor_id=args.distributor_id,
        amount=Decimal(args.amount),
        title=args.title,
        expense_date=args.expense_date,
        notes=args.notes,
    )


def translate_payout(args: argparse.Namespace) -> core_logic.PayoutCommand:
    """Translate CLI args into a payout command object."""
    return core_logic.PayoutCommand(
        distributor_id=args.distributor_id,
        amount=Decimal(args.amount),
        title=args.title,
        expense_date=args.expense_date,
        notes=args.notes,
    )


def translate_settlement(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> settlement.SettlementCommand:
    """Translate CLI args into a settlement command object.

    Explicit ``--sale-id`` values win; otherwise ``--start``/``--end`` select
    every unsettled sale of the distributor in that range. ``--all-advances``
    adds every unsettled advance to the explicit ``--expense-id`` values.
    """
    sale_ids = set(args.sale_ids)
    if not sale_ids and (args.start is not None or args.end is not None):
        sale_ids = {
            sale.sale_id
            for sale in core_logic.list_unsettled_sales(
                context, args.distributor_id, start=args.start, end=args.end
            )
        }
    expense_ids = set(args.expense_ids)
    if args.all_advances:
        expense_ids.update(
            expense.expense_id for expense in core_logic.list_unsettled_advances(context, args.distributor_id)
        )
    return settlement.SettlementCommand(
        distributor_id=args.distributor_id,
        sale_ids=frozenset(sale_ids),
        expense_ids=frozenset(expense_ids),
    )


def format_settlement(record: data_manager.SettlementRow) -> str:
    """Render a settlement as a short multi-line summary."""
    if record.settlement_amount > 0:
        direction = "payable to distributor"
    elif record.settlement_amount < 0:
        direction = "receivable from distributor"
    else:
        direction = "nothing changes hands"
    return "\n".join(
        [
            f"Settlement {record.settlement_id} ({record.period_start_date} to {record.period_end_date})",
            f"  Sales: {', '.join(record.sale_ids)}",
            f"  Collected from customers: {record.total_sales_value:.2f}",
            f"  Billed to distributor:    {record.total_distributor_value:.2f}",
            f"  Margin:                   {record.final_margin:.2f}",
            f"  Advances offset:          {record.adjustments:.2f}",
            f"  Outstanding cleared:      {record.applied_outstanding_balance:.2f}",
            f"  Settlement amount:        {record.settlement_amount:.2f} ({direction})",
        ]
    )


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer registration workflow in the BLL."""
    record = core_logic.add_customer(context, translate_customer(args, is_distributor=False))
    print(f"Registered customer {record.customer_id}")
    return 0


def run_add_distributor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the distributor registration workflow in the BLL."""
    record = core_logic.add_customer(context, translate_customer(args, is_distributor=True))
    print(f"Registered distributor {record.customer_id}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sale(args))
    print(f"Recorded invoice {sale.invoice_number} (total {sale.total_amount:.2f})")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale payment workflow via the BLL."""
    payment = core_logic.record_sale_payment(context, translate_pay(args))
    print(f"Recorded payment {payment.payment_id} of {payment.amount:.2f} on {payment.sale_id}")
    return 0


def run_advance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the advance payment workflow via the BLL."""
    expense = core_logic.record_advance_payment(context, translate_advance(args))
    print(f"Recorded advance {expense.expense_id} of {expense.amount:.2f}")
    return 0


def run_payout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the distributor payout workflow via the BLL."""
    expense = core_logic.record_distributor_payout(context, translate_payout(args))
    print(f"Recorded payout {expense.expense_id} of {expense.amount:.2f}")
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the settlement engine."""
    record = settlement.settle_distributor(context, translate_settlement(context, args))
    print(format_settlement(record))
    return 0


def run_preview_settlement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Compute and print a settlement without applying it."""
    plan = settlement.preview_settlement(context, translate_settlement(context, args))
    print(format_settlement(plan.settlement))
    change = plan.balance_change
    print(f"  Outstanding balance: {change.outstanding_before:.2f} -> {change.outstanding_after:.2f}")
    print(f"  Pending payment:     {change.pending_before:.2f} -> {change.pending_after:.2f}")
    return 0


def run_unsettled_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print unsettled sales and advances for one distributor."""
    core_logic.get_distributor(context, args.distributor_id)
    for sale in core_logic.list_unsettled_sales(context, args.distributor_id, start=args.start, end=args.end):
        collected = core_logic.sale_amount_collected(sale)
        status = core_logic.payment_status(sale).value
        print(f"{sale.sale_id}\t{sale.date_iso}\ttotal {sale.total_amount:.2f}\tcollected {collected:.2f}\t{status}")
    for expense in core_logic.list_unsettled_advances(context, args.distributor_id):
        print(f"{expense.expense_id}\t{expense.date_iso}\tadvance {expense.amount:.2f}")
    return 0


def run_settlements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the settlement history of one distributor."""
    core_logic.get_distributor(context, args.distributor_id)
    for record in core_logic.list_distributor_settlements(context, args.distributor_id):
        print(format_settlement(record))
    return 0


def run_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the balances of every distributor."""
    for distributor in core_logic.list_distributors(context):
        print(
            f"{distributor.distributor_id}\t{distributor.name}\t"
            f"owes {distributor.outstanding_balance:.2f}\towed {distributor.pending_payment:.2f}"
        )
    balances = core_logic.distributor_balances(context)
    total_outstanding = sum((outstanding for outstanding, _ in balances.values()), Decimal("0"))
    total_pending = sum((pending for _, pending in balances.values()), Decimal("0"))
    print(f"TOTAL\towed to business {total_outstanding:.2f}\towed to distributors {total_pending:.2f}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.BusinessRuleViolation, ValueError, InvalidOperation)):
        log.error("Rejected: %s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
