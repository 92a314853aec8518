"""Command-line entry points for the ledgerbook toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Reports are printed to stdout; everything else goes to the log.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, ledger, log
from .constants import (
    MONEY_QUANTUM,
    AdjustmentType,
    CreditNoteAgainst,
    PaymentType,
    TransactionKind,
)
from .errors import LedgerError, ValidationError
from .reports import Period
from .units import convert_price


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


TRANSACTION_COMMANDS: Dict[str, TransactionKind] = {
    "sale": TransactionKind.SALE,
    "purchase": TransactionKind.PURCHASE,
    "credit-note": TransactionKind.CREDIT_NOTE,
    "payment-in": TransactionKind.PAYMENT_IN,
    "payment-out": TransactionKind.PAYMENT_OUT,
    "expense": TransactionKind.EXPENSE,
}

ADJUSTMENT_CHOICES = [member.value for member in AdjustmentType]
PAYMENT_CHOICES = [member.value for member in PaymentType]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledgerbook",
        description="Command-line tools for the ledgerbook workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to a search upward from the working directory).",
    )
    parser.add_argument(
        "--tenant",
        default=None,
        help="Tenant to act for (defaults to [Defaults] DefaultTenant).",
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
    """Declare mutating CLI commands: registrations and the six transaction kinds."""
    specs = {
        "add-party": register_add_party_command(),
        "add-item": register_add_item_command(),
        **{name: register_transaction_command(name, kind) for name, kind in TRANSACTION_COMMANDS.items()},
        "update": register_update_command(),
        "delete": register_delete_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "balance": register_balance_command(),
        "stock": register_stock_command(),
        "cogs": register_cogs_command(),
        "profit": register_profit_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_document_arguments(parser: argparse.ArgumentParser, *, required_party: bool) -> None:
    parser.add_argument("--party", required=required_party, help="Party id or name; unknown names are created.")
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        default=[],
        metavar="ITEM:QTY[:UNIT[:PRICE[:DISCOUNT]]]",
        help="Line item; repeat for several lines. ITEM is an item id or name.",
    )
    parser.add_argument("--discount", default="0")
    parser.add_argument("--discount-type", choices=ADJUSTMENT_CHOICES, default=AdjustmentType.PERCENT.value)
    parser.add_argument("--tax", default="0")
    parser.add_argument("--tax-type", choices=ADJUSTMENT_CHOICES, default=AdjustmentType.PERCENT.value)
    parser.add_argument("--paid", default=None, help="Amount settled on the document itself.")
    parser.add_argument("--payment-type", choices=PAYMENT_CHOICES, default=PaymentType.CREDIT.value)
    parser.add_argument("--notes", default=None)


def _add_payment_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--amount", default=None)
    parser.add_argument("--target", default=None, help="Settle one specific Sale or Purchase.")
    parser.add_argument("--allow-advance", action="store_true", help="Keep any excess as an advance.")


def register_add_party_command() -> CommandSpec:
    """Register the parser and executor for ``add-party``."""
    name = "add-party"
    help_text = "Register a customer or supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--opening-balance", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_party)


def register_add_item_command() -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a stock item with its units and opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--unit", required=True, help='Base unit, or "Base / Secondary".')
        parser.add_argument("--conversion-factor", default=None, help="Base units per secondary unit.")
        parser.add_argument("--opening-quantity", default="0", help="Opening stock in base units.")
        parser.add_argument("--purchase-price", default="0")
        parser.add_argument("--sale-price", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_transaction_command(name: str, kind: TransactionKind) -> CommandSpec:
    """Register the parser and executor for one transaction kind."""
    help_text = f"Record a {kind.value.replace('_', ' ').lower()}."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if kind in (TransactionKind.PAYMENT_IN, TransactionKind.PAYMENT_OUT):
            parser.add_argument("--party", default=None, help="Party id or name; optional with --target.")
            _add_payment_arguments(parser)
            parser.add_argument("--notes", default=None)
        else:
            _add_document_arguments(parser, required_party=True)
            if kind is TransactionKind.EXPENSE:
                parser.add_argument("--amount", default=None, help="Expense total when no lines are given.")
            if kind is TransactionKind.CREDIT_NOTE:
                parser.add_argument(
                    "--against",
                    choices=[member.value for member in CreditNoteAgainst],
                    default=CreditNoteAgainst.SALE.value,
                )
        parser.set_defaults(command=name, kind=kind.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_transaction)


def register_update_command() -> CommandSpec:
    """Register the parser and executor for ``update``."""
    name = "update"
    help_text = "Replace the contents of an existing transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        _add_document_arguments(parser, required_party=False)
        _add_payment_arguments(parser)
        parser.add_argument("--against", choices=[member.value for member in CreditNoteAgainst], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_transaction)


def register_delete_command() -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a transaction and reverse its effects."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_transaction)


def register_balance_command() -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Show party balances, or one party's balance breakdown."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance_report)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Show stock quantity and FIFO value per item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def _add_period_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--from", dest="date_from", default=None, help="Inclusive start date (YYYY-MM-DD).")
    parser.add_argument("--to", dest="date_to", default=None, help="Exclusive end date (YYYY-MM-DD).")


def register_cogs_command() -> CommandSpec:
    """Register the parser and executor for ``cogs``."""
    name = "cogs"
    help_text = "Show the FIFO cost of goods sold for an item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", required=True)
        _add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cogs_report)


def register_profit_command() -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Show the profit and loss summary."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


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


def resolve_tenant(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "tenant", None) or context.settings.default_tenant


def parse_line(raw: str) -> Dict[str, Optional[str]]:
    """Split ``ITEM:QTY[:UNIT[:PRICE[:DISCOUNT]]]``; empty fields become ``None``."""
    parts = raw.split(":")
    if len(parts) < 2 or len(parts) > 5 or not parts[0].strip() or not parts[1].strip():
        raise ValidationError(f"Invalid line specification: {raw!r}", field="line_items")
    parts += [""] * (5 - len(parts))
    item, quantity, unit, price, discount = (part.strip() or None for part in parts)
    return {"item": item, "quantity": quantity, "unit": unit, "price": price, "discount": discount}


def translate_lines(
    context: core_logic.RuntimeContext,
    tenant_id: str,
    kind: TransactionKind,
    raw_lines: Sequence[str],
) -> List[core_logic.LineItemInput]:
    """Translate ``--line`` values, pricing lines without a price from the item."""
    lines: List[core_logic.LineItemInput] = []
    for raw in raw_lines:
        parsed = parse_line(raw)
        if kind is TransactionKind.EXPENSE:
            lines.append(
                core_logic.LineItemInput(
                    item_id=None,
                    description=parsed["item"],
                    quantity=parsed["quantity"],
                    unit_price=parsed["price"] or "0",
                    discount=parsed["discount"] or "0",
                )
            )
            continue
        item_id = core_logic.resolve_item_id(context, tenant_id, parsed["item"])
        price = parsed["price"]
        if price is None:
            item = core_logic.get_item(context, tenant_id, item_id)
            base_price = item.purchase_price if kind is TransactionKind.PURCHASE else item.sale_price
            price = convert_price(item.unit, base_price, item.unit.base_unit, parsed["unit"])
        lines.append(
            core_logic.LineItemInput(
                item_id=item_id,
                quantity=parsed["quantity"],
                unit=parsed["unit"],
                unit_price=price,
                discount=parsed["discount"] or "0",
            )
        )
    return lines


def translate_party(
    context: core_logic.RuntimeContext,
    tenant_id: str,
    reference: Optional[str],
) -> Dict[str, Optional[str]]:
    """Map a ``--party`` value onto an existing id or a name to create."""
    if reference is None:
        return {"party_id": None, "party_name": None}
    party_id = core_logic.resolve_party_id(context, tenant_id, reference)
    if party_id is not None:
        return {"party_id": party_id, "party_name": None}
    return {"party_id": None, "party_name": reference}


def translate_transaction(
    context: core_logic.RuntimeContext,
    tenant_id: str,
    kind: TransactionKind,
    args: argparse.Namespace,
) -> core_logic.TransactionCommand:
    """Translate CLI args into a transaction command object."""
    against = getattr(args, "against", None)
    return core_logic.TransactionCommand(
        **translate_party(context, tenant_id, getattr(args, "party", None)),
        line_items=translate_lines(context, tenant_id, kind, getattr(args, "lines", [])),
        discount=getattr(args, "discount", "0"),
        discount_type=AdjustmentType(getattr(args, "discount_type", AdjustmentType.PERCENT.value)),
        tax=getattr(args, "tax", "0"),
        tax_type=AdjustmentType(getattr(args, "tax_type", AdjustmentType.PERCENT.value)),
        amount_paid=getattr(args, "paid", None),
        payment_type=PaymentType(getattr(args, "payment_type", PaymentType.CREDIT.value)),
        credit_note_against=CreditNoteAgainst(against) if against else None,
        amount=getattr(args, "amount", None),
        target_transaction_id=getattr(args, "target", None),
        allow_advance=getattr(args, "allow_advance", False),
        notes=getattr(args, "notes", None),
    )


def parse_period(args: argparse.Namespace) -> Optional[Period]:
    """Build a UTC :class:`Period` from ``--from``/``--to`` dates."""
    bounds = []
    for raw in (getattr(args, "date_from", None), getattr(args, "date_to", None)):
        if raw is None:
            bounds.append(None)
            continue
        try:
            bounds.append(datetime.fromisoformat(raw).replace(tzinfo=UTC))
        except ValueError as exc:
            raise ValidationError(f"Invalid date: {raw!r}", field="period") from exc
    if bounds == [None, None]:
        return None
    return Period(start=bounds[0], end=bounds[1])


def format_money(value: Decimal) -> str:
    return str(value.quantize(MONEY_QUANTUM))


def format_balance(value: Decimal) -> str:
    """Money plus a receivable/payable label; settled balances carry none."""

    label = ledger.describe_balance(value)
    return f"{format_money(value)}\t{label}" if label else format_money(value)


def run_add_party(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-party workflow in the BLL."""
    party = core_logic.register_party(
        context,
        resolve_tenant(context, args),
        core_logic.RegisterPartyCommand(name=args.name, opening_balance=args.opening_balance),
    )
    print(f"{party.party_id}\t{party.name}")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.register_item(
        context,
        resolve_tenant(context, args),
        core_logic.RegisterItemCommand(
            name=args.name,
            unit=args.unit,
            conversion_factor=args.conversion_factor,
            opening_quantity=args.opening_quantity,
            purchase_price=args.purchase_price,
            sale_price=args.sale_price,
        ),
    )
    print(f"{item.item_id}\t{item.name}\t{item.unit.label}")
    return 0


def run_create_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a create workflow for the kind bound to the sub-command."""
    tenant_id = resolve_tenant(context, args)
    kind = TransactionKind(args.kind)
    command = translate_transaction(context, tenant_id, kind, args)
    result = core_logic.create_transaction(context, kind, tenant_id, command)
    print(f"{result.number_issued}\t{result.document.transaction_id}\t{format_money(result.document.grand_total)}")
    if result.unallocated > 0:
        print(f"unallocated\t{format_money(result.unallocated)}")
    return 0


def run_update_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update workflow via the BLL."""
    tenant_id = resolve_tenant(context, args)
    stored = core_logic.get_transaction(context, tenant_id, args.transaction_id)
    command = translate_transaction(context, tenant_id, stored.kind, args)
    if command.party_id is None and command.party_name is None:
        command = _with_party(command, stored.party_id)
    updated = core_logic.update_transaction(context, tenant_id, args.transaction_id, command)
    print(f"{updated.document_number}\t{updated.transaction_id}\t{format_money(updated.grand_total)}")
    return 0


def _with_party(command: core_logic.TransactionCommand, party_id: Optional[str]) -> core_logic.TransactionCommand:
    return replace(command, party_id=party_id)


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow via the BLL."""
    removed = core_logic.delete_transaction(context, resolve_tenant(context, args), args.transaction_id)
    print(f"deleted\t{removed.document_number}\t{removed.transaction_id}")
    return 0


def run_balance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the party balance report."""
    tenant_id = resolve_tenant(context, args)
    if args.party is None:
        for party in core_logic.list_parties(context, tenant_id):
            print(f"{party.party_id}\t{party.name}\t{format_balance(party.balance)}")
        return 0
    party_id = core_logic.resolve_party_id(context, tenant_id, args.party)
    if party_id is None:
        raise ValidationError(f"Unknown party: {args.party}", field="party")
    report = core_logic.get_party_balance(context, tenant_id, party_id)
    print(f"{report.name}\t{format_balance(report.balance)}")
    print(f"  sales\t{format_money(report.components.sales_balance)}")
    print(f"  purchases\t{format_money(report.components.purchases_balance)}")
    print(f"  opening\t{format_money(report.components.opening_balance)}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    tenant_id = resolve_tenant(context, args)
    if args.item is not None:
        item_id = core_logic.resolve_item_id(context, tenant_id, args.item)
        summaries = [core_logic.get_item_stock_summary(context, tenant_id, item_id)]
    else:
        summaries = core_logic.list_stock_summaries(context, tenant_id)
    for summary in summaries:
        print(f"{summary.name}\t{summary.stock_quantity} {summary.unit}\t{format_money(summary.stock_value)}")
    return 0


def run_cogs_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cost of goods sold report."""
    tenant_id = resolve_tenant(context, args)
    item_id = core_logic.resolve_item_id(context, tenant_id, args.item)
    amount = core_logic.get_cost_of_goods_sold(context, tenant_id, item_id, parse_period(args))
    print(format_money(amount))
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the profit reporting workflow."""
    report = core_logic.get_profit_and_loss(context, resolve_tenant(context, args), parse_period(args))
    for label, value in (
        ("sales", report.sales),
        ("sale returns", report.sale_returns),
        ("net sales", report.net_sales),
        ("cost of goods sold", report.cost_of_goods_sold),
        ("gross profit", report.gross_profit),
        ("expenses", report.expenses),
        ("net profit", report.net_profit),
        ("purchases", report.purchases),
        ("purchase returns", report.purchase_returns),
    ):
        print(f"{label}\t{format_money(value)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, LedgerError):
        log.error("%s", error)
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
        if exit_code == 0 and args.command in WRITE_COMMANDS:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


WRITE_COMMANDS = frozenset({"add-party", "add-item", *TRANSACTION_COMMANDS, "update", "delete"})
