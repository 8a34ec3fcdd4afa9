"""Command-line entry points for the POS engine.

This module only wires argparse and translates arguments into calls on the
business and reporting layers. Keeping it thin lets tests and other
front-ends reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reporting


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    persists: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the POS sale engine.",
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
    """Declare mutating CLI commands."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "sales": register_sales_command(subparsers),
        "summary": register_summary_command(subparsers),
        "top-products": register_top_products_command(subparsers),
        "top-sellers": register_top_sellers_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_decimal(raw: str) -> Decimal:
    """Argparse type for prices and rates: any finite decimal number."""
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Expected a number, got '{raw}'") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"Expected a finite number, got '{raw}'")
    return value


def parse_cart_line(raw: str) -> core_logic.CartLine:
    """Parse ``PRODUCT:QTY`` or ``PRODUCT:QTY:PRICE`` into a cart line."""
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT:QTY[:PRICE], got '{raw}'")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{raw}'") from exc
    unit_price: Optional[Decimal] = None
    if len(parts) == 3 and parts[2] != "":
        try:
            unit_price = Decimal(parts[2])
        except InvalidOperation as exc:
            raise argparse.ArgumentTypeError(f"Price must be a number in '{raw}'") from exc
    return core_logic.CartLine(product_id=parts[0], quantity=quantity, unit_price=unit_price)


def _add_period_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--from", dest="date_from", default=None, help="First day (YYYY-MM-DD).")
    parser.add_argument("--to", dest="date_to", default=None, help="Last day (YYYY-MM-DD), inclusive.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--unit-price", type=parse_decimal, required=True)
        parser.add_argument("--tax-rate", type=parse_decimal, default=Decimal("0"))
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, persists=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Process a cart and commit it as a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_cart_line,
            default=[],
            help="Cart line as PRODUCT:QTY[:PRICE]; repeat for more lines.",
        )
        parser.add_argument("--user", required=True, help="Acting user id.")
        parser.add_argument("--payment-method", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales matching the given filters."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_arguments(parser)
        parser.add_argument("--user", dest="user_id", default=None)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--payment-method", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display totals, ticket average, and growth for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_top_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``top-products``."""
    name = "top-products"
    help_text = "Display best-selling products by quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_arguments(parser)
        parser.add_argument("--limit", type=int, default=10)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_top_products_report)


def register_top_sellers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``top-sellers``."""
    name = "top-sellers"
    help_text = "Display users ranked by amount sold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_arguments(parser)
        parser.add_argument("--limit", type=int, default=10)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_top_sellers_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display products at or below the low-stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


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


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "product_name": args.product_name,
        "quantity": args.quantity,
        "unit_price": args.unit_price,
        "tax_rate": args.tax_rate,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_sale_filter(args: argparse.Namespace) -> reporting.SaleFilter:
    """Translate CLI args into sale filter criteria."""
    return reporting.SaleFilter(
        date_from=args.date_from,
        date_to=args.date_to,
        user_id=args.user_id,
        product_id=args.product_id,
        payment_method=args.payment_method,
    )


def translate_period(args: argparse.Namespace) -> tuple[Optional[datetime], Optional[datetime]]:
    """Translate ``--from``/``--to`` into inclusive datetime bounds."""
    return reporting.day_bounds(args.date_from, args.date_to)


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    payload = translate_add_product(args)
    product = core_logic.add_product(context, **payload)
    print(f"Added product {product.product_id} ({product.product_name}), stock {product.quantity}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow and report the outcome."""
    result = core_logic.process_sale(context, args.lines, args.user, args.payment_method)
    if not result.success or result.sale is None:
        print(f"Sale rejected: {result.message}")
        return 2
    sale = result.sale
    print(
        f"Sale {sale.sale_id} committed: subtotal {sale.subtotal}, "
        f"tax {sale.tax_total}, total {sale.grand_total}"
    )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print sales matching the filters, one per line."""
    for sale in reporting.find_sales(context, translate_sale_filter(args)):
        print(
            f"{sale.sale_id}\t{sale.timestamp.isoformat()}\t{sale.user_id}\t"
            f"{sale.payment_method}\t{sale.grand_total}"
        )
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the period summary; defaults to today."""
    today = datetime.now(UTC).date().isoformat()
    start, end = reporting.day_bounds(args.date_from or today, args.date_to or today)
    summary = reporting.summarize_sales(context, start, end)
    growth = "n/a" if summary.growth_percent is None else f"{summary.growth_percent}%"
    print(f"Total: {summary.total_amount}")
    print(f"Sales: {summary.sale_count}")
    print(f"Average ticket: {summary.average_ticket}")
    print(f"Growth vs previous period: {growth}")
    return 0


def run_top_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the product ranking."""
    start, end = translate_period(args)
    for entry in reporting.top_products(context, args.limit, start, end):
        print(f"{entry.product_id}\t{entry.product_name}\t{entry.quantity}\t{entry.amount}")
    return 0


def run_top_sellers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the seller ranking."""
    start, end = translate_period(args)
    for entry in reporting.top_sellers(context, args.limit, start, end):
        print(f"{entry.user_id}\t{entry.sale_count}\t{entry.total_amount}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products at or below the threshold."""
    for product in reporting.low_stock_products(context, args.threshold):
        print(f"{product.product_id}\t{product.product_name}\t{product.quantity}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after a successful catalog command."""
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
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].persists:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
