"""Command-line entry points for the BarSync terminal.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on a :class:`~barsync.session.TerminalSession`.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end that wants to expose the package
capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import data_manager, inventory, log
from .checkout import summarize_sales
from .constants import PaymentMethod
from .data_manager import ConfigSettings
from .errors import BarSyncError, ValidationError
from .session import TerminalSession, ensure_schema_version


@dataclass
class CliContext:
    """Settings plus a lazily opened session shared by one CLI invocation."""

    settings: ConfigSettings
    session_factory: Callable[[ConfigSettings], TerminalSession] = TerminalSession.from_settings
    _session: Optional[TerminalSession] = field(default=None, init=False, repr=False)

    @property
    def session(self) -> TerminalSession:
        if self._session is None:
            self._session = self.session_factory(self.settings)
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[CliContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="barsync-cli",
        description="Command-line tools for the BarSync point-of-sale terminal.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    parser.add_argument("--business", default=None, help="Business name to log in to (blank for platform).")
    parser.add_argument("--username", default=None, help="User name for commands that need a login.")
    parser.add_argument("--password", default=None, help="Password for commands that need a login.")
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
    """Declare mutating CLI commands such as sales and restocks."""
    specs = {
        "init": register_init_command(subparsers),
        "register": register_register_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "restock": register_restock_command(subparsers),
        "sell": register_sell_command(subparsers),
        "sync": register_sync_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "audit-log": register_audit_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create an empty store workbook at the configured DataFile."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--overwrite", action="store_true", help="Replace an existing store.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init)


def register_register_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``register``."""
    name = "register"
    help_text = "Register a new business and its owner account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--business-name", required=True)
        parser.add_argument("--owner-name", required=True)
        parser.add_argument("--owner-password", required=True)
        parser.add_argument("--plan", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_register)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="Others")
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", required=True, type=int)
        parser.add_argument("--buying-price", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add (or, with a negative quantity, remove) units of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Ring up one or more products and check out."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT_ID[:QTY]",
            help="Product to sell; repeat for several lines.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--customer-phone", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Push local state to the remote store and report the sync status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels of the business."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only list products running low.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display the business's sales with revenue and profit totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_audit_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit-log``."""
    name = "audit-log"
    help_text = "Display the audit trail visible to the logged-in user."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=50)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_log_report)


def load_cli_context(config_path: Optional[Path] = None) -> CliContext:
    """Resolve settings for CLI operations."""
    return CliContext(settings=data_manager.load_settings(config_path))


def dispatch_command(
    context: CliContext,
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


def parse_money(raw: Optional[str], label: str) -> Optional[Decimal]:
    """Translate a CLI amount into a ``Decimal``."""
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"{label} must be a number, got {raw!r}") from exc


def parse_sale_items(raw_items: Sequence[str]) -> List[Tuple[str, int]]:
    """Translate ``PRODUCT_ID[:QTY]`` arguments into ``(id, quantity)`` pairs."""
    lines: List[Tuple[str, int]] = []
    for raw in raw_items:
        product_id, _, quantity_text = raw.partition(":")
        try:
            quantity = int(quantity_text) if quantity_text else 1
        except ValueError as exc:
            raise ValidationError(f"Invalid quantity in {raw!r}") from exc
        if not product_id or quantity < 1:
            raise ValidationError(f"Invalid sale item {raw!r}")
        lines.append((product_id, quantity))
    return lines


def login_from_args(context: CliContext, args: argparse.Namespace) -> TerminalSession:
    """Open the session and log in with the global credential options."""
    if not args.username or args.password is None:
        raise ValidationError(f"'{args.command}' requires --username and --password")
    session = context.session
    session.login(args.business, args.username, args.password)
    return session


def run_init(context: CliContext, args: argparse.Namespace) -> int:
    """Create the configured store workbook."""
    ensure_schema_version(context.settings)
    created = data_manager.create_store_workbook(context.settings.data_file, overwrite=args.overwrite)
    print(f"Created store '{created}'.")
    return 0


def run_register(context: CliContext, args: argparse.Namespace) -> int:
    """Onboard a business, as a platform user when credentials are given."""
    session = login_from_args(context, args) if args.username else context.session
    business, owner = session.register_business(
        args.business_name, args.owner_name, args.owner_password, args.plan
    )
    print(f"Registered {business.name} ({business.id}); owner {owner.name} ({owner.id}).")
    return 0


def run_add_product(context: CliContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    session = login_from_args(context, args)
    product = inventory.add_product(
        session.store,
        session.audit,
        session.user,
        name=args.name,
        category=args.category,
        price=parse_money(args.price, "Price"),
        stock=args.stock,
        buying_price=parse_money(args.buying_price, "Buying price"),
    )
    print(f"Added {product.name} ({product.id}) with {product.stock} in stock.")
    return 0


def run_restock(context: CliContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow."""
    session = login_from_args(context, args)
    product = inventory.adjust_stock(session.store, session.audit, session.user, args.product_id, args.quantity)
    print(f"{product.name} now has {product.stock} in stock.")
    return 0


def run_sell(context: CliContext, args: argparse.Namespace) -> int:
    """Fill the cart from ``--item`` arguments and check out.

    If any line cannot be reserved the cart is released before the error
    propagates, so no stock stays held by an abandoned CLI sale.
    """
    lines = parse_sale_items(args.items)
    session = login_from_args(context, args)
    try:
        for product_id, quantity in lines:
            session.add_to_cart(product_id)
            if quantity > 1:
                session.set_quantity(product_id, quantity - 1)
        sale = session.checkout(args.payment_method, args.customer_phone)
    except BarSyncError:
        session.clear_cart()
        raise
    print(f"Sale {sale.id}: {sum(item.quantity for item in sale.items)} units, total {sale.total_amount}.")
    return 0


def run_sync(context: CliContext, args: argparse.Namespace) -> int:
    """Execute an immediate push and print the bridge status."""
    session = login_from_args(context, args)
    status = session.sync_now()
    print(f"State: {status.state.value}")
    print(f"Last sync: {status.last_sync or 'never'}")
    if status.last_error:
        print(f"Last error: {status.last_error}")
    return 0 if not status.pending else 1


def run_stock_report(context: CliContext, args: argparse.Namespace) -> int:
    """Print the logged-in user's product stock levels."""
    session = login_from_args(context, args)
    products = session.visible_products()
    if args.low:
        products = inventory.low_stock(session.store, business_id=session.user.business_id)
    for product in sorted(products, key=lambda p: (p.category, p.name)):
        print(f"{product.id}\t{product.category}\t{product.name}\t{product.price}\t{product.stock}")
    log.debug("Listed %d products", len(products))
    return 0


def run_sales_report(context: CliContext, args: argparse.Namespace) -> int:
    """Print the visible sales and their summary."""
    session = login_from_args(context, args)
    sales = session.visible_sales()
    for sale in sales:
        print(f"{sale.date}\t{sale.id}\t{sale.sales_person}\t{sale.payment_method.value}\t{sale.total_amount}")
    summary = summarize_sales(sales)
    print(
        f"{summary['count']} sales, revenue {summary['total_revenue']}, "
        f"cost {summary['total_cost']}, profit {summary['profit']}"
    )
    return 0


def run_audit_log_report(context: CliContext, args: argparse.Namespace) -> int:
    """Print the audit trail visible to the logged-in user."""
    session = login_from_args(context, args)
    for entry in session.visible_audit_logs()[: max(0, args.limit)]:
        print(f"{entry.timestamp}\t{entry.user_name}\t{entry.action}\t{entry.details}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BarSyncError):
        log.error("%s", error)
        return 2
    if isinstance(error, (FileNotFoundError, FileExistsError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[CliContext] = None
    try:
        context = load_cli_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            context.close()


if __name__ == "__main__":
    raise SystemExit(main())
