"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from barsync import cli, data_manager
from barsync.errors import OutOfStock, RemoteUnavailable, ValidationError


WRITE_COMMANDS = {
    "init",
    "register",
    "add-product",
    "restock",
    "sell",
    "sync",
}

READ_COMMANDS = {
    "stock",
    "sales",
    "audit-log",
}

OWNER_ARGS = ["--business", "Kilele Lounge", "--username", "Wanjiru", "--password", "pw123"]


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return cli.build_parser()


@pytest.fixture
def subparsers_action() -> argparse._SubParsersAction:
    parser = argparse.ArgumentParser(prog="cli")
    return parser.add_subparsers(dest="command")


@pytest.fixture
def cli_context(config_file: Path) -> cli.CliContext:
    return cli.load_cli_context(config_file)


@pytest.fixture
def session_mock() -> Mock:
    session = Mock(name="session")
    session.checkout.return_value = Mock(id="S1", items=[Mock(quantity=3)], total_amount=Decimal("750"))
    return session


@pytest.fixture
def mocked_context(config_file: Path, session_mock: Mock) -> cli.CliContext:
    settings = data_manager.load_settings(config_file)
    return cli.CliContext(settings=settings, session_factory=Mock(return_value=session_mock))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert parser.prog == "barsync-cli"
    assert "BarSync" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
    assert WRITE_COMMANDS <= set(subparsers_action.choices)


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert READ_COMMANDS <= set(subparsers_action.choices)


def test_sell_command_collects_repeated_items(cli_parser):
    """The sell parser should accept several --item options and a payment method."""

    cli.configure_subcommands(cli_parser)
    namespace = cli_parser.parse_args(
        [*OWNER_ARGS, "sell", "--item", "P1:2", "--item", "P2", "--payment-method", "Mpesa"]
    )
    assert namespace.command == "sell"
    assert namespace.items == ["P1:2", "P2"]
    assert namespace.payment_method == "Mpesa"
    assert namespace.username == "Wanjiru"


def test_sell_command_rejects_unknown_payment_method(cli_parser):
    cli.configure_subcommands(cli_parser)

    with pytest.raises(SystemExit):
        cli_parser.parse_args(["sell", "--item", "P1", "--payment-method", "Cheque"])


def test_add_product_command_configures_arguments(subparsers_action):
    """register_add_product_command should define the product fields."""

    spec = cli.register_add_product_command(subparsers_action)
    parser = spec.register(subparsers_action)
    namespace = parser.parse_args(["--name", "Tusker", "--price", "250", "--stock", "24"])
    assert namespace.name == "Tusker"
    assert namespace.category == "Others"
    assert namespace.price == "250"
    assert namespace.stock == 24
    assert namespace.buying_price is None


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(cli_context):
    """dispatch_command should call the executor associated with the command."""

    executor = Mock(return_value=0)
    spec = cli.CommandSpec("stock", "help", Mock(), executor)
    args = argparse.Namespace(command="stock")

    assert cli.dispatch_command(cli_context, args, {"stock": spec}) == 0
    executor.assert_called_once_with(cli_context, args)


def test_dispatch_command_handles_unknown_commands(cli_context):
    """dispatch_command should raise a clear error for unknown commands."""

    args = argparse.Namespace(command="unknown")
    with pytest.raises(KeyError):
        cli.dispatch_command(cli_context, args, {})


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


def test_cli_context_opens_session_once(mocked_context, session_mock):
    assert mocked_context.session is session_mock
    assert mocked_context.session is session_mock
    mocked_context.session_factory.assert_called_once_with(mocked_context.settings)

    mocked_context.close()

    session_mock.close.assert_called_once_with()


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_parse_sale_items_defaults_quantity_to_one():
    assert cli.parse_sale_items(["P1:3", "P2"]) == [("P1", 3), ("P2", 1)]


@pytest.mark.parametrize("raw", ["P1:0", "P1:two", ":2"])
def test_parse_sale_items_rejects_bad_lines(raw):
    with pytest.raises(ValidationError):
        cli.parse_sale_items([raw])


def test_parse_money_rejects_non_numbers():
    assert cli.parse_money("250.50", "Price") == Decimal("250.50")
    assert cli.parse_money(None, "Price") is None
    with pytest.raises(ValidationError, match="Price"):
        cli.parse_money("lots", "Price")


def test_login_from_args_requires_credentials(mocked_context):
    args = argparse.Namespace(command="sell", business=None, username=None, password=None)

    with pytest.raises(ValidationError):
        cli.login_from_args(mocked_context, args)


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def _sell_args(*items: str) -> argparse.Namespace:
    return argparse.Namespace(
        command="sell",
        business="Kilele Lounge",
        username="Otieno",
        password="pass123",
        items=list(items),
        payment_method="Cash",
        customer_phone=None,
    )


def test_run_sell_fills_cart_and_checks_out(mocked_context, session_mock):
    """run_sell should reserve each line then check out once."""

    result = cli.run_sell(mocked_context, _sell_args("P1:3"))

    assert result == 0
    session_mock.login.assert_called_once_with("Kilele Lounge", "Otieno", "pass123")
    session_mock.add_to_cart.assert_called_once_with("P1")
    session_mock.set_quantity.assert_called_once_with("P1", 2)
    session_mock.checkout.assert_called_once_with("Cash", None)


def test_run_sell_releases_cart_on_failure(mocked_context, session_mock):
    """run_sell should release reserved stock before surfacing the error."""

    session_mock.set_quantity.side_effect = OutOfStock("Only 1 more of 'Tusker' available")

    with pytest.raises(OutOfStock):
        cli.run_sell(mocked_context, _sell_args("P1:3"))

    session_mock.clear_cart.assert_called_once_with()
    session_mock.checkout.assert_not_called()


def test_run_sync_reports_pending_work(mocked_context, session_mock, capsys):
    session_mock.sync_now.return_value = Mock(
        state=Mock(value="OFFLINE"), last_sync=None, last_error="unreachable", pending=True
    )
    args = argparse.Namespace(command="sync", business="Kilele Lounge", username="Otieno", password="pass123")

    assert cli.run_sync(mocked_context, args) == 1

    output = capsys.readouterr().out
    assert "State: OFFLINE" in output
    assert "Last sync: never" in output
    assert "Last error: unreachable" in output


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (ValidationError("invalid"), 2),
        (RemoteUnavailable("offline"), 2),
        (FileNotFoundError("missing"), 3),
        (FileExistsError("exists"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_init_creates_store(config_factory):
    bundle = config_factory(create_store=False)

    assert cli.main(["--config", str(bundle.config_path), "init"]) == 0
    assert bundle.data_file.exists()
    assert cli.main(["--config", str(bundle.config_path), "init"]) == 3
    assert cli.main(["--config", str(bundle.config_path), "init", "--overwrite"]) == 0


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "stock"]) == 3


def test_main_offline_register_stock_and_sell(config_factory, capsys):
    """A terminal without a remote store can onboard, stock, and sell."""

    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]

    assert cli.main([*config, "register", "--business-name", "Kilele Lounge",
                     "--owner-name", "Wanjiru", "--owner-password", "pw123"]) == 0
    assert cli.main([*config, *OWNER_ARGS, "add-product", "--name", "Tusker",
                     "--category", "Beer", "--price", "250", "--stock", "5"]) == 0
    product = data_manager.load_snapshot(bundle.data_file).products[0]

    assert cli.main([*config, *OWNER_ARGS, "sell", "--item", f"{product.id}:2"]) == 0
    assert cli.main([*config, *OWNER_ARGS, "sell", "--item", f"{product.id}:9"]) == 2
    assert cli.main([*config, *OWNER_ARGS, "stock"]) == 0

    snapshot = data_manager.load_snapshot(bundle.data_file)
    assert snapshot.products[0].stock == 3
    assert len(snapshot.sales) == 1
    assert snapshot.sales[0].total_amount == Decimal("500")
    assert f"{product.id}\tBeer\tTusker\t250\t3" in capsys.readouterr().out


def test_main_sync_without_remote_fails(config_factory):
    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]
    cli.main([*config, "register", "--business-name", "Kilele Lounge",
              "--owner-name", "Wanjiru", "--owner-password", "pw123"])

    assert cli.main([*config, *OWNER_ARGS, "sync"]) == 2


def test_main_stock_lists_only_the_callers_products(config_factory, capsys):
    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]
    other_args = ["--business", "Other Bar", "--username", "Kamau", "--password", "pw456"]
    cli.main([*config, "register", "--business-name", "Kilele Lounge",
              "--owner-name", "Wanjiru", "--owner-password", "pw123"])
    cli.main([*config, "register", "--business-name", "Other Bar",
              "--owner-name", "Kamau", "--owner-password", "pw456"])
    cli.main([*config, *OWNER_ARGS, "add-product", "--name", "Kilele Secret Gin", "--price", "900", "--stock", "4"])
    capsys.readouterr()

    assert cli.main([*config, *other_args, "stock"]) == 0

    assert "Kilele Secret Gin" not in capsys.readouterr().out


def test_main_requires_credentials_for_sales(config_factory):
    bundle = config_factory()

    assert cli.main(["--config", str(bundle.config_path), "sell", "--item", "P1"]) == 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
