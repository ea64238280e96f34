"""
CLI interface for Card Ledger.

Provides command-line access to card issuance, authorization, payments
and the background fee scheduler.
"""

import logging
import signal
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from card_ledger.config.loader import CONFIG_PATH_ENV, LedgerConfig, load_config
from card_ledger.core.codec import CardNumberCodec, mask_card_number
from card_ledger.core.money import format_money
from card_ledger.exceptions import (
    CardLedgerError,
    CardNotAuthorizedError,
    CardNotFoundError,
    ConfigurationError,
    ValidationError,
)
from card_ledger.logging import setup_logging
from card_ledger.sdk.ledger import CardLedger
from card_ledger.storage.models import Card
from card_ledger.storage.repository import initialize_schema

app = typer.Typer(help="Card ledger and authorization engine.")
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

_state = {"config_path": None}


def _load_config() -> LedgerConfig:
    config = load_config(_state["config_path"])
    setup_logging(config.logging.level, config.logging.format)
    return config


def _get_ledger() -> CardLedger:
    return CardLedger.from_config(_load_config())


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _run(action):
    """Run a command body, mapping ledger errors to exit codes."""
    try:
        return action()
    except (ConfigurationError, FileNotFoundError) as e:
        _fail(f"Configuration problem: {e}")
    except (ValidationError, CardNotFoundError, CardNotAuthorizedError) as e:
        _fail(str(e))
    except CardLedgerError as e:
        logger.exception("Command failed")
        _fail(f"Internal failure: {e}")


def _print_card(card: Card, card_number: Optional[str] = None) -> None:
    table = Table(show_header=False)
    table.add_row("Card id", str(card.id))
    if card_number is not None:
        table.add_row("Card number", card_number)
    table.add_row("Token", card.stored_number)
    table.add_row("Balance", format_money(card.balance))
    table.add_row("Credit limit", format_money(card.credit_limit))
    table.add_row("Spending power", format_money(card.spending_power))
    table.add_row("Active", "yes" if card.active else "no")
    console.print(table)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar=CONFIG_PATH_ENV,
        help="Path to YAML configuration file",
    ),
):
    """Card Ledger CLI."""
    _state["config_path"] = config
    if ctx.invoked_subcommand is None:
        console.print("Card Ledger - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    def action():
        config = _load_config()
        initialize_schema(config.database.path)
        console.print(f"[green]✓[/] Database initialized at {config.database.path}")

    _run(action)


@app.command()
def keygen():
    """Print a new codec key for the configuration file."""
    typer.echo(CardNumberCodec.generate_key())


@app.command("create-card")
def create_card(
    credit_limit: Optional[str] = typer.Option(
        None,
        "--credit-limit",
        "-l",
        help="Credit limit for the new card",
    ),
):
    """Issue a new card with a random balance."""
    def action():
        issued = _get_ledger().create_card(credit_limit)
        console.print("[green]✓[/] Card issued")
        _print_card(issued.card, issued.card_number)

    _run(action)


@app.command()
def authorize(token: str = typer.Argument(..., help="Card token")):
    """Check whether a card may be used now."""
    def action():
        if _get_ledger().authorize(token):
            console.print("[green]✓[/] Card authorized successfully.")
        else:
            _fail("Card is not authorized.")

    _run(action)


@app.command()
def pay(
    token: str = typer.Argument(..., help="Card token"),
    amount: str = typer.Argument(..., help="Amount to charge"),
):
    """Charge an amount plus the current fee to a card."""
    def action():
        transaction = _get_ledger().pay(token, amount)
        console.print(
            f"[green]✓[/] Charged {format_money(transaction.amount)} "
            f"+ fee {format_money(transaction.fee)} "
            f"(transaction {transaction.id})"
        )

    _run(action)


@app.command()
def balance(token: str = typer.Argument(..., help="Card token")):
    """Show a card's balance and credit limit."""
    def action():
        ledger = _get_ledger()
        card = ledger.get_balance(token)
        if card is None:
            _fail("Card not found.")
        _print_card(card, mask_card_number(ledger.card_number(card)))

    _run(action)


@app.command()
def update(
    token: str = typer.Argument(..., help="Card token"),
    new_balance: Optional[str] = typer.Option(None, "--balance", "-b", help="New balance"),
    credit_limit: Optional[str] = typer.Option(None, "--credit-limit", "-l", help="New credit limit"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive", help="Activate or deactivate"),
):
    """Update a card's balance, credit limit or status."""
    def action():
        card = _get_ledger().update_card(
            token, balance=new_balance, credit_limit=credit_limit, active=active
        )
        console.print("[green]✓[/] Card updated")
        _print_card(card)

    _run(action)


@app.command()
def fee(
    history: int = typer.Option(0, "--history", "-n", help="Also list this many recent fee entries"),
):
    """Show the current payment fee."""
    def action():
        ledger = _get_ledger()
        console.print(f"Current fee: {format_money(ledger.current_fee())}")
        if history > 0:
            table = Table(title="Fee history")
            table.add_column("When")
            table.add_column("Fee")
            for entry in ledger.fees.fee_history(history):
                table.add_row(entry.recorded_at.isoformat(timespec="seconds"), format_money(entry.fee))
            console.print(table)

    _run(action)


@app.command("seed-fee")
def seed_fee():
    """Append an initial random fee to the timeline."""
    _run(lambda: console.print(f"[green]✓[/] Fee seeded at {format_money(_get_ledger().fees.seed_fee())}"))


@app.command("evolve-fee")
def evolve_fee():
    """Run one step of the fee random walk."""
    _run(lambda: console.print(f"[green]✓[/] Fee updated to {format_money(_get_ledger().fees.evolve_fee())}"))


@app.command()
def history(
    token: str = typer.Argument(..., help="Card token"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum transactions to show"),
):
    """Show a card's payments and audited updates."""
    def action():
        card_history = _get_ledger().history(token, limit)

        payments = Table(title="Transactions")
        for column in ("Id", "When", "Amount", "Fee", "Total"):
            payments.add_column(column)
        for tx in card_history.transactions:
            payments.add_row(
                str(tx.id), tx.occurred_at.isoformat(timespec="seconds"),
                format_money(tx.amount), format_money(tx.fee), format_money(tx.total),
            )
        console.print(payments)

        changes = Table(title="Updates")
        for column in ("When", "Field", "Old", "New"):
            changes.add_column(column)
        for change in card_history.field_changes:
            changes.add_row(
                change.changed_at.isoformat(timespec="seconds"),
                change.field, change.old_value or "-", change.new_value,
            )
        console.print(changes)

    _run(action)


@app.command("run-scheduler")
def run_scheduler():
    """Run the background fee updater until interrupted."""
    def action():
        config = _load_config()
        scheduler = CardLedger.from_config(config).fee_scheduler(config)

        def _shutdown(signum, frame):
            logger.info("Received signal %d, stopping fee scheduler", signum)
            scheduler.stop()

        signal.signal(signal.SIGTERM, _shutdown)
        console.print(
            f"Fee scheduler running every {config.fees.update_interval_seconds:g}s "
            "(Ctrl+C to stop)"
        )
        try:
            scheduler.run()
        except KeyboardInterrupt:
            scheduler.stop()
        console.print("Fee scheduler stopped")

    _run(action)


if __name__ == "__main__":
    app()
