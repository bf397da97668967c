"""
CLI interface for Token Meter.

Provides command-line access to balances, consumption and pricing over a
SQLite-backed store.
"""

import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from token_meter.config.loader import load_config
from token_meter.core.metering import ConsumptionResult, ConsumptionState, MeteringService
from token_meter.storage.db import initialize_schema
from token_meter.storage.kv import SqliteKeyValueStore, StoreError

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML metering config"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides store.path from config)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log metering decisions"
    )
):
    """Token Meter CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)]
        )

    try:
        settings = load_config(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = {
        "config": settings,
        "db_path": db or settings.store.path,
    }

    if ctx.invoked_subcommand is None:
        console.print("Token Meter - Use --help to see available commands")


def _service(ctx: typer.Context) -> MeteringService:
    store = SqliteKeyValueStore(ctx.obj["db_path"])
    return MeteringService(store, config=ctx.obj["config"])


def _store_failure(e: StoreError) -> None:
    if not _print_init_hint(str(e)):
        console.print(f"[red]Store error:[/] {str(e)}")
    sys.exit(EXIT_CODE_FAIL)


def _print_init_hint(message: str) -> bool:
    """Print the init hint if the store has no schema yet."""
    if "no such table" not in message.lower():
        return False
    console.print("\n[bold yellow]Meter store is not initialized[/]")
    console.print("Run `token-meter init` to create it.\n")
    return True


@app.command()
def status(ctx: typer.Context):
    """Show the effective configuration."""
    settings = ctx.obj["config"]
    table = Table(title="Token Meter")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    table.add_row("Store", ctx.obj["db_path"])
    table.add_row("Price in ($/1M)", str(settings.pricing.price_in))
    table.add_row("Price out ($/1M)", str(settings.pricing.price_out))
    table.add_row("Rate limit", f"{settings.rate_limit.max_requests}/{settings.rate_limit.window_seconds}s")
    table.add_row("Max output per request", str(settings.limits.max_output_units))
    console.print(table)


@app.command()
def init(ctx: typer.Context):
    """Initialize the Token Meter database."""
    try:
        initialize_schema(ctx.obj["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(ctx: typer.Context, account: str = typer.Argument(..., help="Account id")):
    """Show an account balance."""
    try:
        amount = _service(ctx).get_balance(account)
    except StoreError as e:
        _store_failure(e)
    console.print(f"{account}: {_format_units(amount)}")


@app.command()
def credit(
    ctx: typer.Context,
    account: str = typer.Argument(..., help="Account id"),
    amount: str = typer.Argument(..., help="Units to add (negative to remove)")
):
    """Credit (or with a negative amount, adjust) an account balance."""
    try:
        delta = Decimal(amount)
    except InvalidOperation:
        console.print(f"[red]Invalid amount:[/] {amount}")
        sys.exit(EXIT_CODE_FAIL)
    if not delta.is_finite():
        console.print(f"[red]Invalid amount:[/] {amount}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        new_balance = _service(ctx).credit(account, delta)
    except StoreError as e:
        _store_failure(e)
    console.print(f"[green]✓[/] Credited {account}: new balance {_format_units(new_balance)}")


@app.command()
def consume(
    ctx: typer.Context,
    account: str = typer.Argument(..., help="Account id"),
    work_id: str = typer.Argument(..., help="Unique id of the billable event"),
    input_tokens: int = typer.Option(0, "--input", "-i", help="Prompt tokens"),
    output_tokens: int = typer.Option(0, "--output", "-o", help="Completion tokens")
):
    """Bill one unit of work against an account."""
    result = _service(ctx).consume(account, work_id, input_tokens, output_tokens)
    _display_consumption(result)
    sys.exit(EXIT_CODE_PASS if result.ok else EXIT_CODE_FAIL)


@app.command()
def convert(
    ctx: typer.Context,
    input_tokens: int = typer.Option(0, "--input", "-i", help="Prompt tokens"),
    output_tokens: int = typer.Option(0, "--output", "-o", help="Completion tokens")
):
    """Show provider cost and billable units for raw usage."""
    try:
        cost = _service(ctx).convert_usage(input_tokens, output_tokens)
    except StoreError as e:
        _store_failure(e)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Provider cost: {_format_currency(cost.provider_cost)}")
    console.print(f"  input:  {_format_currency(cost.input_cost)}")
    console.print(f"  output: {_format_currency(cost.output_cost)}")
    console.print(f"Billable units: {cost.billable_units:,}")


@app.command("set-prices")
def set_prices(
    ctx: typer.Context,
    price_in: Optional[float] = typer.Option(None, "--price-in", help="$ per 1M input tokens"),
    price_out: Optional[float] = typer.Option(None, "--price-out", help="$ per 1M output tokens")
):
    """Override model prices for subsequent consumption."""
    if price_in is None and price_out is None:
        console.print("[yellow]Nothing to update:[/] pass --price-in and/or --price-out")
        sys.exit(EXIT_CODE_FAIL)
    try:
        _service(ctx).set_prices(price_in=price_in, price_out=price_out)
    except StoreError as e:
        _store_failure(e)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Prices updated")


def _format_currency(amount: float) -> str:
    """Format provider cost with enough precision for per-token prices."""
    return f"${amount:,.6f}"


def _format_units(amount: Decimal) -> str:
    return f"{amount:,}"


def _display_consumption(result: ConsumptionResult):
    """Display a consumption outcome."""
    if result.state == ConsumptionState.SETTLED:
        console.print(f"[green]✓[/] Settled {result.work_id}")
        console.print(f"Deducted: {result.deducted:,}")
        console.print(f"New balance: {_format_units(result.new_balance)}")
        console.print(f"Provider cost: {_format_currency(result.provider_cost)}")
    elif result.state == ConsumptionState.ALREADY_SETTLED:
        console.print(f"[green]✓[/] {result.work_id} already settled, nothing deducted")
    elif result.state == ConsumptionState.REJECTED_BALANCE:
        console.print(
            f"[red]insufficient_balance:[/] balance {_format_units(result.balance)}, "
            f"required {result.required:,}"
        )
    else:
        console.print(f"[red]{result.error_kind.value}:[/] {result.message}")
        if result.state == ConsumptionState.STORE_ERROR:
            _print_init_hint(result.message)
        if result.state == ConsumptionState.STORE_ERROR and result.debited:
            console.print(
                "[yellow]Balance was debited but the work id was not marked settled; "
                "retrying it will debit again.[/]"
            )


if __name__ == "__main__":
    app()
