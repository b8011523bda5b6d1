"""
CLI interface for Quota Guard.

Inspect usage and admission state of users stored in a SQLite database.
"""

import asyncio
import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from quota_guard.config.loader import QuotaGuardConfig, load_config
from quota_guard.core.admission import AdmissionDecision
from quota_guard.core.catalog import Tier
from quota_guard.core.ledger import usage_stats
from quota_guard.core.meter import UsageMeter
from quota_guard.storage.db import DEFAULT_DB_PATH
from quota_guard.storage.repository import SqliteProfileStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_BLOCKED = 1
EXIT_CODE_ERROR = 2


class _State:
    db_path: str = DEFAULT_DB_PATH
    config: QuotaGuardConfig = QuotaGuardConfig()


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Quota Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    state.db_path = db
    state.config = QuotaGuardConfig()
    if config:
        try:
            state.config = load_config(config)
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Invalid configuration:[/] {e}")
            raise typer.Exit(EXIT_CODE_ERROR)
    if ctx.invoked_subcommand is None:
        console.print("Quota Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the Quota Guard database."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


@app.command()
def status(user_id: str = typer.Argument(..., help="User to inspect")):
    """Show tier, current usage and model breakdown for a user."""
    try:
        meter = asyncio.run(_open_meter(user_id, refresh=True))
    except sqlite3.OperationalError as e:
        _report_storage_error(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)
    _display_status(meter)


@app.command()
def check(
    user_id: str = typer.Argument(..., help="User to check"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model the request would use"),
):
    """Check whether a new request from a user would be admitted."""
    try:
        decision = asyncio.run(_admit(user_id, model))
    except sqlite3.OperationalError as e:
        _report_storage_error(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    _display_decision(decision)
    sys.exit(EXIT_CODE_PASS if decision.allowed else EXIT_CODE_BLOCKED)


@app.command("set-tier")
def set_tier(
    user_id: str = typer.Argument(..., help="User to update"),
    tier: str = typer.Argument(..., help="New tier"),
):
    """Move a user to another subscription tier."""
    parsed = Tier.parse(tier)
    if parsed is None:
        valid_tiers = ", ".join(t.value for t in Tier)
        console.print(f"[red]Unknown tier:[/] {tier} (expected one of: {valid_tiers})")
        sys.exit(EXIT_CODE_ERROR)

    try:
        asyncio.run(_change_tier(user_id, parsed))
    except sqlite3.OperationalError as e:
        _report_storage_error(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)
    console.print(f"[green]✓[/] {user_id} is now on the {parsed.value} tier")


async def _open_meter(user_id: str, refresh: bool = False) -> UsageMeter:
    store = SqliteProfileStore(state.db_path)
    meter = await UsageMeter.open(
        user_id,
        store,
        catalog=state.config.catalog,
        max_retries=state.config.persistence.max_retries,
        retry_delay=state.config.persistence.retry_delay_seconds,
    )
    if refresh:
        await meter.refresh()
    return meter


async def _admit(user_id: str, model: Optional[str]) -> AdmissionDecision:
    meter = await _open_meter(user_id)
    return await meter.admit(model_id=model)


async def _change_tier(user_id: str, tier: Tier) -> None:
    meter = await _open_meter(user_id)
    await meter.change_tier(tier)


def _report_storage_error(error: sqlite3.OperationalError) -> None:
    if "no such table" in str(error).lower():
        console.print("\n[bold yellow]Database is not initialized[/]")
        console.print("Run `quota-guard init` first.\n")
    else:
        console.print(f"[red]Database error:[/] {error}")
    sys.exit(EXIT_CODE_ERROR)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_status(meter: UsageMeter) -> None:
    """Display a user's usage against their quota."""
    stats = usage_stats(meter.ledger, meter.quota)
    period = meter.ledger.current_period
    month = stats["current_month"]
    limits = stats["limits"]

    console.print(f"\n[bold]User:[/bold] {meter.user_id}  [bold]Tier:[/bold] {meter.tier.value}")
    console.print("-" * 40)

    table = Table(title="Current usage")
    table.add_column("Limit")
    table.add_column("Used", justify="right")
    table.add_column("Quota", justify="right")
    table.add_column("%", justify="right")
    table.add_row(
        "Monthly tokens", f"{period.month_tokens:,}", f"{limits['monthly_tokens']:,}",
        f"{month['token_percentage']:.1f}",
    )
    table.add_row(
        "Monthly cost", _format_currency(period.month_cost),
        _format_currency(limits["monthly_cost"]), f"{month['cost_percentage']:.1f}",
    )
    table.add_row("Hourly requests", str(period.hour_requests), str(limits["hourly_requests"]), "")
    table.add_row("Daily requests", str(period.day_requests), str(limits["daily_requests"]), "")
    console.print(table)

    if stats["model_breakdown"]:
        models = Table(title="Models this month")
        models.add_column("Model")
        models.add_column("Tokens", justify="right")
        models.add_column("Cost", justify="right")
        models.add_column("Requests", justify="right")
        models.add_column("Share", justify="right")
        for row in stats["model_breakdown"]:
            models.add_row(
                row["model"], f"{row['tokens']:,}", _format_currency(row["cost"]),
                str(row["requests"]), f"{row['percentage']:.1f}%",
            )
        console.print(models)
    else:
        console.print("\n[dim]No usage recorded this month.[/]")

    lifetime = meter.ledger.lifetime
    console.print(
        f"\nLifetime: {lifetime.total_tokens:,} tokens, "
        f"{_format_currency(lifetime.total_cost)}, {lifetime.total_requests:,} requests"
    )


def _display_decision(decision: AdmissionDecision) -> None:
    """Display an admission decision."""
    if decision.allowed:
        console.print("[green]✓[/] Request would be admitted")
        if decision.remaining_tokens is not None:
            console.print(f"Remaining tokens: {decision.remaining_tokens:,}")
        if decision.remaining_cost is not None:
            console.print(f"Remaining cost: {_format_currency(decision.remaining_cost)}")
        return

    console.print(f"[red]✗ Blocked:[/] {decision.reason}")
    if decision.blocking_limit is not None:
        console.print(f"Limit: {decision.blocking_limit.value}")
    if decision.reset_at is not None:
        console.print(f"Resets at: {decision.reset_at.isoformat()}")


if __name__ == "__main__":
    app()
