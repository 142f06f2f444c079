"""
CLI interface for AI Spend Guard.

Manages budgets and reports costs recorded in the SQLite stores.
"""

import sqlite3
import sys
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_spend_guard.config.loader import default_config, load_config
from ai_spend_guard.core.budget import Budget, BudgetStatus, Scope
from ai_spend_guard.core.estimator import CostEstimator
from ai_spend_guard.core.ledger import BudgetLedger
from ai_spend_guard.core.messages import Message
from ai_spend_guard.core.periods import PeriodType
from ai_spend_guard.core.pricing import DEFAULT_PRICING
from ai_spend_guard.logging_config import configure_logging
from ai_spend_guard.storage.budget_store import SqliteBudgetStore
from ai_spend_guard.storage.db import DEFAULT_DB_PATH
from ai_spend_guard.storage.repository import CostRecordRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_STATUS_STYLE = {
    BudgetStatus.OK: "green",
    BudgetStatus.WARNING: "yellow",
    BudgetStatus.CRITICAL: "red",
    BudgetStatus.EXCEEDED: "bold red",
    BudgetStatus.DISABLED: "dim",
}

DbOption = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Minimum log level"),
):
    """AI Spend Guard CLI."""
    configure_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("AI Spend Guard - Use --help to see available commands")


@app.command()
def init(db: str = DbOption):
    """Create the budget and cost record tables."""
    try:
        SqliteBudgetStore(db).initialize_schema()
        CostRecordRepository(db).initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("budget-create")
def budget_create(
    scope: str = typer.Option(..., "--scope", "-s", help="Scope such as user:42 or project:web"),
    period: PeriodType = typer.Option(PeriodType.DAILY, "--period", "-p", help="Budget period"),
    limit: float = typer.Option(..., "--limit", "-l", help="Spending limit"),
    warning: float = typer.Option(80.0, "--warning", help="Warning threshold percent"),
    critical: float = typer.Option(90.0, "--critical", help="Critical threshold percent"),
    currency: str = typer.Option("USD", "--currency", help="Budget currency"),
    db: str = DbOption,
):
    """Create a budget, replacing any active one for the same scope and period."""
    try:
        ledger = BudgetLedger(_budget_store(db))
        budget = ledger.create_budget(
            Scope.parse(scope),
            period,
            Decimal(str(limit)),
            currency=currency.upper(),
            warning_threshold=warning,
            critical_threshold=critical,
        )
        console.print(
            f"[green]✓[/] {period.value} budget of {_format_currency(budget.limit)} set for {budget.scope}"
        )
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def budgets(
    scope: Optional[str] = typer.Option(None, "--scope", "-s", help="Only show this scope"),
    db: str = DbOption,
):
    """List active budgets with their usage."""
    try:
        store = _budget_store(db)
        rows = store.list(Scope.parse(scope) if scope else None)
        if not rows:
            console.print("\n[bold yellow]No budgets configured[/]")
            console.print("Create one with `ai-spend-guard budget-create --scope user:42 --limit 10`\n")
            sys.exit(EXIT_CODE_PASS)
        _display_budgets(rows, BudgetLedger(store))
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.OperationalError as e:
        _handle_missing_tables(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def rollover(db: str = DbOption):
    """Roll expired budgets into their current period."""
    try:
        rolled = BudgetLedger(_budget_store(db)).rollover_expired()
        if not rolled:
            console.print("No budgets needed rolling over")
        for budget in rolled:
            console.print(
                f"[green]✓[/] {budget.scope} {budget.period_type.value} "
                f"now runs {budget.period_start:%Y-%m-%d} to {budget.period_end:%Y-%m-%d}"
            )
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.OperationalError as e:
        _handle_missing_tables(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def costs(
    days: int = typer.Option(30, "--days", "-d", help="Days to look back"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Only this model"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this user"),
    db: str = DbOption,
):
    """Summarize recorded costs."""
    try:
        stats = CostRecordRepository(db).get_usage_stats(model=model, user_id=user, days=days)
        console.print(f"\n[bold]AI Costs (last {days} days)[/bold]")
        console.print("-" * 40)
        console.print(f"Requests: {stats['total_requests']:,}")
        console.print(f"Tokens: {stats['total_tokens']:,}")
        console.print(f"Total cost: {_format_currency(stats['total_cost'])}")
        console.print(f"Average cost/request: {_format_currency(stats['avg_cost'])}\n")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.OperationalError as e:
        _handle_missing_tables(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def estimate(
    text: str = typer.Argument(..., help="Prompt text to estimate"),
    model: str = typer.Option("gpt-4o-mini", "--model", "-m", help="Model to price against"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config with pricing overrides"),
):
    """Estimate the cost of sending a prompt."""
    try:
        settings = load_config(config) if config else default_config()
        estimator = CostEstimator(
            pricing=DEFAULT_PRICING.with_overrides(settings.pricing),
            precision=settings.cost_tracking.precision,
            currency=settings.cost_tracking.currency,
        )
        if estimator.pricing.find(model) is None:
            console.print(f"[red]Error:[/] Unsupported model: {model}")
            sys.exit(EXIT_CODE_FAIL)

        result = estimator.estimate([Message.user(text)], model)
        console.print(f"\n[bold]Estimate for {model}[/bold]")
        console.print(f"Tokens: {result.tokens} ({result.input_tokens} in / {result.output_tokens} out)")
        console.print(f"Estimated cost: {result.cost} {result.currency}\n")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _budget_store(db: str) -> SqliteBudgetStore:
    return SqliteBudgetStore(db)


def _format_currency(amount: Decimal) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_budgets(rows, ledger: BudgetLedger) -> None:
    table = Table(title="Budgets")
    table.add_column("Scope")
    table.add_column("Period")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Status")

    for budget in rows:
        used = ledger.current_usage(budget)
        status = _status(budget, used)
        table.add_row(
            str(budget.scope),
            budget.period_type.value,
            _format_currency(budget.limit),
            _format_currency(used),
            _format_currency(max(Decimal("0"), budget.limit - used)),
            f"[{_STATUS_STYLE[status]}]{status.value}[/]",
        )
    console.print(table)


def _status(budget: Budget, used: Decimal) -> BudgetStatus:
    if used == budget.current_usage:
        return budget.status
    # Expired window: usage reads as zero until the next rollover
    return BudgetStatus.OK if budget.is_active else BudgetStatus.DISABLED


def _handle_missing_tables(error: sqlite3.OperationalError) -> None:
    if "no such table" in str(error).lower():
        console.print("\n[bold yellow]Database not initialized[/]")
        console.print("Run `ai-spend-guard init` first\n")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
