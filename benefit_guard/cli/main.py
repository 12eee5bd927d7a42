"""
CLI interface for Benefit Guard.

Provides command-line access to billed queries, balances and stored records.
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from benefit_guard.config.loader import ServiceConfig, load_service_config
from benefit_guard.config.logging import configure_logging
from benefit_guard.core.errors import BenefitGuardError
from benefit_guard.core.lookup import RecordLookup
from benefit_guard.core.orchestrator import QueryOrchestrator, QueryResult
from benefit_guard.storage.directory import CredentialDirectory
from benefit_guard.storage.ledger import CreditLedger
from benefit_guard.storage.models import PAYLOAD_COLUMNS, QueryRecord
from benefit_guard.storage.repository import ResultStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to YAML service configuration"
)


def _load_config(config_path: Optional[str]) -> ServiceConfig:
    config = load_service_config(config_path)
    configure_logging(config.logging.level, config.logging.json)
    return config


def _fail(error: Exception) -> None:
    if isinstance(error, BenefitGuardError):
        console.print(f"[red]{error.code}:[/] {error.message}")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Benefit Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Benefit Guard - Use --help to see available commands")


@app.command()
def status():
    """Check that the CLI is installed."""
    console.print("[green]✓[/] Benefit Guard is installed")


@app.command()
def init(config_path: Optional[str] = ConfigOption):
    """Initialize the Benefit Guard database."""
    try:
        config = _load_config(config_path)
        initialize_schema(config.database.path)
        console.print(f"[green]✓[/] Database initialized at {config.database.path}")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        _fail(e)


@app.command()
def query(
    document: str = typer.Argument(..., help="Beneficiary document number"),
    benefit: str = typer.Argument(..., help="Benefit number"),
    login: str = typer.Option(..., "--login", "-l", help="Login charged for the query"),
    config_path: Optional[str] = ConfigOption,
):
    """
    Query a benefit balance, charging one credit on success.

    A stored result younger than the validity window is reused instead of
    calling the lookup service; reuse is still charged.
    """
    try:
        config = _load_config(config_path)
        result = asyncio.run(_run_query(config, document, benefit, login))
    except Exception as e:
        _fail(e)
        return

    _display_query_result(result)
    sys.exit(EXIT_CODE_OK)


async def _run_query(config: ServiceConfig, document: str, benefit: str, login: str) -> QueryResult:
    orchestrator = QueryOrchestrator.from_config(config)
    try:
        return await orchestrator.submit_query(document, benefit, login)
    finally:
        await orchestrator.aclose()


@app.command()
def balance(
    login: str = typer.Option(..., "--login", "-l", help="Login to inspect"),
    config_path: Optional[str] = ConfigOption,
):
    """Show the credit summary across all of a user's ledger rows."""
    try:
        config = _load_config(config_path)
        summary = asyncio.run(_aggregate_balance(config, login))
    except Exception as e:
        _fail(e)
        return

    table = Table(title=f"Credits for {login}")
    table.add_column("Total loaded", justify="right")
    table.add_column("Available", justify="right")
    table.add_column("Queries made", justify="right")
    table.add_row(str(summary.total_loaded), str(summary.available_limit), str(summary.queries_made))
    console.print(table)
    sys.exit(EXIT_CODE_OK)


async def _aggregate_balance(config: ServiceConfig, login: str):
    user_id = await CredentialDirectory(config.database.path).resolve_user(login)
    return await CreditLedger(config.database.path).aggregate_balance(user_id)


@app.command()
def latest(
    document: str = typer.Argument(..., help="Beneficiary document number"),
    benefit: str = typer.Argument(..., help="Benefit number"),
    config_path: Optional[str] = ConfigOption,
):
    """Show the most recent stored record for a benefit. Never charged."""
    try:
        config = _load_config(config_path)
        lookup = RecordLookup(ResultStore(config.database.path))
        record = asyncio.run(lookup.latest(document, benefit))
    except Exception as e:
        _fail(e)
        return

    _display_record(record)
    sys.exit(EXIT_CODE_OK)


def _display_query_result(result: QueryResult):
    """Display the charged record and the remaining balance."""
    _display_record(result.record)
    console.print(f"Origin: {result.origin.value}")
    console.print(f"Available credits: [bold]{result.available_limit}[/]")
    console.print(f"Queries made: {result.queries_made}")


def _display_record(record: QueryRecord):
    table = Table(title=f"Benefit {record.benefit_number} / document {record.document_number}")
    table.add_column("Field")
    table.add_column("Value")
    for column in PAYLOAD_COLUMNS:
        value = getattr(record.payload, column)
        if value is not None:
            table.add_row(column, str(value))
    console.print(table)
    console.print(f"Recorded at: {record.recorded_at.isoformat(sep=' ', timespec='seconds')}")
    if not record.is_valid:
        console.print("[yellow]No beneficiary was matched for this record[/]")


if __name__ == "__main__":
    app()
