"""
CLI interface for invoice billing.

Triggers billing passes on demand, runs the recurring scheduler and
inspects the ledger.
"""

import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from invoice_billing.config.loader import (
    BillingConfig,
    NotificationChannel,
    default_billing_config,
    load_billing_config,
)
from invoice_billing.core.billing import BillingService
from invoice_billing.core.notifier import ConsoleNotifier, LoggingNotifier
from invoice_billing.core.payment import SandboxPaymentProvider
from invoice_billing.core.scheduler import BillingScheduler
from invoice_billing.demo.seed_demo_data import seed_demo_data
from invoice_billing.storage.models import InvoiceStatus
from invoice_billing.storage.repository import SQLiteLedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


@dataclass
class CLISettings:
    config: BillingConfig
    db_path: str


def _settings(ctx: typer.Context) -> CLISettings:
    return ctx.obj


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _build_service(settings: CLISettings, interactive: bool = True) -> BillingService:
    """Wire the billing service from configuration.

    Interactive commands always print the billing report to the console
    (and log it); notifications.channel only selects how the scheduler
    delivers it.
    """
    config = settings.config
    recipient = config.notifications.report_recipient
    if interactive or config.notifications.channel == NotificationChannel.CONSOLE:
        notifier = ConsoleNotifier(console, report_recipient=recipient)
    else:
        notifier = LoggingNotifier(report_recipient=recipient)
    return BillingService(
        repository=SQLiteLedgerRepository(settings.db_path),
        payment_provider=SandboxPaymentProvider(
            success_rate=config.payments.success_rate,
            seed=config.payments.seed
        ),
        notifier=notifier,
        pass_lock_timeout_seconds=config.schedules.pass_lock_timeout_seconds
    )


def _fail(message: str, error: Exception) -> None:
    if isinstance(error, sqlite3.OperationalError) and "no such table" in str(error).lower():
        console.print("[bold yellow]Ledger database is not initialized[/]")
        console.print("Run `invoice-billing init` to create it.")
    else:
        console.print(f"[red]{message}:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Path to SQLite ledger (overrides the configuration)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Invoice billing CLI."""
    _configure_logging(verbose)
    try:
        config = load_billing_config(config_path) if config_path else default_billing_config()
    except Exception as e:
        _fail("Error loading configuration", e)
    ctx.obj = CLISettings(config=config, db_path=db_path or config.database.path)
    if ctx.invoked_subcommand is None:
        console.print("Invoice Billing - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        initialize_schema(_settings(ctx).db_path)
    except Exception as e:
        _fail("Error initializing database", e)
    console.print("[green]✓[/] Database initialized successfully")


@app.command()
def seed(
    ctx: typer.Context,
    customers: int = typer.Option(100, "--customers", min=1, help="Number of customers to create"),
    invoices: int = typer.Option(10, "--invoices", min=1, help="Invoices per customer"),
    random_seed: Optional[int] = typer.Option(None, "--seed", help="Random seed for reproducible data")
):
    """Fill the ledger with demo customers and invoices."""
    try:
        repository = SQLiteLedgerRepository(_settings(ctx).db_path)
        repository.initialize_schema()
        created = seed_demo_data(repository, customers, invoices, random_seed)
    except Exception as e:
        _fail("Error seeding demo data", e)
    console.print(f"[green]✓[/] Created {customers} customers and {created} invoices")


@app.command()
def process(ctx: typer.Context):
    """Charge every pending invoice and print the billing report.

    The report is always printed here; notifications.channel applies to
    the scheduler only. Waits for a pass already running on the ledger.
    """
    try:
        _build_service(_settings(ctx)).process_pending_invoices()
    except Exception as e:
        _fail("Error processing invoices", e)


@app.command()
def close(ctx: typer.Context):
    """Fail every invoice still pending as overdue and print the billing report.

    The report is always printed here; notifications.channel applies to
    the scheduler only. Waits for a pass already running on the ledger.
    """
    try:
        _build_service(_settings(ctx)).close_pending_invoices()
    except Exception as e:
        _fail("Error closing invoices", e)


@app.command()
def report(
    ctx: typer.Context,
    start: Optional[datetime] = typer.Option(
        None,
        "--from",
        formats=DATETIME_FORMATS,
        help="Window start in UTC (default: 24 hours ago)"
    ),
    end: Optional[datetime] = typer.Option(
        None,
        "--to",
        formats=DATETIME_FORMATS,
        help="Window end in UTC (default: now)"
    )
):
    """Print the billing report for a time window.

    The report is always printed here; notifications.channel applies to
    the scheduler only.
    """
    now = datetime.now(timezone.utc)
    window_end = _as_utc(end) if end else now
    window_start = _as_utc(start) if start else window_end - timedelta(days=1)
    if window_start > window_end:
        console.print("[red]Error:[/] --from must not be after --to")
        sys.exit(EXIT_CODE_FAIL)
    try:
        _build_service(_settings(ctx)).send_billing_report(window_start, window_end)
    except Exception as e:
        _fail("Error sending billing report", e)


@app.command()
def invoices(
    ctx: typer.Context,
    status: Optional[InvoiceStatus] = typer.Option(
        None,
        "--status",
        "-s",
        case_sensitive=False,
        help="Only list invoices in this status"
    )
):
    """List invoices in the ledger."""
    try:
        repository = SQLiteLedgerRepository(_settings(ctx).db_path)
        rows = repository.fetch_invoices_by_status(status) if status else repository.fetch_invoices()
    except Exception as e:
        _fail("Error fetching invoices", e)

    table = Table(title="Invoices")
    table.add_column("ID", justify="right")
    table.add_column("Customer", justify="right")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    for invoice in rows:
        table.add_row(
            str(invoice.id),
            str(invoice.customer_id),
            f"{invoice.amount.value:,.2f} {invoice.amount.currency.value}",
            invoice.status.value
        )
    console.print(table)


@app.command()
def customers(ctx: typer.Context):
    """List customers in the ledger."""
    try:
        rows = SQLiteLedgerRepository(_settings(ctx).db_path).fetch_customers()
    except Exception as e:
        _fail("Error fetching customers", e)

    table = Table(title="Customers")
    table.add_column("ID", justify="right")
    table.add_column("Currency")
    for customer in rows:
        table.add_row(str(customer.id), customer.currency.value)
    console.print(table)


@app.command()
def audit(
    ctx: typer.Context,
    invoice_id: Optional[int] = typer.Option(None, "--invoice", "-i", help="Only show entries for this invoice")
):
    """Show the billing audit log."""
    try:
        entries = SQLiteLedgerRepository(_settings(ctx).db_path).fetch_audit_entries(invoice_id)
    except Exception as e:
        _fail("Error fetching audit log", e)

    table = Table(title="Billing Audit Log")
    table.add_column("Timestamp")
    table.add_column("Invoice", justify="right")
    table.add_column("Result")
    table.add_column("Comment")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.invoice_id),
            entry.result,
            entry.comment or ""
        )
    console.print(table)


@app.command()
def status(ctx: typer.Context):
    """Show how many invoices are in each status."""
    try:
        repository = SQLiteLedgerRepository(_settings(ctx).db_path)
        counts = {
            invoice_status: len(repository.fetch_invoices_by_status(invoice_status))
            for invoice_status in InvoiceStatus
        }
    except Exception as e:
        _fail("Error reading ledger", e)

    table = Table(title="Ledger Status")
    table.add_column("Status")
    table.add_column("Invoices", justify="right")
    for invoice_status, count in counts.items():
        table.add_row(invoice_status.value, f"{count:,}")
    console.print(table)


@app.command()
def schedule(
    ctx: typer.Context,
    run: List[str] = typer.Option(
        [],
        "--run",
        help="Run a job (billing or overdue) immediately after starting"
    )
):
    """Run the recurring billing scheduler until interrupted."""
    settings = _settings(ctx)
    schedules = settings.config.schedules
    scheduler = BillingScheduler.for_billing(
        _build_service(settings, interactive=False),
        process_schedule=schedules.process_pending,
        close_schedule=schedules.close_pending,
        tick_interval_seconds=schedules.tick_interval_seconds
    )
    unknown = [name for name in run if name not in scheduler.jobs]
    if unknown:
        console.print(f"[red]Unknown job(s):[/] {', '.join(unknown)}")
        sys.exit(EXIT_CODE_FAIL)

    for name in run:
        scheduler.run_now(name)

    console.print(
        f"[green]✓[/] Scheduler running (billing: '{schedules.process_pending}', "
        f"overdue: '{schedules.close_pending}'). Press Ctrl+C to stop."
    )
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()


if __name__ == "__main__":
    app()
