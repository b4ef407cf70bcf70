"""
Customer and operations notifications.

Notification failures never affect billing state: each send is caught
on its own and reported back as a boolean or a log line.
"""

import logging
from typing import Dict, Optional, Protocol

from rich.console import Console
from rich.table import Table

from .report import order_report

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers declined-payment notices and billing reports."""

    def notify_customer_declined(self, customer_id: int) -> bool:
        """Tell a customer their balance did not cover the charge.

        Returns:
            True if the notice went out, False otherwise. Must not raise.
        """
        ...

    def send_report(self, billing_results: Dict[str, int]) -> None:
        """Send the per-tag outcome counts of a billing pass to operations."""
        ...


class LoggingNotifier:
    """Notifier that records notices and reports to the application logger.

    A log-only stand-in for an email gateway: customer notices are written
    to the log and always count as sent.
    """

    def __init__(self, report_recipient: Optional[str] = None):
        self.report_recipient = report_recipient

    def notify_customer_declined(self, customer_id: int) -> bool:
        logger.info("Payment unsuccessful notice sent to customer %s", customer_id)
        return True

    def send_report(self, billing_results: Dict[str, int]) -> None:
        try:
            summary = ", ".join(
                f"{tag}={count}" for tag, count in order_report(billing_results)
            )
            logger.info(
                "Billing report for %s: %s",
                self.report_recipient or "operations",
                summary or "no billing activity",
                extra={"billing_results": dict(billing_results)},
            )
        except Exception:
            logger.exception("Error sending billing report")


class ConsoleNotifier(LoggingNotifier):
    """Notifier that also prints billing reports as a table."""

    def __init__(self, console: Optional[Console] = None, report_recipient: Optional[str] = None):
        super().__init__(report_recipient)
        self.console = console or Console()

    def send_report(self, billing_results: Dict[str, int]) -> None:
        super().send_report(billing_results)
        try:
            self.console.print(render_report_table(billing_results))
        except Exception:
            logger.exception("Error printing billing report")


def render_report_table(billing_results: Dict[str, int]) -> Table:
    """Build a rich table with one row per result tag and a total row."""
    table = Table(title="Billing Report")
    table.add_column("Result")
    table.add_column("Invoices", justify="right")

    rows = order_report(billing_results)
    for tag, count in rows:
        table.add_row(tag, f"{count:,}")
    if not rows:
        table.add_row("[dim]no billing activity[/]", "0")
    table.add_section()
    table.add_row("[bold]Total[/]", f"{sum(billing_results.values()):,}")
    return table
