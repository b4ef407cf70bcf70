"""
Invoice settlement passes.

A pass walks every PENDING invoice once, settles it, and records exactly
one audit entry per invoice. Outcome handling order:

1. Resolve - charge the invoice and decide the tag, comment and new status
   for its outcome. Resolution performs no ledger writes.
2. Record - apply the status change (if any), then write the audit entry.
3. Report - once all invoices are done, count the audit entries written
   during the pass and send them to the notifier.

Declined and network-failed invoices stay PENDING and are picked up again
by the next pass; the overdue sweep (``close_pending_invoices``) fails
whatever is still pending at the end of the billing cycle.

Passes are serialized twice: a thread lock within one service, and a
lease stored in the ledger itself so the scheduler and on-demand CLI
runs in other processes never charge the same invoice concurrently.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from invoice_billing.storage.models import AuditCount, Customer, Invoice, InvoiceStatus
from .notifier import Notifier
from .outcomes import ChargeOutcome, ChargeOutcomeKind, ResultTag
from .payment import PaymentProvider, attempt_charge
from .report import aggregate_audit_counts

logger = logging.getLogger(__name__)

EMAIL_SENT = "Email sent"
EMAIL_NOT_SENT = "Email not send"
CUSTOMER_FOUND = "Customer found in database"
CUSTOMER_NOT_FOUND = "Customer not found in database"

PASS_LOCK_POLL_SECONDS = 0.1


class PassLockTimeout(Exception):
    """Raised when another pass holds the ledger for longer than we wait."""


class LedgerRepository(Protocol):
    """Persistence operations required by the billing service."""

    def fetch_invoices_by_status(self, status: InvoiceStatus) -> List[Invoice]:
        ...

    def fetch_customer(self, customer_id: int) -> Optional[Customer]:
        ...

    def update_invoice_status(self, invoice_id: int, status: InvoiceStatus) -> bool:
        """Move a PENDING invoice to status; False if it was no longer PENDING."""
        ...

    def acquire_pass_lock(self, holder: str, lease_seconds: float) -> bool:
        ...

    def release_pass_lock(self, holder: str) -> None:
        ...

    def create_audit_entry(self, invoice_id: int, result: str, comment: Optional[str] = None) -> None:
        ...

    def count_audit_entries(self, start: datetime, end: datetime) -> List[AuditCount]:
        ...


@dataclass(frozen=True)
class InvoiceResolution:
    """What to record for one invoice: audit tag, comment, new status.

    ``status`` is None when the invoice keeps its current status.
    """
    tag: ResultTag
    status: Optional[InvoiceStatus] = None
    comment: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingService:
    """Runs settlement and overdue passes over pending invoices.

    A pass requested while another is running waits for it to finish,
    whether the other pass runs on this service or in another process
    sharing the ledger. The ledger lease is renewed before every invoice;
    a pass that loses it stops early.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        payment_provider: PaymentProvider,
        notifier: Notifier,
        clock: Optional[Callable[[], datetime]] = None,
        pass_lock_timeout_seconds: float = 300.0,
        pass_lease_seconds: float = 300.0
    ):
        """Initialize the service.

        Args:
            repository: Ledger the passes read and write
            payment_provider: Gateway used to charge invoices
            notifier: Receives declined notices and billing reports
            clock: Source of report window bounds (defaults to UTC now)
            pass_lock_timeout_seconds: How long a pass waits for the ledger lease
            pass_lease_seconds: Lease length; must outlast a single charge
        """
        self.repository = repository
        self.payment_provider = payment_provider
        self.notifier = notifier
        self.clock = clock or _utcnow
        self.pass_lock_timeout_seconds = pass_lock_timeout_seconds
        self.pass_lease_seconds = pass_lease_seconds
        self._pass_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._resolvers: Dict[ChargeOutcomeKind, Callable[[Invoice, ChargeOutcome], InvoiceResolution]] = {
            ChargeOutcomeKind.CHARGED: self._resolve_charged,
            ChargeOutcomeKind.DECLINED: self._resolve_declined,
            ChargeOutcomeKind.NETWORK_FAILURE: self._resolve_network_failure,
            ChargeOutcomeKind.CUSTOMER_NOT_FOUND: self._resolve_customer_not_found,
            ChargeOutcomeKind.CURRENCY_MISMATCH: self._resolve_currency_mismatch,
            ChargeOutcomeKind.UNCLASSIFIED: self._resolve_unclassified,
        }
        missing = set(ChargeOutcomeKind) - set(self._resolvers)
        if missing:
            raise TypeError(f"No resolver for outcome kinds: {sorted(k.name for k in missing)}")

    def process_pending_invoices(self) -> None:
        """Try to settle every PENDING invoice, then send the billing report."""
        self._run_pass("process", self._settle)

    def close_pending_invoices(self) -> None:
        """Fail every invoice still PENDING as overdue, then send the billing report.

        No payment is attempted.
        """
        self._run_pass("close", self._close)

    def send_billing_report(self, start: datetime, end: datetime) -> Dict[str, int]:
        """Count audit entries written in [start, end] per tag and send the counts.

        Args:
            start: Inclusive start of the reporting window
            end: Inclusive end of the reporting window

        Returns:
            Mapping from result tag to count; empty when nothing was written
        """
        billing_results = aggregate_audit_counts(
            self.repository.count_audit_entries(start, end)
        )
        try:
            self.notifier.send_report(billing_results)
        except Exception:
            logger.exception("Error sending billing report")
        return billing_results

    def request_stop(self) -> None:
        """Ask a running pass to stop before its next invoice."""
        self._stop_requested.set()

    def _run_pass(self, name: str, resolve: Callable[[Invoice], InvoiceResolution]) -> None:
        with self._pass_lock:
            self._stop_requested.clear()
            holder = uuid.uuid4().hex
            self._acquire_ledger(name, holder)
            try:
                self._run_locked_pass(name, holder, resolve)
            finally:
                self.repository.release_pass_lock(holder)

    def _acquire_ledger(self, name: str, holder: str) -> None:
        deadline = time.monotonic() + self.pass_lock_timeout_seconds
        while not self.repository.acquire_pass_lock(holder, self.pass_lease_seconds):
            if time.monotonic() >= deadline:
                raise PassLockTimeout(
                    f"Another billing pass still holds the ledger after "
                    f"{self.pass_lock_timeout_seconds:g}s; {name} pass not run"
                )
            logger.debug("Waiting for ledger pass lock", extra={"billing_pass": name})
            time.sleep(PASS_LOCK_POLL_SECONDS)

    def _run_locked_pass(self, name: str, holder: str, resolve: Callable[[Invoice], InvoiceResolution]) -> None:
        start = self.clock()
        invoices = self.repository.fetch_invoices_by_status(InvoiceStatus.PENDING)
        logger.info(
            "Billing pass started",
            extra={"billing_pass": name, "invoices": len(invoices)},
        )

        processed = 0
        errors = 0
        for invoice in invoices:
            if self._stop_requested.is_set():
                logger.warning(
                    "Billing pass stopped early",
                    extra={"billing_pass": name, "remaining": len(invoices) - processed},
                )
                break
            if not self.repository.acquire_pass_lock(holder, self.pass_lease_seconds):
                logger.error(
                    "Billing pass lost the ledger lock",
                    extra={"billing_pass": name, "remaining": len(invoices) - processed},
                )
                break
            if not self._process_isolated(invoice, resolve):
                errors += 1
            processed += 1

        logger.info(
            "Billing pass finished",
            extra={"billing_pass": name, "processed": processed, "errors": errors},
        )
        self.send_billing_report(start, self.clock())

    def _process_isolated(self, invoice: Invoice, resolve: Callable[[Invoice], InvoiceResolution]) -> bool:
        """Resolve and record one invoice without letting errors escape.

        If recording fails, one more attempt records the invoice as an
        unclassified failure so it still gets its audit entry.

        Returns:
            True if an outcome was recorded, False if both attempts failed
        """
        try:
            resolution = resolve(invoice)
        except Exception as e:
            logger.exception("Error processing invoice %s", invoice.id)
            resolution = self._resolve_unclassified(invoice, ChargeOutcome.failed(ChargeOutcomeKind.UNCLASSIFIED, e))

        try:
            self._record(invoice, resolution)
            return True
        except Exception as e:
            logger.exception(
                "Error recording %s for invoice %s", resolution.tag.value, invoice.id
            )
            fallback = self._resolve_unclassified(invoice, ChargeOutcome.failed(ChargeOutcomeKind.UNCLASSIFIED, e))

        try:
            # Status write is a no-op if the first attempt already moved the invoice.
            self.repository.update_invoice_status(invoice.id, fallback.status)
            self.repository.create_audit_entry(invoice.id, fallback.tag.value, fallback.comment)
        except Exception:
            logger.exception("Error recording fallback outcome for invoice %s", invoice.id)
            return False
        return True

    def _record(self, invoice: Invoice, resolution: InvoiceResolution) -> None:
        if resolution.status is not None and resolution.status != invoice.status:
            if not self.repository.update_invoice_status(invoice.id, resolution.status):
                logger.warning(
                    "Invoice %s was no longer %s; %s not recorded",
                    invoice.id, invoice.status.value, resolution.tag.value
                )
                return
        self.repository.create_audit_entry(invoice.id, resolution.tag.value, resolution.comment)

    def _settle(self, invoice: Invoice) -> InvoiceResolution:
        outcome = attempt_charge(self.payment_provider, invoice)
        return self._resolvers[outcome.kind](invoice, outcome)

    def _close(self, invoice: Invoice) -> InvoiceResolution:
        return InvoiceResolution(ResultTag.OVERDUE, InvoiceStatus.FAILED)

    def _resolve_charged(self, invoice: Invoice, outcome: ChargeOutcome) -> InvoiceResolution:
        return InvoiceResolution(ResultTag.PAYMENT_SUCCESSFUL, InvoiceStatus.PAID)

    def _resolve_declined(self, invoice: Invoice, outcome: ChargeOutcome) -> InvoiceResolution:
        # status unchanged, retried by the next pass
        try:
            email_sent = bool(self.notifier.notify_customer_declined(invoice.customer_id))
        except Exception:
            logger.exception("Error notifying customer %s", invoice.customer_id)
            email_sent = False
        return InvoiceResolution(
            ResultTag.PAYMENT_UNSUCCESSFUL,
            comment=EMAIL_SENT if email_sent else EMAIL_NOT_SENT
        )

    def _resolve_network_failure(self, invoice: Invoice, outcome: ChargeOutcome) -> InvoiceResolution:
        logger.warning("Network failure charging invoice %s: %s", invoice.id, outcome.error)
        return InvoiceResolution(ResultTag.NETWORK_FAILURE)

    def _resolve_customer_not_found(self, invoice: Invoice, outcome: ChargeOutcome) -> InvoiceResolution:
        customer = self.repository.fetch_customer(invoice.customer_id)
        return InvoiceResolution(
            ResultTag.CUSTOMER_NOT_FOUND,
            InvoiceStatus.FAILED,
            CUSTOMER_FOUND if customer is not None else CUSTOMER_NOT_FOUND
        )

    def _resolve_currency_mismatch(self, invoice: Invoice, outcome: ChargeOutcome) -> InvoiceResolution:
        customer = self.repository.fetch_customer(invoice.customer_id)
        if customer is not None:
            comment = f"Customer currency in database is {customer.currency.value}"
        else:
            comment = CUSTOMER_NOT_FOUND
        return InvoiceResolution(ResultTag.CURRENCY_MISMATCH, InvoiceStatus.FAILED, comment)

    def _resolve_unclassified(self, invoice: Invoice, outcome: ChargeOutcome) -> InvoiceResolution:
        return InvoiceResolution(
            ResultTag.UNCLASSIFIED_ERROR,
            InvoiceStatus.FAILED,
            outcome.error_description
        )
