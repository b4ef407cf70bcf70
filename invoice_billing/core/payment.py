"""
Payment provider integration.

The provider contract reports declines as ``False`` and the known failure
modes as exceptions. ``attempt_charge`` folds that contract into a single
``ChargeOutcome`` so the billing engine never has to catch provider errors.
"""

import random
from typing import Optional, Protocol

from invoice_billing.storage.models import Invoice
from .outcomes import ChargeOutcome, ChargeOutcomeKind


class PaymentError(Exception):
    """Base class for failures reported by a payment provider."""
    def __init__(self, message: str, invoice_id: Optional[int] = None):
        super().__init__(message)
        self.invoice_id = invoice_id


class NetworkError(PaymentError):
    """The provider could not be reached; the charge may be retried."""


class CustomerNotFoundError(PaymentError):
    """The provider has no account for the invoice's customer."""
    def __init__(self, customer_id: int, invoice_id: Optional[int] = None):
        super().__init__(f"Customer '{customer_id}' was not found", invoice_id)
        self.customer_id = customer_id


class CurrencyMismatchError(PaymentError):
    """The invoice currency differs from the customer's account currency."""
    def __init__(self, invoice_id: int, customer_id: int):
        super().__init__(
            f"Currency of invoice '{invoice_id}' does not match currency of customer '{customer_id}'",
            invoice_id
        )
        self.customer_id = customer_id


class PaymentProvider(Protocol):
    """External payment capability."""

    def charge(self, invoice: Invoice) -> bool:
        """Charge the customer account for the invoice amount.

        Returns:
            True when the account was charged, False when it was declined
            (e.g. insufficient balance)

        Raises:
            NetworkError: on transient connectivity problems
            CustomerNotFoundError: when no account exists for the customer
            CurrencyMismatchError: when the invoice and account currencies differ
        """
        ...


_FAILURE_KINDS = (
    (NetworkError, ChargeOutcomeKind.NETWORK_FAILURE),
    (CustomerNotFoundError, ChargeOutcomeKind.CUSTOMER_NOT_FOUND),
    (CurrencyMismatchError, ChargeOutcomeKind.CURRENCY_MISMATCH),
)


def classify_error(error: BaseException) -> ChargeOutcomeKind:
    """Map a provider exception onto its outcome kind.

    Anything outside the three known failure types is UNCLASSIFIED.
    """
    for error_type, kind in _FAILURE_KINDS:
        if isinstance(error, error_type):
            return kind
    return ChargeOutcomeKind.UNCLASSIFIED


def attempt_charge(provider: PaymentProvider, invoice: Invoice) -> ChargeOutcome:
    """Charge an invoice and describe the result as a ChargeOutcome.

    Never raises for provider failures: every exception, expected or not,
    becomes a failure outcome carrying the original error.

    Args:
        provider: Payment provider to charge through
        invoice: Invoice to settle

    Returns:
        The settlement outcome
    """
    try:
        successful = provider.charge(invoice)
    except Exception as e:
        return ChargeOutcome.failed(classify_error(e), e)

    if successful is True:
        return ChargeOutcome.charged()
    if successful is False:
        return ChargeOutcome.declined()
    return ChargeOutcome.failed(
        ChargeOutcomeKind.UNCLASSIFIED,
        TypeError(f"Payment provider returned {successful!r} instead of a bool")
    )


class SandboxPaymentProvider:
    """Stand-in provider that approves a fixed share of charges at random.

    Used when no real gateway is wired in, e.g. for demos and local runs.
    """

    def __init__(self, success_rate: float = 0.8, seed: Optional[int] = None):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self._random = random.Random(seed)

    def charge(self, invoice: Invoice) -> bool:
        return self._random.random() < self.success_rate
