"""
Billing outcome taxonomy.

Defines the closed set of classification tags written to the audit log
and the tagged result of a single settlement attempt.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ResultTag(str, Enum):
    """Classification tags recorded in the billing audit log."""
    PAYMENT_SUCCESSFUL = "PaymentSuccessful"
    PAYMENT_UNSUCCESSFUL = "PaymentUnsuccessful"
    NETWORK_FAILURE = "NetworkFailure"
    CUSTOMER_NOT_FOUND = "CustomerNotFound"
    CURRENCY_MISMATCH = "CurrencyMismatch"
    UNCLASSIFIED_ERROR = "UnclassifiedError"
    OVERDUE = "Overdue"  # close-out sweep only


class ChargeOutcomeKind(Enum):
    """Every way a settlement attempt can end."""
    CHARGED = auto()
    DECLINED = auto()
    NETWORK_FAILURE = auto()
    CUSTOMER_NOT_FOUND = auto()
    CURRENCY_MISMATCH = auto()
    UNCLASSIFIED = auto()


@dataclass(frozen=True)
class ChargeOutcome:
    """Result of charging one invoice.

    ``error`` holds the exception raised by the payment provider for every
    kind except CHARGED and DECLINED.
    """
    kind: ChargeOutcomeKind
    error: Optional[BaseException] = None

    @classmethod
    def charged(cls) -> "ChargeOutcome":
        return cls(ChargeOutcomeKind.CHARGED)

    @classmethod
    def declined(cls) -> "ChargeOutcome":
        return cls(ChargeOutcomeKind.DECLINED)

    @classmethod
    def failed(cls, kind: ChargeOutcomeKind, error: BaseException) -> "ChargeOutcome":
        if kind in (ChargeOutcomeKind.CHARGED, ChargeOutcomeKind.DECLINED):
            raise ValueError(f"{kind.name} is not a failure outcome")
        return cls(kind, error)

    @property
    def error_description(self) -> Optional[str]:
        """Exception type name and message, e.g. ``"KeyError: 'x'"``."""
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"
