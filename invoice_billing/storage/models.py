"""
Data models for storage layer.

Defines ledger entities: customers, invoices and the billing audit trail.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Currency(Enum):
    """Currencies an invoice or customer account can be denominated in."""
    EUR = "EUR"
    USD = "USD"
    DKK = "DKK"
    SEK = "SEK"
    GBP = "GBP"


class InvoiceStatus(Enum):
    """Lifecycle status of an invoice. PAID and FAILED are terminal."""
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Money:
    """Monetary amount in a single currency."""
    value: Decimal
    currency: Currency


@dataclass(frozen=True)
class Customer:
    id: int
    currency: Currency


@dataclass(frozen=True)
class Invoice:
    """Invoice owed by a customer.
    
    Created outside the billing engine; only the engine's transition
    logic changes its status.
    """
    id: int
    customer_id: int
    amount: Money
    status: InvoiceStatus


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one billing outcome for one invoice.
    
    Append-only: rows are never updated or deleted once written.
    The timestamp is assigned by the repository at write time.
    """
    id: int
    invoice_id: int
    result: str
    timestamp: datetime
    comment: Optional[str] = None


@dataclass(frozen=True)
class AuditCount:
    """Number of audit entries sharing a result tag."""
    result: str
    count: int
