# invoice_billing/demo/seed_demo_data.py

import random
from decimal import Decimal
from typing import Optional

from invoice_billing.storage.models import Currency, InvoiceStatus, Money
from invoice_billing.storage.repository import SQLiteLedgerRepository


def seed_demo_data(
    repository: SQLiteLedgerRepository,
    customers: int = 100,
    invoices_per_customer: int = 10,
    seed: Optional[int] = None
) -> int:
    """Fill the ledger with customers and a billing history.

    Each customer gets one PENDING invoice for the current cycle; the
    rest are PAID invoices from earlier cycles. Invoices are billed in
    the customer's currency.

    Returns:
        Number of invoices created
    """
    rng = random.Random(seed)
    currencies = list(Currency)
    created = 0
    for _ in range(customers):
        customer = repository.create_customer(rng.choice(currencies))
        for number in range(invoices_per_customer):
            amount = Money(
                value=Decimal(rng.randint(1000, 50000)) / 100,
                currency=customer.currency
            )
            status = InvoiceStatus.PENDING if number == 0 else InvoiceStatus.PAID
            repository.create_invoice(amount, customer, status)
            created += 1
    return created


if __name__ == "__main__":
    repository = SQLiteLedgerRepository()
    repository.initialize_schema()
    count = seed_demo_data(repository)
    print(f"Demo ledger seeded with {count} invoices")
