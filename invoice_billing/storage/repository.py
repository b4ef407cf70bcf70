"""
Repository pattern for data access.

Handles ledger persistence: customers, invoices and the append-only
billing audit log.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AuditCount,
    AuditEntry,
    Currency,
    Customer,
    Invoice,
    InvoiceStatus,
    Money,
)

_INVOICE_COLUMNS = "id, customer_id, value, currency, status"

PASS_LOCK_NAME = "billing_pass"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime to the fixed-width UTC text stored in the ledger.

    Naive datetimes are taken to be UTC. The fixed width keeps text
    comparison in SQL equivalent to chronological comparison.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_invoice(row) -> Invoice:
    return Invoice(
        id=row[0],
        customer_id=row[1],
        amount=Money(value=Decimal(row[2]), currency=Currency(row[3])),
        status=InvoiceStatus(row[4]),
    )


def _row_to_customer(row) -> Customer:
    return Customer(id=row[0], currency=Currency(row[1]))


def _row_to_audit_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row[0],
        invoice_id=row[1],
        result=row[2],
        comment=row[3],
        timestamp=datetime.fromisoformat(row[4]),
    )


class SQLiteLedgerRepository:
    """Ledger repository backed by a SQLite database file.

    Every operation opens its own connection and commits before
    returning, so a failure on one invoice never leaves a transaction
    open for the next one.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Source of audit entry timestamps (defaults to UTC now)
        """
        self.db_path = db_path
        self.clock = clock or _utcnow

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    # Customers

    def create_customer(self, currency: Currency) -> Customer:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO customer (currency) VALUES (?)",
                (currency.value,)
            )
            conn.commit()
            return Customer(id=cursor.lastrowid, currency=currency)
        finally:
            conn.close()

    def fetch_customer(self, customer_id: int) -> Optional[Customer]:
        """Return the customer with the given id, or None if absent."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, currency FROM customer WHERE id = ?",
                (customer_id,)
            ).fetchone()
            return _row_to_customer(row) if row else None
        finally:
            conn.close()

    def fetch_customers(self) -> List[Customer]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT id, currency FROM customer ORDER BY id")
            return [_row_to_customer(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Invoices

    def create_invoice(
        self,
        amount: Money,
        customer: Customer,
        status: InvoiceStatus = InvoiceStatus.PENDING
    ) -> Invoice:
        """Insert a new invoice for a customer.

        Args:
            amount: Amount owed
            customer: Owning customer (must already exist)
            status: Initial status, PENDING unless seeding history

        Returns:
            The stored invoice with its assigned id
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO invoice (customer_id, value, currency, status) VALUES (?, ?, ?, ?)",
                (customer.id, str(amount.value), amount.currency.value, status.value)
            )
            conn.commit()
            return Invoice(
                id=cursor.lastrowid,
                customer_id=customer.id,
                amount=amount,
                status=status
            )
        finally:
            conn.close()

    def fetch_invoice(self, invoice_id: int) -> Optional[Invoice]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_INVOICE_COLUMNS} FROM invoice WHERE id = ?",
                (invoice_id,)
            ).fetchone()
            return _row_to_invoice(row) if row else None
        finally:
            conn.close()

    def fetch_invoices(self) -> List[Invoice]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"SELECT {_INVOICE_COLUMNS} FROM invoice ORDER BY id")
            return [_row_to_invoice(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_invoices_by_status(self, status: InvoiceStatus) -> List[Invoice]:
        """Fetch all invoices currently in the given status, ordered by id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_INVOICE_COLUMNS} FROM invoice WHERE status = ? ORDER BY id",
                (status.value,)
            )
            return [_row_to_invoice(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_invoice_status(self, invoice_id: int, status: InvoiceStatus) -> bool:
        """Move a PENDING invoice to status.

        PAID and FAILED are terminal, so only a PENDING row is changed.

        Returns:
            True if the invoice was PENDING and now has the new status
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE invoice SET status = ? WHERE id = ? AND status = ?",
                (status.value, invoice_id, InvoiceStatus.PENDING.value)
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    # Pass lease

    def acquire_pass_lock(self, holder: str, lease_seconds: float) -> bool:
        """Take or renew the ledger-wide billing pass lease.

        The lease is granted when nobody holds it, when holder already
        holds it, or when the previous lease has expired. Any process
        sharing the ledger file competes for the same lease.

        Args:
            holder: Identifier of the pass asking for the lease
            lease_seconds: How long the lease lasts without renewal

        Returns:
            True if holder now holds the lease
        """
        now = self.clock()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, expires_at FROM billing_pass_lock WHERE name = ?",
                (PASS_LOCK_NAME,)
            ).fetchone()
            if row is not None and row[0] != holder and row[1] > to_db_timestamp(now):
                conn.rollback()
                return False
            conn.execute(
                "INSERT OR REPLACE INTO billing_pass_lock (name, holder, expires_at) VALUES (?, ?, ?)",
                (PASS_LOCK_NAME, holder, to_db_timestamp(now + timedelta(seconds=lease_seconds)))
            )
            conn.commit()
            return True
        finally:
            conn.close()

    def release_pass_lock(self, holder: str) -> None:
        """Give up the pass lease if holder still holds it."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "DELETE FROM billing_pass_lock WHERE name = ? AND holder = ?",
                (PASS_LOCK_NAME, holder)
            )
            conn.commit()
        finally:
            conn.close()

    # Audit log

    def create_audit_entry(
        self,
        invoice_id: int,
        result: str,
        comment: Optional[str] = None
    ) -> None:
        """Append one entry to the billing audit log.

        The entry is timestamped here, at write time. This operation is
        append-only - entries cannot be modified after insertion.

        Args:
            invoice_id: Invoice the outcome belongs to
            result: Classification tag of the outcome
            comment: Optional free-text detail
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO billing_log (invoice_id, result, comment, timestamp) VALUES (?, ?, ?, ?)",
                (invoice_id, result, comment, to_db_timestamp(self.clock()))
            )
            conn.commit()
        finally:
            conn.close()

    def fetch_audit_entries(self, invoice_id: Optional[int] = None) -> List[AuditEntry]:
        """Fetch audit entries in write order, optionally for one invoice."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT id, invoice_id, result, comment, timestamp FROM billing_log"
            params = []
            if invoice_id is not None:
                query += " WHERE invoice_id = ?"
                params.append(invoice_id)
            query += " ORDER BY id"
            cursor = conn.execute(query, params)
            return [_row_to_audit_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_audit_entries(self, start: datetime, end: datetime) -> List[AuditCount]:
        """Count audit entries per result tag written within [start, end].

        Args:
            start: Inclusive lower bound of the window
            end: Inclusive upper bound of the window

        Returns:
            One AuditCount per tag present in the window (empty if none)
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT result, COUNT(id)
                FROM billing_log
                WHERE timestamp >= ? AND timestamp <= ?
                GROUP BY result
                ORDER BY result
            """, (to_db_timestamp(start), to_db_timestamp(end)))
            return [AuditCount(result=row[0], count=row[1]) for row in cursor.fetchall()]
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[SQLiteLedgerRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> SQLiteLedgerRepository:
    """Get a repository instance.

    Returns a shared instance while the database path stays the same.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of SQLiteLedgerRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = SQLiteLedgerRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    billing_log is an append-only audit trail: no UPDATE or DELETE
    operations are ever performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS customer (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                currency TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS invoice (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                customer_id INTEGER NOT NULL REFERENCES customer (id),
                value TEXT NOT NULL,
                currency TEXT NOT NULL,
                status TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS billing_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                invoice_id INTEGER NOT NULL REFERENCES invoice (id),
                result TEXT NOT NULL,
                comment TEXT,
                timestamp TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS billing_pass_lock (
                name TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_invoice_status ON invoice (status);
            CREATE INDEX IF NOT EXISTS idx_billing_log_timestamp ON billing_log (timestamp);
        """)
        conn.commit()
    finally:
        conn.close()
