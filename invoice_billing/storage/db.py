"""
Ledger database connections.

The scheduler and on-demand CLI commands may open the same ledger file at
once, so connections wait on a locked database instead of failing.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "invoice_billing.db"

# Seconds a writer waits for another connection's lock.
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open the ledger at db_path with foreign keys enforced.

    Missing parent directories are created so a configured path such as
    ``/var/lib/billing/ledger.db`` works on first use.
    """
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
