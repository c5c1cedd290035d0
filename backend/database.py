"""
Contract Storage Database

Uses SQLite as the durable substrate behind the voting contract:

  storage   — the contract's key/value store (get / insert / remove)
  accounts  — value accounts of callers and of the contract itself,
              plus each caller's next expected call nonce

Balances are kept as decimal TEXT because u128 amounts do not fit in
SQLite's 64-bit INTEGER.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

DB_PATH = Path(os.environ.get("TOKENVOTE_DB_PATH", Path(__file__).parent / "tokenvote.db"))

# Thread-local connection cache
_local = threading.local()


def get_connection() -> sqlite3.Connection:
    if not hasattr(_local, "conn") or _local.conn is None:
        _local.conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        _local.conn.row_factory = sqlite3.Row
        _local.conn.execute("PRAGMA journal_mode=WAL")
        _local.conn.execute("PRAGMA foreign_keys=ON")
    return _local.conn


def close_connection():
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
        _local.conn = None


@contextmanager
def get_db():
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


@contextmanager
def transaction():
    """
    One write transaction holding the database lock from the first read.

    Everything done through the yielded connection commits together or is
    rolled back together.
    """
    conn = get_connection()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db():
    """Create tables if they do not exist."""
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS storage (
                key         TEXT PRIMARY KEY,
                value       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS accounts (
                account_id  TEXT PRIMARY KEY,
                public_key  TEXT,
                balance     TEXT NOT NULL DEFAULT '0',
                nonce       INTEGER NOT NULL DEFAULT 0,
                created_at  TEXT NOT NULL DEFAULT (datetime('now'))
            );
        """)


# ---------------------------------------------------------------------------
# Contract storage
# ---------------------------------------------------------------------------

def storage_get(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM storage WHERE key = ?", (key,)).fetchone()
    return None if row is None else row["value"]


def storage_insert(conn: sqlite3.Connection, key: str, value: str):
    conn.execute(
        """INSERT INTO storage (key, value) VALUES (?, ?)
           ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
        (key, value),
    )


def storage_remove(conn: sqlite3.Connection, key: str) -> bool:
    cur = conn.execute("DELETE FROM storage WHERE key = ?", (key,))
    return cur.rowcount > 0


def storage_items(conn: sqlite3.Connection, prefix: str = "") -> dict:
    """Return every ``{key: value}`` whose key starts with ``prefix``."""
    rows = conn.execute(
        "SELECT key, value FROM storage WHERE substr(key, 1, ?) = ?",
        (len(prefix), prefix),
    ).fetchall()
    return {row["key"]: row["value"] for row in rows}


# ---------------------------------------------------------------------------
# Value accounts
# ---------------------------------------------------------------------------

def create_account(conn: sqlite3.Connection, account_id: str, public_key: Optional[str] = None, balance: int = 0) -> bool:
    """Insert a new account. Returns False if it already existed."""
    cur = conn.execute(
        """INSERT INTO accounts (account_id, public_key, balance)
           VALUES (?, ?, ?)
           ON CONFLICT(account_id) DO NOTHING""",
        (account_id, public_key, str(balance)),
    )
    return cur.rowcount > 0


def get_account(conn: sqlite3.Connection, account_id: str) -> Optional[dict]:
    row = conn.execute(
        "SELECT account_id, public_key, balance, nonce, created_at "
        "FROM accounts WHERE account_id = ?",
        (account_id,),
    ).fetchone()
    if row is None:
        return None
    return {
        "account_id": row["account_id"],
        "public_key": row["public_key"],
        "balance": int(row["balance"]),
        "nonce": row["nonce"],
        "created_at": row["created_at"],
    }


def get_balance(conn: sqlite3.Connection, account_id: str) -> int:
    row = conn.execute("SELECT balance FROM accounts WHERE account_id = ?", (account_id,)).fetchone()
    return 0 if row is None else int(row["balance"])


def set_balance(conn: sqlite3.Connection, account_id: str, balance: int):
    if balance < 0:
        raise ValueError(f"Negative balance for {account_id}: {balance}")
    conn.execute(
        """INSERT INTO accounts (account_id, balance) VALUES (?, ?)
           ON CONFLICT(account_id) DO UPDATE SET balance=excluded.balance""",
        (account_id, str(balance)),
    )


def consume_nonce(conn: sqlite3.Connection, account_id: str, nonce: int) -> bool:
    """Advance the account's nonce if ``nonce`` is the expected one."""
    cur = conn.execute(
        "UPDATE accounts SET nonce = nonce + 1 WHERE account_id = ? AND nonce = ?",
        (account_id, nonce),
    )
    return cur.rowcount > 0


def set_public_key(conn: sqlite3.Connection, account_id: str, public_key: str):
    conn.execute(
        "UPDATE accounts SET public_key = ? WHERE account_id = ?",
        (public_key, account_id),
    )
