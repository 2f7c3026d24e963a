import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional

from dotenv import load_dotenv

from circulation.errors import ContentionError

# Make sure .env is loaded before the default database path is resolved.
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or "library.db"
DEFAULT_LOCK_TIMEOUT = 5.0


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width ISO text so stored timestamps compare correctly as strings."""
    return value.isoformat(timespec="microseconds")


def to_db_date(value: date) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def get_db_connection(db_file: Optional[str] = None, timeout: float = DEFAULT_LOCK_TIMEOUT) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Transactions are controlled explicitly (see ``transaction``); ``timeout`` is
    how long a writer waits for the database lock before giving up.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


@contextmanager
def transaction(db_file: Optional[str] = None, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    ``BEGIN IMMEDIATE`` takes the write lock before the first read, so every
    read-modify-write inside the block is atomic with respect to other writers.
    A writer that cannot get the lock within ``timeout`` gets ``ContentionError``
    and nothing it did is kept.
    """
    conn = get_db_connection(db_file, timeout)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise ContentionError("Timed out waiting for a database lock") from e
            raise
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if _is_lock_error(e):
                raise ContentionError("Timed out waiting for a database lock") from e
            raise
        except BaseException:
            conn.rollback()
            raise
    finally:
        conn.close()


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the schema if it does not exist yet."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            full_name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            phone TEXT,
            role TEXT NOT NULL DEFAULT 'MEMBER' CHECK(role IN ('ADMIN', 'MEMBER')),
            status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK(status IN ('ACTIVE', 'INACTIVE', 'SUSPENDED')),
            batch TEXT CHECK(batch IS NULL OR batch IN ('MORNING', 'EVENING')),
            time_slot TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS titles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            isbn TEXT,
            genre TEXT,
            publisher TEXT,
            publication_year INTEGER,
            description TEXT,
            total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
            available_copies INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK(status IN ('ACTIVE', 'ARCHIVED')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CHECK(available_copies >= 0 AND available_copies <= total_copies)
        );

        CREATE TABLE IF NOT EXISTS loans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL REFERENCES members(id),
            title_id INTEGER NOT NULL REFERENCES titles(id),
            issue_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            penalty_amount REAL NOT NULL DEFAULT 0 CHECK(penalty_amount >= 0),
            status TEXT NOT NULL DEFAULT 'ISSUED' CHECK(status IN ('ISSUED', 'OVERDUE', 'RETURNED')),
            penalty_settlement TEXT CHECK(penalty_settlement IS NULL OR penalty_settlement IN ('PAID', 'WAIVED')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL REFERENCES members(id),
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            stacked_from INTEGER REFERENCES subscriptions(id),
            amount REAL NOT NULL CHECK(amount >= 0),
            status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK(status IN ('ACTIVE', 'EXPIRED', 'CANCELLED')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL REFERENCES members(id),
            amount REAL NOT NULL CHECK(amount > 0),
            type TEXT NOT NULL CHECK(type IN ('SUBSCRIPTION', 'PENALTY')),
            method TEXT NOT NULL CHECK(method IN ('CASH', 'GATEWAY')),
            order_id TEXT UNIQUE,
            provider_payment_id TEXT,
            signature TEXT,
            loan_id INTEGER REFERENCES loans(id),
            processed_by INTEGER REFERENCES members(id),
            notes TEXT,
            status TEXT NOT NULL CHECK(status IN ('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER REFERENCES members(id),
            type TEXT NOT NULL,
            subject TEXT NOT NULL,
            description TEXT NOT NULL,
            details TEXT,
            status TEXT NOT NULL DEFAULT 'PENDING' CHECK(status IN ('PENDING', 'APPROVED', 'REJECTED')),
            admin_response TEXT,
            admin_id INTEGER REFERENCES members(id),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id INTEGER,
            performed_by INTEGER,
            details TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        -- one open loan per member and title
        CREATE UNIQUE INDEX IF NOT EXISTS ux_loans_open
            ON loans(member_id, title_id) WHERE status IN ('ISSUED', 'OVERDUE');
        -- a subscription can be stacked onto only once
        CREATE UNIQUE INDEX IF NOT EXISTS ux_subscriptions_stacked_from
            ON subscriptions(stacked_from) WHERE stacked_from IS NOT NULL;

        CREATE INDEX IF NOT EXISTS idx_loans_member ON loans(member_id, status);
        CREATE INDEX IF NOT EXISTS idx_loans_due ON loans(status, due_date);
        CREATE INDEX IF NOT EXISTS idx_subscriptions_member ON subscriptions(member_id, status, end_date);
        CREATE INDEX IF NOT EXISTS idx_payments_member ON payments(member_id);
        CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status);
        CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs(created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_titles_title ON titles(title);
    """)


def initialize_database(db_file: Optional[str] = None) -> None:
    """Create tables on the given (or default) database file."""
    conn = get_db_connection(db_file)
    try:
        create_tables(conn)
    finally:
        conn.close()
    logger.debug("Database initialized at %s", db_file or DATABASE_FILE)
