"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

Counter and invoice mutations run inside ``Database.transaction()``:
- SQLite takes the database write lock up front (BEGIN IMMEDIATE)
- PostgreSQL locks the rows it touches (SELECT ... FOR UPDATE)
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from ..errors import StoreContention

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Tenant billing configuration (owned by tenant settings, read here)
CREATE TABLE IF NOT EXISTS tenant_billing_config (
    tenant_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    currency TEXT,
    tax_rate TEXT,
    email_monthly_limit INTEGER,
    email_overage_rate TEXT,
    sms_package_size INTEGER NOT NULL DEFAULT 0,
    sms_package_price TEXT NOT NULL DEFAULT '0.00',
    sms_package_active INTEGER NOT NULL DEFAULT 0,
    sms_overage_rate TEXT,
    subscription_plan TEXT NOT NULL DEFAULT 'basic',
    remote_customer_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Per-tenant, per-resource counters for the current billing period
CREATE TABLE IF NOT EXISTS metering_counters (
    tenant_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    units_consumed INTEGER NOT NULL DEFAULT 0 CHECK (units_consumed >= 0),
    accrued_overage_charge TEXT NOT NULL DEFAULT '0.00',
    period_start TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, resource_type),
    FOREIGN KEY (tenant_id) REFERENCES tenant_billing_config(tenant_id)
);

-- Append-only send ledger
CREATE TABLE IF NOT EXISTS usage_events (
    event_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    recipient TEXT NOT NULL,
    event_type TEXT NOT NULL,
    is_overage INTEGER NOT NULL DEFAULT 0,
    incremental_cost TEXT NOT NULL DEFAULT '0.00',
    subject TEXT,
    provider TEXT,
    timestamp TEXT NOT NULL
);

-- Overage invoices, at most one per tenant/resource/period
CREATE TABLE IF NOT EXISTS overage_invoices (
    invoice_id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    units_over_limit INTEGER NOT NULL,
    overage_rate TEXT NOT NULL,
    subtotal TEXT NOT NULL,
    tax_rate TEXT NOT NULL,
    tax_amount TEXT NOT NULL,
    total TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    due_date TEXT NOT NULL,
    remote_invoice_id TEXT UNIQUE,
    remote_payment_intent_id TEXT,
    hosted_invoice_url TEXT,
    paid_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, resource_type, period_start, period_end)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_usage_events_tenant ON usage_events(tenant_id, resource_type, timestamp);
CREATE INDEX IF NOT EXISTS idx_invoices_tenant ON overage_invoices(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_invoices_status ON overage_invoices(status);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenant_billing_config (
    tenant_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    currency TEXT,
    tax_rate NUMERIC(5, 2),
    email_monthly_limit INTEGER,
    email_overage_rate NUMERIC(12, 2),
    sms_package_size INTEGER NOT NULL DEFAULT 0,
    sms_package_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
    sms_package_active BOOLEAN NOT NULL DEFAULT FALSE,
    sms_overage_rate NUMERIC(12, 2),
    subscription_plan TEXT NOT NULL DEFAULT 'basic',
    remote_customer_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS metering_counters (
    tenant_id TEXT NOT NULL REFERENCES tenant_billing_config(tenant_id),
    resource_type TEXT NOT NULL,
    units_consumed INTEGER NOT NULL DEFAULT 0 CHECK (units_consumed >= 0),
    accrued_overage_charge NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (accrued_overage_charge >= 0),
    period_start DATE NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (tenant_id, resource_type)
);

CREATE TABLE IF NOT EXISTS usage_events (
    event_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    recipient TEXT NOT NULL,
    event_type TEXT NOT NULL,
    is_overage BOOLEAN NOT NULL DEFAULT FALSE,
    incremental_cost NUMERIC(12, 2) NOT NULL DEFAULT 0,
    subject TEXT,
    provider TEXT,
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS overage_invoices (
    invoice_id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    period_start DATE NOT NULL,
    period_end DATE NOT NULL,
    units_over_limit INTEGER NOT NULL,
    overage_rate NUMERIC(12, 2) NOT NULL,
    subtotal NUMERIC(12, 2) NOT NULL,
    tax_rate NUMERIC(5, 2) NOT NULL,
    tax_amount NUMERIC(12, 2) NOT NULL,
    total NUMERIC(12, 2) NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    due_date DATE NOT NULL,
    remote_invoice_id TEXT UNIQUE,
    remote_payment_intent_id TEXT,
    hosted_invoice_url TEXT,
    paid_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (tenant_id, resource_type, period_start, period_end)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_events_tenant ON usage_events(tenant_id, resource_type, timestamp);
CREATE INDEX IF NOT EXISTS idx_invoices_tenant ON overage_invoices(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_invoices_status ON overage_invoices(status);
"""

# PostgreSQL SQLSTATEs for lock waits, deadlocks and serialization failures
_PG_CONTENTION_CODES = {"40001", "40P01", "55P03"}
_PG_UNIQUE_VIOLATION = "23505"


class DuplicateRowError(Exception):
    """Raised when an insert violates a uniqueness constraint."""
    pass


def _translate_error(exc: Exception) -> Optional[Exception]:
    """Map driver errors onto the errors callers handle; None means re-raise as-is."""
    pgcode = getattr(exc, "pgcode", None)
    if pgcode == _PG_UNIQUE_VIOLATION:
        return DuplicateRowError(str(exc))
    if pgcode in _PG_CONTENTION_CODES:
        return StoreContention(f"Row lock contention: {exc}")
    if isinstance(exc, sqlite3.IntegrityError) and "UNIQUE" in str(exc):
        return DuplicateRowError(str(exc))
    if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc):
        return StoreContention(f"Database is locked: {exc}")
    return None


class Transaction:
    """
    A unit of work bound to one connection.

    Repositories accept either a Transaction or the Database itself; both
    expose ``execute`` so the same query code runs standalone or inside a
    larger atomic operation.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self.conn = conn
        self.is_postgres = is_postgres

    @property
    def for_update(self) -> str:
        """Row-lock suffix for SELECTs (SQLite already holds the write lock)."""
        return " FOR UPDATE" if self.is_postgres else ""

    def _run(self, query: str, params: tuple) -> Any:
        try:
            if self.is_postgres:
                cursor = self.conn.cursor()
                cursor.execute(query.replace("?", "%s"), params)
                return cursor
            return self.conn.execute(query, params)
        except Exception as e:
            translated = _translate_error(e)
            if translated is None:
                raise
            raise translated from e

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        cursor = self._run(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        return self._run(query, params).rowcount


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM metering_counters WHERE tenant_id = ?", (tenant_id,))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///meterline.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "meterline.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        import psycopg2
        from psycopg2.extras import RealDictCursor

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Run a block atomically.

        Everything executed through the yielded Transaction commits together
        or rolls back together.
        """
        with self.connection() as conn:
            if not self.is_postgres:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    if "locked" in str(e):
                        raise StoreContention(f"Database is locked: {e}") from e
                    raise
            yield Transaction(conn, self.is_postgres)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement in its own transaction."""
        with self.connection() as conn:
            return Transaction(conn, self.is_postgres).execute(query, params)

    def update(self, query: str, params: tuple = ()) -> int:
        """Execute a single write in its own transaction; returns affected rows."""
        with self.connection() as conn:
            return Transaction(conn, self.is_postgres).update(query, params)

    @property
    def for_update(self) -> str:
        # Outside a transaction there is nothing to hold a row lock for
        return ""

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
