"""
Database utilities for the vidgen pipeline.
Provides connection management, common query helpers and the schema.

All functions raise meaningful exceptions on failure - no silent failures.

Usage:
    from vidgen.db import transaction, fetch_one, Tables

    # Transaction with automatic commit/rollback
    with transaction() as cur:
        cur.execute(f"SELECT * FROM {Tables.ACCOUNTS} WHERE id = %s FOR UPDATE", (account_id,))
        account = fetch_one(cur)

    # Join an outer transaction when one is passed in, otherwise open one
    with use_cursor(transaction, cur) as cur:
        ...
"""

import logging
from contextlib import contextmanager
from typing import Optional, Any, Callable, Dict, List

import psycopg
from psycopg.rows import dict_row

from vidgen.config import config

logger = logging.getLogger("vidgen.db")

_APP_SCHEMA = config.APP_SCHEMA


# ─────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────
class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class DatabaseNotConfiguredError(DatabaseError):
    """Raised when database is not configured but an operation requires it."""
    def __init__(self, message: str = "Database is not configured"):
        super().__init__(message)


class DatabaseConnectionError(DatabaseError):
    """Raised when unable to connect to the database."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class DatabaseQueryError(DatabaseError):
    """Raised when a query fails."""
    def __init__(self, message: str, query: str = None, original_error: Exception = None):
        super().__init__(message)
        self.query = query
        self.original_error = original_error


class DatabaseIntegrityError(DatabaseError):
    """Raised on constraint violations (unique, foreign key, etc.)."""
    def __init__(self, message: str, constraint: str = None, original_error: Exception = None):
        super().__init__(message)
        self.constraint = constraint
        self.original_error = original_error


# ─────────────────────────────────────────────────────────────
# Connection State
# ─────────────────────────────────────────────────────────────
USE_DB = config.HAS_DATABASE


# ─────────────────────────────────────────────────────────────
# Connection Management
# ─────────────────────────────────────────────────────────────
def _create_connection(database_url: Optional[str] = None):
    """
    Create a new database connection.
    Internal function - raises exceptions on failure.
    """
    url = database_url or config.DATABASE_URL
    if not url:
        raise DatabaseNotConfiguredError("DATABASE_URL is not set")

    try:
        conn = psycopg.connect(
            url,
            connect_timeout=config.DB_CONNECT_TIMEOUT,
            row_factory=dict_row,
        )
        with conn.cursor() as cur:
            cur.execute(f"SET search_path TO {_APP_SCHEMA}, public;")
        return conn
    except psycopg.OperationalError as e:
        raise DatabaseConnectionError(f"Failed to connect to database: {e}", original_error=e)


def _integrity_error(label: str, e: psycopg.Error) -> DatabaseIntegrityError:
    constraint = getattr(e.diag, "constraint_name", None)
    return DatabaseIntegrityError(f"{label}: {e}", constraint=constraint, original_error=e)


@contextmanager
def transaction(database_url: Optional[str] = None):
    """
    Context manager for database transactions.
    Automatically commits on success, rolls back on exception.
    Yields a cursor with dict_row factory.

    Raises:
        DatabaseNotConfiguredError: If database is not configured
        DatabaseConnectionError: If connection fails
        DatabaseQueryError: If a query fails
        DatabaseIntegrityError: On constraint violations
    """
    conn = _create_connection(database_url)
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except psycopg.errors.UniqueViolation as e:
        conn.rollback()
        raise _integrity_error("Unique constraint violation", e)
    except psycopg.errors.ForeignKeyViolation as e:
        conn.rollback()
        raise _integrity_error("Foreign key violation", e)
    except psycopg.errors.CheckViolation as e:
        conn.rollback()
        raise _integrity_error("Check constraint violation", e)
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseQueryError(f"Database error: {e}", original_error=e)
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def use_cursor(tx: Optional[Callable] = None, cur=None):
    """
    Yield ``cur`` when the caller already holds a transaction, otherwise
    open a new one with ``tx`` (defaults to :func:`transaction`).

    Lets a single operation either run standalone or take part in a larger
    atomic unit, e.g. reserve + create job + stage outbox.
    """
    if cur is not None:
        yield cur
        return
    with (tx or transaction)() as own:
        yield own


# ─────────────────────────────────────────────────────────────
# Cursor Helpers (for use within transaction blocks)
# ─────────────────────────────────────────────────────────────
def fetch_one(cur) -> Optional[Dict[str, Any]]:
    """Fetch one row from cursor as dict. Returns None if no rows available."""
    row = cur.fetchone()
    if row is None:
        return None
    if isinstance(row, dict):
        return row
    columns = [desc[0] for desc in cur.description]
    return dict(zip(columns, row))


def fetch_all(cur) -> List[Dict[str, Any]]:
    """Fetch all rows from cursor as list of dicts. Returns empty list if no rows."""
    rows = cur.fetchall()
    if not rows:
        return []
    if isinstance(rows[0], dict):
        return list(rows)
    columns = [desc[0] for desc in cur.description]
    return [dict(zip(columns, row)) for row in rows]


# ─────────────────────────────────────────────────────────────
# Standalone Query Helpers (open their own transaction)
# ─────────────────────────────────────────────────────────────
def query_one(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    """
    Execute a query and return one row as dict.
    Opens its own transaction.
    """
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


# ─────────────────────────────────────────────────────────────
# Schema-aware Table References
# ─────────────────────────────────────────────────────────────
class Tables:
    """Table name constants with schema prefixes."""
    ACCOUNTS = f"{_APP_SCHEMA}.accounts"
    LEDGER_ENTRIES = f"{_APP_SCHEMA}.ledger_entries"
    JOBS = f"{_APP_SCHEMA}.jobs"
    JOB_OUTBOX = f"{_APP_SCHEMA}.job_outbox"
    WORK_QUEUE = f"{_APP_SCHEMA}.work_queue"


# ─────────────────────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────────────────────
SCHEMA_STATEMENTS = [
    f"CREATE SCHEMA IF NOT EXISTS {_APP_SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.ACCOUNTS} (
        id TEXT PRIMARY KEY,
        balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.LEDGER_ENTRIES} (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES {Tables.ACCOUNTS}(id),
        amount BIGINT NOT NULL,
        balance_after BIGINT NOT NULL,
        kind TEXT NOT NULL
            CHECK (kind IN ('reserve-debit', 'refund', 'recharge', 'admin-adjust')),
        description TEXT NOT NULL DEFAULT '',
        related_job_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_ledger_entries_account
    ON {Tables.LEDGER_ENTRIES}(account_id, id DESC)
    """,
    # At most one refund per job, whatever path issues it
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_entries_refund_per_job
    ON {Tables.LEDGER_ENTRIES}(related_job_id)
    WHERE kind = 'refund' AND related_job_id IS NOT NULL
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.JOBS} (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES {Tables.ACCOUNTS}(id),
        params JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        cost_credits BIGINT NOT NULL CHECK (cost_credits >= 0),
        status TEXT NOT NULL
            CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
        artifact_url TEXT,
        thumbnail_url TEXT,
        duration_seconds INTEGER,
        file_size BIGINT,
        provider_task_id TEXT,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_jobs_status_updated
    ON {Tables.JOBS}(status, updated_at)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_jobs_account_created
    ON {Tables.JOBS}(account_id, created_at DESC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.JOB_OUTBOX} (
        id BIGSERIAL PRIMARY KEY,
        job_id TEXT NOT NULL UNIQUE REFERENCES {Tables.JOBS}(id),
        payload JSONB NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'queued', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_attempt_at TIMESTAMPTZ,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_job_outbox_status_created
    ON {Tables.JOB_OUTBOX}(status, created_at)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.WORK_QUEUE} (
        job_id TEXT PRIMARY KEY,
        payload JSONB NOT NULL,
        state TEXT NOT NULL DEFAULT 'waiting'
            CHECK (state IN ('waiting', 'active', 'completed', 'dead')),
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        locked_until TIMESTAMPTZ,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_work_queue_state_available
    ON {Tables.WORK_QUEUE}(state, available_at)
    """,
]


def ensure_schema(tx: Optional[Callable] = None) -> None:
    """
    Ensure all pipeline tables and indexes exist.
    Safe to call on every startup.
    """
    with (tx or transaction)() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
    logger.info("[DB] Schema ensured (%s)", _APP_SCHEMA)


# ─────────────────────────────────────────────────────────────
# Utility Functions
# ─────────────────────────────────────────────────────────────
def verify_connection() -> bool:
    """
    Test database connectivity.
    Returns True if connected, False otherwise.
    Does not raise exceptions.
    """
    if not USE_DB:
        return False
    try:
        result = query_one("SELECT 1 AS ok")
        return result is not None and result.get("ok") == 1
    except DatabaseError as e:
        logger.warning("[DB] Connection check failed: %s", e)
        return False


def require_db():
    """
    Assert that database is available.
    Raises DatabaseNotConfiguredError if not.
    """
    if not USE_DB:
        raise DatabaseNotConfiguredError(
            "This operation requires a database connection. "
            "Please configure DATABASE_URL environment variable."
        )


def init_db() -> bool:
    """
    Verify connectivity and create the schema.
    Called at process startup.

    Raises:
        DatabaseNotConfiguredError: If DATABASE_URL is not set
        DatabaseConnectionError: If database is configured but connection fails
    """
    require_db()
    if not verify_connection():
        raise DatabaseConnectionError("Connection test query failed")
    logger.info("[DB] Database connection verified successfully")
    ensure_schema()
    return True


__all__ = [
    "DatabaseError",
    "DatabaseNotConfiguredError",
    "DatabaseConnectionError",
    "DatabaseQueryError",
    "DatabaseIntegrityError",
    "USE_DB",
    "transaction",
    "use_cursor",
    "fetch_one",
    "fetch_all",
    "query_one",
    "Tables",
    "SCHEMA_STATEMENTS",
    "ensure_schema",
    "verify_connection",
    "require_db",
    "init_db",
]
