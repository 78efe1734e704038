"""
SQLite database module for the merge ledger.

Provides the schema and connection handling shared by the token store and
the group repository. Timestamps are stored as ISO-8601 text in UTC.
"""

import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

# Seconds a writer waits on a locked database file before giving up
DEFAULT_BUSY_TIMEOUT = 30.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    email TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS crm_connections (
    id INTEGER PRIMARY KEY,
    account_id TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    token_type TEXT NOT NULL DEFAULT 'bearer',
    portal_id INTEGER,
    hub_domain TEXT,
    account_name TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    last_used_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_crm_connections_account
    ON crm_connections(account_id, active);

-- At most one active connection per account
CREATE UNIQUE INDEX IF NOT EXISTS idx_crm_connections_one_active
    ON crm_connections(account_id) WHERE active = 1;

CREATE TABLE IF NOT EXISTS oauth_states (
    nonce TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    consumed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS process_runs (
    run_key TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    phase TEXT NOT NULL,
    total_groups INTEGER NOT NULL DEFAULT 0,
    export_reference TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_process_runs_account ON process_runs(account_id);

CREATE TABLE IF NOT EXISTS duplicate_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_key TEXT NOT NULL REFERENCES process_runs(run_key),
    position INTEGER NOT NULL,
    original_members TEXT NOT NULL,
    members TEXT NOT NULL,
    merged INTEGER NOT NULL DEFAULT 0,
    retained_record_id TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    merged_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(run_key, position)
);

CREATE INDEX IF NOT EXISTS idx_duplicate_groups_run ON duplicate_groups(run_key, id);

CREATE TABLE IF NOT EXISTS merge_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES duplicate_groups(id),
    action TEXT NOT NULL,
    keep_record_id TEXT,
    retire_record_id TEXT,
    field_values TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_merge_audit_group ON merge_audit(group_id);
"""


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage.

    Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """
    SQLite database manager for connections, duplicate groups and runs.

    Usage:
        db = Database('/path/to/dedupe.db')
        db.initialize()

        # Or use in-memory for testing:
        db = Database(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
            busy_timeout: Seconds to wait for a locked database file
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection so the schema
        persists across operations. For file databases, creates a new
        connection each time.
        """
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for one unit of work.

        Everything executed inside the block is committed together on
        success and rolled back on any exception.

        Usage:
            with db.connection() as conn:
                conn.execute("UPDATE ...")
                conn.execute("INSERT ...")
        """
        if self.is_memory:
            # The shared connection is serialized across threads
            with self._shared_lock:
                conn = self._get_connection()
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            return

        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None
