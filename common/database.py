"""Database schema and connection management for SQLite."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, Optional

from common.exceptions import StoreUnavailable, TransientStoreError

BUSY_TIMEOUT_SECONDS = 5.0

CORE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        owner_id TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        deleted INTEGER NOT NULL DEFAULT 0,
        schema_version INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL,
        revision INTEGER NOT NULL DEFAULT 0,
        server_updated_at INTEGER,
        PRIMARY KEY(collection, doc_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS watermarks (
        collection TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        PRIMARY KEY(collection, actor_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conflicts (
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        server_version TEXT,
        client_version TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY(collection, doc_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_operations (
        operation_id TEXT PRIMARY KEY,
        collection TEXT NOT NULL,
        document_id TEXT NOT NULL,
        direction TEXT NOT NULL,
        payload TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        retries INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_documents_changed
    ON documents(collection, server_updated_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_documents_updated
    ON documents(collection, updated_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_documents_owner
    ON documents(collection, owner_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_pending_order
    ON pending_operations(timestamp, retries)
    """,
)


def init_database(db_path: str, extra_statements: Iterable[str] = ()) -> None:
    """
    Initialize database and create tables if they don't exist.

    Args:
        db_path: Path of the SQLite database file
        extra_statements: Additional DDL run after the core schema
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        for statement in CORE_SCHEMA:
            cursor.execute(statement)
        for statement in extra_statements:
            cursor.execute(statement)
        conn.commit()


@contextmanager
def get_db_connection(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database connections.

    Raises:
        StoreUnavailable: If the database cannot be opened
    """
    try:
        conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS)
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Cannot open database {db_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def translate_error(error: sqlite3.Error) -> Exception:
    """
    Map a sqlite3 error onto the store error taxonomy.

    Lock contention is transient; anything that means the database itself is
    unusable makes the store unavailable.
    """
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError):
        if "locked" in message or "busy" in message:
            return TransientStoreError(str(error))
        if "unable to open" in message or "disk i/o" in message:
            return StoreUnavailable(str(error))
        return TransientStoreError(str(error))
    if isinstance(error, sqlite3.DatabaseError) and "malformed" in message:
        return StoreUnavailable(str(error))
    return TransientStoreError(str(error))


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """
    Convert a sqlite3.Row to a plain dictionary.
    """
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}
