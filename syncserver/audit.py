"""Audit trail of sync exchanges."""

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from common.database import get_db_connection, init_database, row_to_dict
from common.exceptions import StoreUnavailable
from common.utils import now_ms

logger = logging.getLogger(__name__)

AUDIT_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        actor_id TEXT,
        origin TEXT,
        action TEXT NOT NULL,
        collection TEXT,
        success INTEGER NOT NULL,
        duration_ms INTEGER,
        details TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)
    """,
)

SENSITIVE_KEYS = frozenset({"password", "token", "secret", "authorization", "apikey", "api_key"})

MS_PER_DAY = 24 * 3600 * 1000


def mask_details(value: Any) -> Any:
    """
    Recursively replace values stored under sensitive keys.
    """
    if isinstance(value, dict):
        return {
            key: "***MASKED***" if str(key).lower() in SENSITIVE_KEYS else mask_details(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [mask_details(item) for item in value]
    return value


class AuditLog:
    """
    Append-only log of exchanges, stored beside the documents.

    Writing an audit entry never fails the exchange it describes.
    """

    def __init__(self, db_path: str, retention_days: int = 30, clock: Callable[[], int] = now_ms):
        self.db_path = db_path
        self.retention_days = retention_days
        self.clock = clock
        init_database(db_path, AUDIT_SCHEMA)

    def record(
        self,
        action: str,
        actor_id: Optional[str],
        collection: Optional[str] = None,
        origin: Optional[str] = None,
        success: bool = True,
        duration_ms: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Append one audit entry.

        Args:
            action: Exchange kind (sync, pull, resolve)
            actor_id: Requesting actor
            collection: Collection touched
            origin: Network origin of the request
            success: Whether the exchange completed
            duration_ms: Time taken
            details: Extra context, sensitive keys are masked
        """
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT INTO audit_log
                    (timestamp, actor_id, origin, action, collection, success, duration_ms, details)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        self.clock(),
                        actor_id,
                        origin,
                        action,
                        collection,
                        int(success),
                        duration_ms,
                        json.dumps(mask_details(details)) if details else None,
                    )
                )
                conn.commit()
        except Exception as e:
            logger.error(f"Failed to write audit entry [action={action}, actor={actor_id}]: {e}")

    def recent(self, limit: int = 100, actor_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM audit_log"
        params: list = []
        if actor_id is not None:
            query += " WHERE actor_id = ?"
            params.append(actor_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()

        entries = []
        for row in rows:
            entry = row_to_dict(row)
            entry["success"] = bool(entry["success"])
            entry["details"] = json.loads(entry["details"]) if entry["details"] else None
            entries.append(entry)
        return entries

    def purge_expired(self) -> int:
        """
        Delete entries older than the retention window.

        Returns:
            Number of entries deleted
        """
        cutoff = self.clock() - self.retention_days * MS_PER_DAY
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM audit_log WHERE timestamp < ?", (cutoff,))
                conn.commit()
                deleted = cursor.rowcount
        except (sqlite3.Error, StoreUnavailable) as e:
            logger.error(f"Failed to purge audit log: {e}")
            return 0

        if deleted:
            logger.info(f"Purged {deleted} audit entries older than {self.retention_days} days")
        return deleted
