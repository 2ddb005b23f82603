"""Persistence for conflicts awaiting manual resolution."""

import json
import logging
import sqlite3
from typing import List, Optional

from common.database import get_db_connection, init_database, translate_error
from common.types import ConflictRecord, Document

logger = logging.getLogger(__name__)


def _row_to_record(row: sqlite3.Row) -> ConflictRecord:
    server_version = row["server_version"]
    return ConflictRecord(
        collection=row["collection"],
        document_id=row["doc_id"],
        server_version=Document.from_dict(json.loads(server_version)) if server_version else None,
        client_version=Document.from_dict(json.loads(row["client_version"])),
        actor_id=row["actor_id"],
        created_at=row["created_at"],
        resolved=bool(row["resolved"]),
    )


class ConflictRepository:
    """
    Conflict records keyed by (collection, document id).

    A newer conflict on the same document replaces the older record.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        try:
            init_database(db_path)
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def save(self, record: ConflictRecord) -> None:
        server_json = json.dumps(record.server_version.to_dict()) if record.server_version else None
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT OR REPLACE INTO conflicts
                    (collection, doc_id, actor_id, server_version, client_version, created_at, resolved)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.collection,
                        record.document_id,
                        record.actor_id,
                        server_json,
                        json.dumps(record.client_version.to_dict()),
                        record.created_at,
                        int(record.resolved),
                    )
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        logger.info(
            f"Recorded conflict [collection={record.collection}, doc_id={record.document_id}, "
            f"actor={record.actor_id}]"
        )

    def get(self, collection: str, document_id: str) -> Optional[ConflictRecord]:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT * FROM conflicts WHERE collection = ? AND doc_id = ? AND resolved = 0",
                    (collection, document_id)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return _row_to_record(row) if row else None

    def list_unresolved(self, collection: str, actor_id: Optional[str] = None) -> List[ConflictRecord]:
        query = "SELECT * FROM conflicts WHERE collection = ? AND resolved = 0"
        params: list = [collection]
        if actor_id is not None:
            query += " AND actor_id = ?"
            params.append(actor_id)
        query += " ORDER BY created_at ASC, doc_id ASC"

        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return [_row_to_record(row) for row in rows]

    def count_unresolved(self) -> int:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM conflicts WHERE resolved = 0")
                return cursor.fetchone()["count"]
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def delete(self, collection: str, document_id: str) -> bool:
        """
        Remove a conflict record once it has been resolved.

        Returns:
            True if a record was removed
        """
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "DELETE FROM conflicts WHERE collection = ? AND doc_id = ?",
                    (collection, document_id)
                )
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise translate_error(e) from e
