"""
Document store interface and its SQLite implementation.

Every write is a single guarded statement: an update only lands if the row
still carries the revision and timestamp the caller read, and an insert only
lands if no row exists. A lost race is reported to the caller instead of
overwriting the other writer.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from common.database import get_db_connection, init_database, translate_error
from common.types import Document, SyncWatermark
from common.utils import now_ms

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Collaborator interface consumed by the reconciliation core."""

    @abstractmethod
    def get(self, collection: str, document_id: str) -> Optional[Document]:
        """Return the stored version of a document, tombstones included."""

    @abstractmethod
    def atomic_put(
        self,
        collection: str,
        doc: Document,
        expected_prior: Optional[Document]
    ) -> Optional[Document]:
        """
        Write `doc` only if the stored version still matches `expected_prior`.

        Returns:
            The document as stored, or None if another write raced in
        """

    @abstractmethod
    def query_changed_since(
        self,
        collection: str,
        watermark: int,
        owner_id: Optional[str] = None
    ) -> List[Document]:
        """Return documents changed after the watermark, oldest change first."""

    @abstractmethod
    def get_watermark(self, collection: str, actor_id: str) -> SyncWatermark:
        """Return the stored watermark, 0 if none was committed."""

    @abstractmethod
    def commit_watermark(self, watermark: SyncWatermark) -> SyncWatermark:
        """Persist a watermark; never moves an existing watermark backwards."""


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["doc_id"],
        owner_id=row["owner_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted=bool(row["deleted"]),
        schema_version=row["schema_version"],
        payload=json.loads(row["payload"]),
        revision=row["revision"],
        server_updated_at=row["server_updated_at"],
    )


class SQLiteDocumentStore(DocumentStore):
    """
    SQLite-backed document store.

    In authoritative mode every write bumps `revision` and stamps
    `server_updated_at` from the store clock, and change queries use that
    stamp. In replica mode documents are stored as given and change queries
    use `updated_at`.
    """

    def __init__(
        self,
        db_path: str,
        authoritative: bool = True,
        clock: Callable[[], int] = now_ms
    ):
        """
        Initialize the store and create its tables.

        Args:
            db_path: SQLite database file
            authoritative: Whether this store owns the canonical documents
            clock: Millisecond clock used for server timestamps
        """
        self.db_path = db_path
        self.authoritative = authoritative
        self.clock = clock
        self._initialize()

    def _initialize(self) -> None:
        try:
            init_database(self.db_path)
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def get(self, collection: str, document_id: str) -> Optional[Document]:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, document_id)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        if row is None:
            return None
        return _row_to_document(row)

    def atomic_put(
        self,
        collection: str,
        doc: Document,
        expected_prior: Optional[Document]
    ) -> Optional[Document]:
        if self.authoritative:
            prior_revision = expected_prior.revision if expected_prior else 0
            stored = doc.with_store_metadata(
                revision=prior_revision + 1,
                server_updated_at=self.clock()
            )
        else:
            stored = doc

        values = (
            stored.owner_id,
            stored.created_at,
            stored.updated_at,
            int(stored.deleted),
            stored.schema_version,
            json.dumps(stored.payload),
            stored.revision,
            stored.server_updated_at,
        )

        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                if expected_prior is None:
                    try:
                        cursor.execute(
                            """
                            INSERT INTO documents
                            (owner_id, created_at, updated_at, deleted, schema_version,
                             payload, revision, server_updated_at, collection, doc_id)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            values + (collection, stored.id)
                        )
                    except sqlite3.IntegrityError:
                        logger.debug(
                            f"Insert lost race [collection={collection}, doc_id={stored.id}]"
                        )
                        return None
                else:
                    cursor.execute(
                        """
                        UPDATE documents
                        SET owner_id = ?, created_at = ?, updated_at = ?, deleted = ?,
                            schema_version = ?, payload = ?, revision = ?, server_updated_at = ?
                        WHERE collection = ? AND doc_id = ? AND revision = ? AND updated_at = ?
                        """,
                        values + (
                            collection,
                            stored.id,
                            expected_prior.revision,
                            expected_prior.updated_at,
                        )
                    )
                    if cursor.rowcount == 0:
                        logger.debug(
                            f"Update lost race [collection={collection}, doc_id={stored.id}, "
                            f"expected_revision={expected_prior.revision}]"
                        )
                        return None
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return stored

    def query_changed_since(
        self,
        collection: str,
        watermark: int,
        owner_id: Optional[str] = None
    ) -> List[Document]:
        column = "server_updated_at" if self.authoritative else "updated_at"
        query = f"SELECT * FROM documents WHERE collection = ? AND {column} > ?"
        params: list = [collection, watermark]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += f" ORDER BY {column} ASC, doc_id ASC"

        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return [_row_to_document(row) for row in rows]

    def list_documents(self, collection: str, include_deleted: bool = False) -> List[Document]:
        """
        Return every document in a collection.
        """
        query = "SELECT * FROM documents WHERE collection = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY doc_id ASC"

        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, (collection,))
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return [_row_to_document(row) for row in rows]

    def get_watermark(self, collection: str, actor_id: str) -> SyncWatermark:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT timestamp FROM watermarks WHERE collection = ? AND actor_id = ?",
                    (collection, actor_id)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        timestamp = row["timestamp"] if row else 0
        return SyncWatermark(collection=collection, actor_id=actor_id, timestamp=timestamp)

    def commit_watermark(self, watermark: SyncWatermark) -> SyncWatermark:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT INTO watermarks (collection, actor_id, timestamp)
                    VALUES (?, ?, ?)
                    ON CONFLICT(collection, actor_id) DO UPDATE SET
                        timestamp = MAX(watermarks.timestamp, excluded.timestamp)
                    """,
                    (watermark.collection, watermark.actor_id, watermark.timestamp)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        current = self.get_watermark(watermark.collection, watermark.actor_id)
        logger.debug(
            f"Committed watermark [collection={current.collection}, "
            f"actor={current.actor_id}, timestamp={current.timestamp}]"
        )
        return current
