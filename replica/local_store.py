"""Local document store for a disconnected replica."""

import json
import logging
import sqlite3
from typing import List, Optional

from common.database import get_db_connection, init_database, translate_error
from common.exceptions import TransientStoreError
from common.store import SQLiteDocumentStore
from common.types import Document

logger = logging.getLogger(__name__)

LOCAL_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS dirty_documents (
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY(collection, doc_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shadows (
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        document TEXT NOT NULL,
        PRIMARY KEY(collection, doc_id)
    )
    """,
)

MAX_LOCAL_WRITE_ATTEMPTS = 5


class LocalStore(SQLiteDocumentStore):
    """
    Replica-side store.

    Documents are stored exactly as received. Local edits are tracked in a
    dirty set until the server acknowledges them, and the last version
    exchanged with the server is kept as a shadow copy to diff against.
    """

    def __init__(self, db_path: str):
        super().__init__(db_path, authoritative=False)
        try:
            init_database(db_path, LOCAL_SCHEMA)
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def write(self, collection: str, doc: Document) -> Document:
        """
        Store a document, overwriting whatever version is present.

        Raises:
            TransientStoreError: If concurrent local writers kept racing
        """
        for _ in range(MAX_LOCAL_WRITE_ATTEMPTS):
            current = self.get(collection, doc.id)
            stored = self.atomic_put(collection, doc, current)
            if stored is not None:
                return stored
        raise TransientStoreError(f"Could not write {collection}/{doc.id} locally")

    def mark_dirty(self, collection: str, doc: Document) -> None:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT OR REPLACE INTO dirty_documents (collection, doc_id, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (collection, doc.id, doc.updated_at)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def clear_dirty(self, collection: str, doc_id: str, up_to: int) -> None:
        """
        Clear the dirty mark unless the document was edited after `up_to`.
        """
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    DELETE FROM dirty_documents
                    WHERE collection = ? AND doc_id = ? AND updated_at <= ?
                    """,
                    (collection, doc_id, up_to)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def is_dirty(self, collection: str, doc_id: str) -> bool:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT 1 FROM dirty_documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id)
                )
                return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def dirty_documents(self, collection: str) -> List[Document]:
        """
        Locally edited documents not yet acknowledged by the server.
        """
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    SELECT d.doc_id FROM dirty_documents d
                    WHERE d.collection = ?
                    ORDER BY d.updated_at ASC, d.doc_id ASC
                    """,
                    (collection,)
                )
                doc_ids = [row["doc_id"] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise translate_error(e) from e

        documents = []
        for doc_id in doc_ids:
            doc = self.get(collection, doc_id)
            if doc is not None:
                documents.append(doc)
        return documents

    def dirty_count(self, collection: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS count FROM dirty_documents"
        params: list = []
        if collection is not None:
            query += " WHERE collection = ?"
            params.append(collection)

        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                return cursor.fetchone()["count"]
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def get_shadow(self, collection: str, doc_id: str) -> Optional[Document]:
        """
        Last version of a document both sides are known to hold.
        """
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT document FROM shadows WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return Document.from_dict(json.loads(row["document"])) if row else None

    def save_shadow(self, collection: str, doc: Document) -> None:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT OR REPLACE INTO shadows (collection, doc_id, document)
                    VALUES (?, ?, ?)
                    """,
                    (collection, doc.id, json.dumps(doc.to_dict()))
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def drop_shadow(self, collection: str, doc_id: str) -> None:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "DELETE FROM shadows WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e
