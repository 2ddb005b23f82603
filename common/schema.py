"""Collection schema descriptors and document factories."""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple

from common.exceptions import InvalidDocument
from common.types import (
    CREATED_AT_FIELD,
    Document,
    ID_FIELD,
    UPDATED_AT_FIELD,
)
from common.utils import generate_uuid, now_ms

logger = logging.getLogger(__name__)

Migration = Callable[[Dict[str, Any]], Dict[str, Any]]

DEFAULT_FIELDS: Dict[str, str] = {
    ID_FIELD: "string",
    CREATED_AT_FIELD: "number",
    UPDATED_AT_FIELD: "number",
}


@dataclass(frozen=True)
class CollectionSchema:
    """
    Descriptor for a synchronized collection.

    Built by define_collection(); `fields` always contains the default
    id and timestamp fields.
    """
    name: str
    schema_version: int = 0
    fields: Dict[str, str] = field(default_factory=dict)
    migrations: Tuple[Tuple[int, Migration], ...] = ()

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return tuple(DEFAULT_FIELDS)

    def new_document(
        self,
        payload: Dict[str, Any],
        owner_id: Optional[str] = None,
        document_id: Optional[str] = None,
        now: Optional[int] = None
    ) -> Document:
        """
        Create a document stamped with the default fields.

        Args:
            payload: User data for the document
            owner_id: Optional owning actor
            document_id: Explicit id, generated when omitted
            now: Timestamp in ms, defaults to the wall clock

        Returns:
            New Document at this schema's version
        """
        timestamp = now if now is not None else now_ms()
        return Document(
            id=document_id or generate_uuid(),
            created_at=timestamp,
            updated_at=timestamp,
            owner_id=owner_id,
            schema_version=self.schema_version,
            payload=dict(payload),
        )

    def upgrade(self, doc: Document) -> Document:
        """
        Apply every migration above the document's schema version.

        Args:
            doc: Document possibly written under an older schema

        Returns:
            Document at the newest version the migrations reach

        Raises:
            InvalidDocument: If a migration fails or produces an invalid payload
        """
        if doc.schema_version >= self.schema_version:
            return doc

        payload = dict(doc.payload)
        version = doc.schema_version
        for target_version, migrate in self.migrations:
            if target_version <= version:
                continue
            try:
                payload = migrate(payload)
            except Exception as e:
                raise InvalidDocument(
                    f"Migration of {self.name}/{doc.id} to version {target_version} failed: {e}"
                ) from e
            version = target_version

        logger.debug(
            f"Upgraded document [collection={self.name}, doc_id={doc.id}] "
            f"from version {doc.schema_version} to {version}"
        )
        return replace(doc, payload=payload, schema_version=max(version, doc.schema_version))


def define_collection(
    name: str,
    schema_version: int = 0,
    fields: Optional[Dict[str, str]] = None,
    migrations: Optional[Dict[int, Migration]] = None
) -> CollectionSchema:
    """
    Build a CollectionSchema with the default id and timestamp fields.

    Args:
        name: Collection name
        schema_version: Current version of the collection's documents
        fields: Extra field name -> type hints
        migrations: Target version -> function migrating a payload to that version

    Returns:
        CollectionSchema descriptor

    Raises:
        ValueError: If a migration targets a version above schema_version
    """
    if not name:
        raise ValueError("Collection name must not be empty")

    merged_fields = dict(DEFAULT_FIELDS)
    merged_fields.update(fields or {})

    ordered_migrations = tuple(sorted((migrations or {}).items()))
    for target_version, _ in ordered_migrations:
        if target_version > schema_version:
            raise ValueError(
                f"Migration targets version {target_version} above schema version {schema_version}"
            )

    return CollectionSchema(
        name=name,
        schema_version=schema_version,
        fields=merged_fields,
        migrations=ordered_migrations,
    )
