"""Shared data type definitions (Document, SyncWatermark, ConflictRecord, PendingOperation)."""

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from common.exceptions import InvalidDocument
from common.utils import generate_uuid


ID_FIELD = "id"
OWNER_FIELD = "ownerId"
CREATED_AT_FIELD = "createdAt"
UPDATED_AT_FIELD = "updatedAt"
DELETED_FIELD = "deleted"
SCHEMA_VERSION_FIELD = "schemaVersion"
REVISION_FIELD = "revision"
SERVER_UPDATED_AT_FIELD = "serverUpdatedAt"
PAYLOAD_FIELD = "payload"
DELTA_FIELD = "$delta"

RESERVED_FIELDS = frozenset({
    PAYLOAD_FIELD,
    DELTA_FIELD,
    ID_FIELD,
    OWNER_FIELD,
    CREATED_AT_FIELD,
    UPDATED_AT_FIELD,
    DELETED_FIELD,
    SCHEMA_VERSION_FIELD,
    REVISION_FIELD,
    SERVER_UPDATED_AT_FIELD,
})

PUSH = "push"
PULL = "pull"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Document:
    """
    A versioned document within a collection.

    `revision` and `server_updated_at` are managed by the store that owns the
    canonical copy; clients send back whatever they last received.
    """
    id: str
    updated_at: int
    created_at: int = 0
    owner_id: Optional[str] = None
    deleted: bool = False
    schema_version: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    revision: int = 0
    server_updated_at: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise InvalidDocument("Document id must be a non-empty string")
        if not _is_int(self.updated_at) or self.updated_at <= 0:
            raise InvalidDocument(f"Document {self.id}: updatedAt must be a positive integer")
        if not _is_int(self.created_at) or self.created_at < 0:
            raise InvalidDocument(f"Document {self.id}: createdAt must be a non-negative integer")
        if not _is_int(self.schema_version) or self.schema_version < 0:
            raise InvalidDocument(f"Document {self.id}: schemaVersion must be >= 0")
        if not _is_int(self.revision) or self.revision < 0:
            raise InvalidDocument(f"Document {self.id}: revision must be >= 0")
        if self.owner_id is not None and not isinstance(self.owner_id, str):
            raise InvalidDocument(f"Document {self.id}: ownerId must be a string")
        if not isinstance(self.deleted, bool):
            raise InvalidDocument(f"Document {self.id}: deleted must be a boolean")
        if not isinstance(self.payload, dict):
            raise InvalidDocument(f"Document {self.id}: payload must be an object")
        shadowed = RESERVED_FIELDS.intersection(self.payload)
        if shadowed:
            raise InvalidDocument(
                f"Document {self.id}: payload uses reserved fields {sorted(shadowed)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to the flat wire form (payload keys at top level).

        Returns:
            JSON-compatible dictionary
        """
        data = copy.deepcopy(self.payload)
        data[ID_FIELD] = self.id
        if self.owner_id is not None:
            data[OWNER_FIELD] = self.owner_id
        data[CREATED_AT_FIELD] = self.created_at
        data[UPDATED_AT_FIELD] = self.updated_at
        data[DELETED_FIELD] = self.deleted
        data[SCHEMA_VERSION_FIELD] = self.schema_version
        data[REVISION_FIELD] = self.revision
        if self.server_updated_at is not None:
            data[SERVER_UPDATED_AT_FIELD] = self.server_updated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Document':
        """
        Parse a wire dictionary into a Document.

        A missing id is replaced by a generated one; a missing createdAt
        defaults to updatedAt.

        Args:
            data: Flat wire dictionary, optionally with a nested "payload" object

        Returns:
            Validated Document

        Raises:
            InvalidDocument: If the dictionary violates document invariants
        """
        if not isinstance(data, dict):
            raise InvalidDocument("Document must be a JSON object")

        if isinstance(data.get(PAYLOAD_FIELD), dict):
            payload = copy.deepcopy(data[PAYLOAD_FIELD])
        else:
            payload = {
                key: copy.deepcopy(value)
                for key, value in data.items()
                if key not in RESERVED_FIELDS
            }

        doc_id = data[ID_FIELD] if ID_FIELD in data else generate_uuid()
        updated_at = data.get(UPDATED_AT_FIELD)
        created_at = data.get(CREATED_AT_FIELD, updated_at)

        return cls(
            id=doc_id,
            updated_at=updated_at,
            created_at=created_at,
            owner_id=data.get(OWNER_FIELD),
            deleted=data.get(DELETED_FIELD, False),
            schema_version=data.get(SCHEMA_VERSION_FIELD, 0),
            payload=payload,
            revision=data.get(REVISION_FIELD, 0),
            server_updated_at=data.get(SERVER_UPDATED_AT_FIELD),
        )

    def tombstone(self, at: int) -> 'Document':
        """
        Return a soft-deleted copy of this document.

        Args:
            at: Logical timestamp of the deletion

        Returns:
            Document with deleted=True and updated_at advanced
        """
        return replace(self, deleted=True, updated_at=max(at, self.updated_at))

    def with_store_metadata(self, revision: int, server_updated_at: Optional[int]) -> 'Document':
        """Return a copy carrying store-managed revision and server timestamp."""
        return replace(self, revision=revision, server_updated_at=server_updated_at)

    def same_content(self, other: Optional['Document']) -> bool:
        """Whether two versions are equal ignoring store-managed metadata."""
        if other is None:
            return False
        return (
            self.id == other.id
            and self.updated_at == other.updated_at
            and self.deleted == other.deleted
            and self.owner_id == other.owner_id
            and self.schema_version == other.schema_version
            and self.payload == other.payload
        )


@dataclass(frozen=True)
class SyncWatermark:
    """
    Timestamp up to which an actor has received authoritative changes.
    """
    collection: str
    actor_id: str
    timestamp: int = 0


@dataclass
class ConflictRecord:
    """
    Two competing versions of a document awaiting manual resolution.
    """
    collection: str
    document_id: str
    server_version: Optional[Document]
    client_version: Document
    actor_id: str
    created_at: int
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "documentId": self.document_id,
            "serverVersion": self.server_version.to_dict() if self.server_version else None,
            "clientVersion": self.client_version.to_dict(),
            "actorId": self.actor_id,
            "createdAt": self.created_at,
            "resolved": self.resolved,
        }


@dataclass
class PendingOperation:
    """
    An operation queued for redelivery after a failure.
    """
    operation_id: str
    collection: str
    document_id: str
    direction: str
    payload: Dict[str, Any]
    timestamp: int
    retries: int = 0
    last_error: Optional[str] = None


@dataclass
class SyncResults:
    """
    Per-exchange tally of ingest outcomes.
    """
    added: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    rejected: int = 0
    queued: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "added": self.added,
            "updated": self.updated,
            "deleted": self.deleted,
            "conflicts": self.conflicts,
            "rejected": self.rejected,
            "queued": self.queued,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncResults':
        return cls(**{key: int(data.get(key, 0)) for key in cls.__dataclass_fields__})


def dedupe_documents(documents: List[Document]) -> List[Document]:
    """
    Keep the last occurrence of each document id, preserving first-seen order.
    """
    latest: Dict[str, Document] = {}
    for doc in documents:
        latest[doc.id] = doc
    return list(latest.values())
