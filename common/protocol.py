"""Wire messages for one sync exchange."""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from common.delta_codec import TransferUnit, unit_to_dict
from common.exceptions import InvalidDocument
from common.types import Document, SyncResults


@dataclass
class SyncRequest:
    """
    Client side of an exchange.

    `changed_docs` holds raw wire entries: full documents or delta entries.
    Entries are decoded one at a time during ingest so a single malformed
    document never invalidates the batch.
    """
    last_sync_timestamp: int = 0
    changed_docs: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_units(cls, last_sync_timestamp: int, units: List[TransferUnit]) -> 'SyncRequest':
        return cls(
            last_sync_timestamp=last_sync_timestamp,
            changed_docs=[unit_to_dict(unit) for unit in units],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastSyncTimestamp": self.last_sync_timestamp,
            "changedDocs": list(self.changed_docs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncRequest':
        """
        Parse a request body.

        Raises:
            InvalidDocument: If the envelope itself is malformed
        """
        if not isinstance(data, dict):
            raise InvalidDocument("Sync request must be a JSON object")

        watermark = data.get("lastSyncTimestamp", 0)
        changed = data.get("changedDocs", [])
        if not isinstance(watermark, int) or isinstance(watermark, bool) or watermark < 0:
            raise InvalidDocument("lastSyncTimestamp must be a non-negative integer")
        if not isinstance(changed, list):
            raise InvalidDocument("changedDocs must be a list")
        return cls(last_sync_timestamp=watermark, changed_docs=changed)


@dataclass
class SyncResponse:
    """
    Server side of an exchange.

    `resync_ids` lists documents whose delta could not be applied; the
    replica sends them in full on its next exchange.
    """
    timestamp: int
    docs: List[Document] = field(default_factory=list)
    sync_results: SyncResults = field(default_factory=SyncResults)
    resync_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "docs": [doc.to_dict() for doc in self.docs],
            "syncResults": self.sync_results.to_dict(),
            "resyncIds": list(self.resync_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncResponse':
        """
        Parse a response body.

        Raises:
            InvalidDocument: If the response or any returned document is malformed
        """
        if not isinstance(data, dict) or "timestamp" not in data:
            raise InvalidDocument("Sync response must contain a timestamp")
        return cls(
            timestamp=int(data["timestamp"]),
            docs=[Document.from_dict(entry) for entry in data.get("docs", [])],
            sync_results=SyncResults.from_dict(data.get("syncResults", {})),
            resync_ids=list(data.get("resyncIds", [])),
        )
