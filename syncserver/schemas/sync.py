"""Pydantic schemas for sync exchange endpoints."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SyncRequestBody(BaseModel):
    """Request model for one sync exchange."""
    lastSyncTimestamp: int = Field(0, ge=0)
    changedDocs: List[Any] = Field(default_factory=list)


class SyncResultsModel(BaseModel):
    """Per-exchange ingest tally."""
    added: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    rejected: int = 0
    queued: int = 0


class SyncResponseBody(BaseModel):
    """Response model for sync and pull exchanges."""
    timestamp: int
    docs: List[Dict[str, Any]]
    syncResults: SyncResultsModel
    resyncIds: List[str] = Field(default_factory=list)


class ConflictModel(BaseModel):
    """A conflict awaiting manual resolution."""
    collection: str
    documentId: str
    serverVersion: Optional[Dict[str, Any]] = None
    clientVersion: Dict[str, Any]
    actorId: str
    createdAt: int
    resolved: bool = False


class ListConflictsResponse(BaseModel):
    """Response model for listing conflicts."""
    conflicts: List[ConflictModel]


class ResolveConflictRequest(BaseModel):
    """Request model for resolving a conflict."""
    choice: Literal["server", "client", "custom"]
    payload: Optional[Dict[str, Any]] = None


class ResolveConflictResponse(BaseModel):
    """Response model for a resolved conflict."""
    documentId: str
    choice: str
    document: Optional[Dict[str, Any]] = None
