"""Pydantic schemas for API requests and responses."""

from syncserver.schemas.sync import (
    SyncRequestBody,
    SyncResultsModel,
    SyncResponseBody,
    ConflictModel,
    ListConflictsResponse,
    ResolveConflictRequest,
    ResolveConflictResponse
)
from syncserver.schemas.common import ERROR_RESPONSES, ErrorResponse

__all__ = [
    "SyncRequestBody",
    "SyncResultsModel",
    "SyncResponseBody",
    "ConflictModel",
    "ListConflictsResponse",
    "ResolveConflictRequest",
    "ResolveConflictResponse",
    "ErrorResponse",
    "ERROR_RESPONSES"
]
