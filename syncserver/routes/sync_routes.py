"""Sync exchange API routes."""

from fastapi import APIRouter, Depends, Query, Request

from common.protocol import SyncRequest
from syncserver.auth import get_current_actor, get_origin
from syncserver.schemas.sync import (
    ConflictModel,
    ListConflictsResponse,
    ResolveConflictRequest,
    ResolveConflictResponse,
    SyncRequestBody,
    SyncResponseBody,
)
from syncserver.schemas.common import ERROR_RESPONSES
from syncserver.service_locator import get_coordinator

router = APIRouter(tags=["Sync"])


@router.post("/sync/{collection}", response_model=SyncResponseBody, responses=ERROR_RESPONSES)
async def sync_collection(
    collection: str,
    body: SyncRequestBody,
    request: Request,
    actor_id: str = Depends(get_current_actor)
):
    """
    Push changed documents and receive server changes since the watermark.

    Parameters:
        - collection: Collection name
        - lastSyncTimestamp: Client watermark
        - changedDocs: Full documents or delta entries
        - Authorization header: Bearer <token> (required)

    Returns:
        - timestamp: New watermark
        - docs: Server changes since lastSyncTimestamp
        - syncResults: Ingest tally
        - resyncIds: Documents to send in full next time

    Raises:
        - 401: Missing or unknown token
        - 403: Actor blocked
        - 429: Actor throttled (Retry-After header)
        - 500: Store failure
    """
    coordinator = get_coordinator()
    sync_request = SyncRequest(
        last_sync_timestamp=body.lastSyncTimestamp,
        changed_docs=list(body.changedDocs),
    )
    response = await coordinator.process_sync(
        collection, sync_request, actor_id, origin=get_origin(request)
    )
    return response.to_dict()


@router.get("/changes/{collection}", response_model=SyncResponseBody, responses=ERROR_RESPONSES)
async def pull_changes(
    collection: str,
    request: Request,
    since: int = Query(0, ge=0),
    actor_id: str = Depends(get_current_actor)
):
    """
    Fetch server changes since a watermark without pushing anything.
    """
    coordinator = get_coordinator()
    response = await coordinator.pull_changes(
        collection, since, actor_id, origin=get_origin(request)
    )
    return response.to_dict()


@router.get("/sync/{collection}/conflicts", response_model=ListConflictsResponse)
async def list_conflicts(collection: str, actor_id: str = Depends(get_current_actor)):
    """
    List conflicts queued for this actor under the manual policy.
    """
    coordinator = get_coordinator()
    records = coordinator.list_conflicts(collection, actor_id)
    return ListConflictsResponse(
        conflicts=[ConflictModel(**record.to_dict()) for record in records]
    )


@router.post(
    "/sync/{collection}/conflicts/{document_id}/resolve",
    response_model=ResolveConflictResponse
)
async def resolve_conflict(
    collection: str,
    document_id: str,
    body: ResolveConflictRequest,
    actor_id: str = Depends(get_current_actor)
):
    """
    Settle a queued conflict.

    Raises:
        - 400: Custom choice without a valid payload
        - 403: Conflict belongs to another actor
        - 404: No pending conflict for the document
    """
    coordinator = get_coordinator()
    stored = coordinator.resolve_conflict(
        collection, document_id, body.choice, actor_id, custom_payload=body.payload
    )
    return ResolveConflictResponse(
        documentId=document_id,
        choice=body.choice,
        document=stored.to_dict() if stored else None,
    )
