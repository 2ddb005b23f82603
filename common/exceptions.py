"""Exception taxonomy shared by both replicas."""

from typing import Optional


class DocSyncError(Exception):
    """
    Base exception class for all reconciliation errors.
    """
    pass


class InvalidDocument(DocSyncError):
    """
    Raised when a document is malformed or violates model invariants.
    """
    pass


class OwnershipViolation(DocSyncError):
    """
    Raised when an actor attempts to modify a document owned by another actor.
    """
    pass


class ValidationFailed(DocSyncError):
    """
    Raised when a collection policy rejects a document.
    """
    pass


class ConflictNotFound(DocSyncError):
    """
    Raised when a conflict resolution targets a conflict that does not exist.
    """
    pass


class TransientStoreError(DocSyncError):
    """
    Raised when a single store operation fails in a way that may succeed on retry.
    """
    pass


class StoreUnavailable(DocSyncError):
    """
    Raised when the document store cannot be reached at all.
    """
    pass


class DeltaApplyError(DocSyncError):
    """
    Raised when a delta cannot be applied to the supplied base document.
    """
    pass


class TransportError(DocSyncError):
    """
    Raised when the replica cannot complete an exchange with the server.
    """
    pass


class Throttled(DocSyncError):
    """
    Raised when an actor exceeded its admission budget.
    """

    def __init__(self, retry_after: float, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message or f"Rate limit exceeded, retry after {retry_after:.1f}s")


class Blocked(DocSyncError):
    """
    Raised when an actor is temporarily blocked from syncing.
    """

    def __init__(self, retry_after: float, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message or f"Access temporarily blocked, retry after {retry_after:.1f}s")


class SyncExchangeError(DocSyncError):
    """
    Raised when a whole sync exchange fails.

    Carries the stage reached so callers can decide whether to retry the batch.
    """

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Sync exchange failed during {stage}: {cause}")
