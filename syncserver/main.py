"""Entry point for the sync server."""

import math
import time
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from common.conflict_log import ConflictRepository
from common.exceptions import (
    Blocked,
    ConflictNotFound,
    DocSyncError,
    InvalidDocument,
    OwnershipViolation,
    SyncExchangeError,
    Throttled,
    ValidationFailed,
)
from common.logging_config import setup_logging
from common.retry_queue import PendingOperationRepository, RetryQueue
from common.store import SQLiteDocumentStore
from syncserver import config
from syncserver.admission import AdmissionMonitor
from syncserver.audit import AuditLog
from syncserver.config import CoordinatorConfig
from syncserver.coordinator import ReconciliationCoordinator
from syncserver.exceptions import AuthenticationRequired, ServiceNotReady
from syncserver.policies import PolicyRegistry
from syncserver.routes.sync_routes import router as sync_router
from syncserver.service_locator import get_coordinator, set_coordinator

logger = setup_logging('syncserver')

app = FastAPI(
    title="docsync server",
    description="Authoritative replica for offline-first document synchronization",
    version="1.0.0"
)

policy_registry = PolicyRegistry()

coordinator: Optional[ReconciliationCoordinator] = None


def build_coordinator(db_path: str, policies: Optional[PolicyRegistry] = None) -> ReconciliationCoordinator:
    """
    Wire a coordinator and its collaborators over one SQLite database.

    Args:
        db_path: SQLite database file
        policies: Collection policies, defaults to the module registry

    Returns:
        Unstarted ReconciliationCoordinator
    """
    coordinator_config = CoordinatorConfig()
    retry_queue = RetryQueue(
        PendingOperationRepository(db_path),
        batch_size=config.RETRY_BATCH,
        max_retries=config.RETRY_CEILING,
        interval_seconds=config.RETRY_INTERVAL,
    )
    return ReconciliationCoordinator(
        store=SQLiteDocumentStore(db_path, authoritative=True),
        admission=AdmissionMonitor(coordinator_config.admission),
        retry_queue=retry_queue,
        conflicts=ConflictRepository(db_path),
        policies=policies or policy_registry,
        config=coordinator_config,
        audit=AuditLog(db_path, retention_days=config.AUDIT_RETENTION_DAYS),
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log all HTTP requests and responses.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()

    logger.info(
        f"Request started: {request.method} {request.url.path} [request_id={request_id}]"
    )

    response = await call_next(request)

    duration = time.time() - start_time
    actor_id = getattr(request.state, 'actor_id', None)

    logger.info(
        f"Request completed: {request.method} {request.url.path} "
        f"status={response.status_code} duration={duration:.3f}s "
        f"[request_id={request_id}] [actor={actor_id or 'anonymous'}]"
    )

    response.headers["X-Request-ID"] = request_id

    return response


@app.on_event("startup")
async def startup_event():
    """
    Build the coordinator and start its background tasks.
    """
    global coordinator

    logger.info("Sync server starting up...")

    coordinator = build_coordinator(config.DATABASE_PATH)
    set_coordinator(coordinator)
    await coordinator.start()

    logger.info(
        f"Sync server ready [database={config.DATABASE_PATH}, "
        f"policy={coordinator.config.conflict_policy}, tokens={len(config.API_TOKENS)}]"
    )


@app.on_event("shutdown")
async def shutdown_event():
    """
    Stop background tasks on application shutdown.
    """
    global coordinator

    logger.info("Sync server shutting down...")

    if coordinator:
        await coordinator.stop()
        coordinator = None
    set_coordinator(None)


def _request_id(request: Request) -> str:
    return getattr(request.state, 'request_id', 'unknown')


def _retry_after(seconds: float) -> str:
    return str(max(1, math.ceil(seconds)))


@app.exception_handler(AuthenticationRequired)
async def authentication_required_handler(request: Request, exc: AuthenticationRequired):
    logger.warning(
        f"Authentication required: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": str(exc), "code": "NOT_AUTHENTICATED"},
        headers={"WWW-Authenticate": "Bearer"}
    )


@app.exception_handler(InvalidDocument)
async def invalid_document_handler(request: Request, exc: InvalidDocument):
    logger.warning(
        f"Invalid document: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "code": "INVALID_DOCUMENT"}
    )


@app.exception_handler(OwnershipViolation)
async def ownership_violation_handler(request: Request, exc: OwnershipViolation):
    actor_id = getattr(request.state, 'actor_id', 'unknown')
    logger.warning(
        f"Ownership violation: {exc} [request_id={_request_id(request)}] [actor={actor_id}] "
        f"path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc), "code": "OWNERSHIP_VIOLATION"}
    )


@app.exception_handler(ValidationFailed)
async def validation_failed_handler(request: Request, exc: ValidationFailed):
    logger.warning(
        f"Validation failed: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc), "code": "VALIDATION_FAILED"}
    )


@app.exception_handler(Blocked)
async def blocked_handler(request: Request, exc: Blocked):
    logger.warning(
        f"Blocked: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc), "code": "BLOCKED", "retryAfter": exc.retry_after},
        headers={"Retry-After": _retry_after(exc.retry_after)}
    )


@app.exception_handler(Throttled)
async def throttled_handler(request: Request, exc: Throttled):
    logger.warning(
        f"Throttled: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": str(exc), "code": "THROTTLED", "retryAfter": exc.retry_after},
        headers={"Retry-After": _retry_after(exc.retry_after)}
    )


@app.exception_handler(ConflictNotFound)
async def conflict_not_found_handler(request: Request, exc: ConflictNotFound):
    logger.warning(
        f"Conflict not found: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "code": "CONFLICT_NOT_FOUND"}
    )


@app.exception_handler(SyncExchangeError)
async def sync_exchange_error_handler(request: Request, exc: SyncExchangeError):
    logger.error(
        f"Sync exchange failed: {exc} [request_id={_request_id(request)}] path={request.url.path}",
        exc_info=exc.cause
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc), "code": "SYNC_FAILED", "stage": exc.stage}
    )


@app.exception_handler(ServiceNotReady)
async def service_not_ready_handler(request: Request, exc: ServiceNotReady):
    logger.error(
        f"Service not ready: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "code": "SERVICE_NOT_READY"}
    )


@app.exception_handler(DocSyncError)
async def docsync_exception_handler(request: Request, exc: DocSyncError):
    logger.error(
        f"DocSync exception: {exc} [request_id={_request_id(request)}] path={request.url.path}",
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc), "code": "INTERNAL_ERROR"}
    )


app.include_router(sync_router)


@app.get("/")
async def root():
    """
    Root endpoint.
    """
    return {"message": "docsync server", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns 200 if service is alive.
    """
    return {"status": "healthy", "service": "syncserver"}


@app.get("/status")
async def status_check():
    """
    Operational status: admission counters, retry backlog, pending conflicts.
    """
    current = get_coordinator()
    return {"status": "running", **current.status()}


def main() -> None:
    """
    Start the FastAPI server with uvicorn.
    """
    uvicorn.run(
        "syncserver.main:app",
        host=config.SERVER_HOST,
        port=config.SERVER_PORT
    )


if __name__ == "__main__":
    main()
