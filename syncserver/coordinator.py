"""
Reconciliation coordinator for the authoritative store.

One sync exchange runs three stages: admit the actor, ingest the client's
changed documents one at a time through the conflict resolver, then compute
the server changes the client has not seen yet. Per-document failures are
tallied and never abort the batch; only a store outage fails the exchange.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from common.conflict_log import ConflictRepository
from common.conflict_resolver import (
    Accept,
    ConflictPolicy,
    Insert,
    Merge,
    NoOp,
    Outcome,
    Queue,
    Reject,
    check_ownership,
    resolve,
)
from common.delta_codec import FullUnit, apply_transfer_unit, unit_from_dict
from common.exceptions import (
    Blocked,
    ConflictNotFound,
    DeltaApplyError,
    InvalidDocument,
    OwnershipViolation,
    StoreUnavailable,
    SyncExchangeError,
    Throttled,
    TransientStoreError,
    ValidationFailed,
)
from common.protocol import SyncRequest, SyncResponse
from common.retry_queue import RetryQueue
from common.store import DocumentStore
from common.types import (
    ConflictRecord,
    Document,
    ID_FIELD,
    PendingOperation,
    PUSH,
    SyncResults,
    dedupe_documents,
)
from common.utils import now_ms
from syncserver.admission import AdmissionMonitor, Decision
from syncserver.audit import AuditLog
from syncserver.config import CoordinatorConfig
from syncserver.policies import CollectionPolicy, PolicyRegistry

logger = logging.getLogger(__name__)

STAGE_ADMIT = "admit"
STAGE_INGEST = "ingest"
STAGE_OUTGOING = "outgoing"

CHOICE_SERVER = "server"
CHOICE_CLIENT = "client"
CHOICE_CUSTOM = "custom"


@dataclass
class _Exchange:
    results: SyncResults = field(default_factory=SyncResults)
    outbound: List[Document] = field(default_factory=list)
    resync_ids: List[str] = field(default_factory=list)


class ReconciliationCoordinator:
    """
    Drives sync exchanges against the authoritative store.

    Owns the admission monitor and the retry queue scheduler; `start()` and
    `stop()` run their background tasks.
    """

    def __init__(
        self,
        store: DocumentStore,
        admission: AdmissionMonitor,
        retry_queue: RetryQueue,
        conflicts: ConflictRepository,
        policies: Optional[PolicyRegistry] = None,
        config: Optional[CoordinatorConfig] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], int] = now_ms
    ):
        """
        Initialize the coordinator.

        Args:
            store: Authoritative document store
            admission: Admission monitor gating each exchange
            retry_queue: Queue receiving writes that failed transiently
            conflicts: Repository for manual-policy conflicts
            policies: Per-collection hooks
            config: Coordinator tunables
            audit: Optional audit trail
            clock: Millisecond clock for watermarks and resolution timestamps
        """
        self.store = store
        self.admission = admission
        self.retry_queue = retry_queue
        self.conflicts = conflicts
        self.policies = policies or PolicyRegistry()
        self.config = config or CoordinatorConfig()
        self.audit = audit
        self.clock = clock

        self.retry_queue.set_deliver(self.retry_pending)
        self.retry_queue.on_dropped(self._on_operation_dropped)

    async def start(self) -> None:
        """Start background tasks owned by the coordinator."""
        await self.admission.start()
        await self.retry_queue.start()
        if self.audit:
            self.audit.purge_expired()
        logger.info("Reconciliation coordinator started")

    async def stop(self) -> None:
        """Stop background tasks owned by the coordinator."""
        await self.retry_queue.stop()
        await self.admission.stop()
        logger.info("Reconciliation coordinator stopped")

    def _admit(self, actor_id: str, origin: Optional[str]) -> None:
        decision = self.admission.admit(actor_id, origin)
        if decision.decision == Decision.THROTTLE:
            raise Throttled(decision.retry_after)
        if decision.decision == Decision.BLOCK:
            raise Blocked(decision.retry_after)

    def _policy_for(self, collection: str) -> CollectionPolicy:
        return self.policies.get(collection)

    def _conflict_policy(self, policy: CollectionPolicy) -> ConflictPolicy:
        return ConflictPolicy(policy.conflict_policy or self.config.conflict_policy)

    async def process_sync(
        self,
        collection: str,
        request: SyncRequest,
        actor_id: str,
        origin: Optional[str] = None
    ) -> SyncResponse:
        """
        Run one sync exchange.

        Args:
            collection: Target collection
            request: Client watermark and changed documents
            actor_id: Authenticated actor
            origin: Network origin of the request

        Returns:
            SyncResponse with the new watermark, server changes and tally

        Raises:
            Throttled: Actor exceeded its rate; nothing was ingested
            Blocked: Actor is blocked; nothing was ingested
            SyncExchangeError: The store became unavailable
        """
        started = time.monotonic()
        self._admit(actor_id, origin)

        policy = self._policy_for(collection)
        exchange = _Exchange()
        stage = STAGE_INGEST

        logger.info(
            f"Sync started [collection={collection}, actor={actor_id}, "
            f"changed={len(request.changed_docs)}, since={request.last_sync_timestamp}]"
        )

        try:
            for entry in request.changed_docs:
                self._ingest_entry(collection, entry, actor_id, policy, exchange)
                # let cancellation land between documents
                await asyncio.sleep(0)

            stage = STAGE_OUTGOING
            watermark, docs = self._compute_outgoing(
                collection, request.last_sync_timestamp, actor_id, policy, exchange.outbound
            )
        except (StoreUnavailable, TransientStoreError) as e:
            logger.error(
                f"Sync failed [collection={collection}, actor={actor_id}, stage={stage}]: {e}"
            )
            self._audit("sync", actor_id, collection, origin, False, started, {"stage": stage})
            raise SyncExchangeError(stage, e) from e
        except asyncio.CancelledError:
            logger.warning(
                f"Sync cancelled [collection={collection}, actor={actor_id}, stage={stage}]"
            )
            raise
        finally:
            self.admission.record_response_time(actor_id, origin, time.monotonic() - started)

        response = SyncResponse(
            timestamp=watermark,
            docs=docs,
            sync_results=exchange.results,
            resync_ids=exchange.resync_ids,
        )

        logger.info(
            f"Sync completed [collection={collection}, actor={actor_id}, "
            f"results={exchange.results.to_dict()}, outbound={len(docs)}, watermark={watermark}]"
        )
        self._audit(
            "sync", actor_id, collection, origin, True, started,
            {"results": exchange.results.to_dict(), "outbound": len(docs)}
        )
        return response

    async def pull_changes(
        self,
        collection: str,
        since: int,
        actor_id: str,
        origin: Optional[str] = None
    ) -> SyncResponse:
        """
        Return server changes since a watermark without ingesting anything.

        Raises:
            Throttled: Actor exceeded its rate
            Blocked: Actor is blocked
            SyncExchangeError: The store became unavailable
        """
        started = time.monotonic()
        self._admit(actor_id, origin)

        policy = self._policy_for(collection)
        try:
            watermark, docs = self._compute_outgoing(collection, since, actor_id, policy, [])
        except (StoreUnavailable, TransientStoreError) as e:
            self._audit("pull", actor_id, collection, origin, False, started, None)
            raise SyncExchangeError(STAGE_OUTGOING, e) from e
        finally:
            self.admission.record_response_time(actor_id, origin, time.monotonic() - started)

        self._audit("pull", actor_id, collection, origin, True, started, {"outbound": len(docs)})
        return SyncResponse(timestamp=watermark, docs=docs)

    def _ingest_entry(
        self,
        collection: str,
        entry: Any,
        actor_id: str,
        policy: CollectionPolicy,
        exchange: _Exchange
    ) -> None:
        doc_id = entry.get(ID_FIELD) if isinstance(entry, dict) else None
        try:
            self._apply_entry(collection, entry, actor_id, policy, exchange)
        except DeltaApplyError as e:
            logger.warning(
                f"Delta could not be applied, requesting full document "
                f"[collection={collection}, doc_id={doc_id}]: {e}"
            )
            if doc_id:
                exchange.resync_ids.append(doc_id)
        except (InvalidDocument, OwnershipViolation, ValidationFailed) as e:
            exchange.results.rejected += 1
            logger.warning(
                f"Rejected document [collection={collection}, doc_id={doc_id}, "
                f"actor={actor_id}, reason={type(e).__name__}]: {e}"
            )
        except TransientStoreError as e:
            self.retry_queue.register_failure(
                collection,
                doc_id or "",
                PUSH,
                {"actorId": actor_id, "entry": entry},
                str(e),
            )
            exchange.results.queued += 1

    def _apply_entry(
        self,
        collection: str,
        entry: Any,
        actor_id: str,
        policy: CollectionPolicy,
        exchange: _Exchange
    ) -> None:
        """
        Ingest one wire entry with bounded retries on lost write races.

        Raises:
            InvalidDocument, OwnershipViolation, ValidationFailed: Document skipped
            DeltaApplyError: Delta base does not match the stored version
            TransientStoreError: Store hiccup or write contention persisted
        """
        unit = unit_from_dict(entry)
        doc_id = unit.document.id if isinstance(unit, FullUnit) else unit.document_id

        for attempt in range(1, self.config.max_write_attempts + 1):
            server_doc = self.store.get(collection, doc_id)
            client_doc = apply_transfer_unit(server_doc, unit)
            client_doc = self._prepare(collection, client_doc, actor_id, policy, server_doc)

            outcome = resolve(
                server_doc,
                client_doc,
                self._conflict_policy(policy),
                actor_id=actor_id,
                conflict_handler=policy.conflict_handler,
                tie_breaker=self.config.tie_breaker,
            )

            if self._apply_outcome(collection, outcome, server_doc, actor_id, exchange):
                return

            logger.info(
                f"Write raced, re-resolving [collection={collection}, doc_id={doc_id}, "
                f"attempt={attempt}/{self.config.max_write_attempts}]"
            )

        raise TransientStoreError(
            f"Write contention on {collection}/{doc_id} after {self.config.max_write_attempts} attempts"
        )

    def _prepare(
        self,
        collection: str,
        doc: Document,
        actor_id: str,
        policy: CollectionPolicy,
        server_doc: Optional[Document]
    ) -> Document:
        if policy.schema is not None:
            doc = policy.schema.upgrade(doc)

        check_ownership(doc, actor_id, server_doc)

        if policy.validate is not None and not policy.validate(doc, actor_id):
            raise ValidationFailed(f"Document {collection}/{doc.id} failed collection validation")

        if self.config.owner_scoping and doc.owner_id is None:
            doc = replace(doc, owner_id=actor_id)
        return doc

    def _apply_outcome(
        self,
        collection: str,
        outcome: Outcome,
        server_doc: Optional[Document],
        actor_id: str,
        exchange: _Exchange
    ) -> bool:
        """
        Apply a resolver outcome to the store and the tally.

        Returns:
            False if the guarded write lost a race and must be re-resolved
        """
        results = exchange.results

        if isinstance(outcome, Insert):
            if self.store.atomic_put(collection, outcome.document, None) is None:
                return False
            results.added += 1
            return True

        if isinstance(outcome, Accept):
            if outcome.document.same_content(server_doc):
                return True
            if self.store.atomic_put(collection, outcome.document, server_doc) is None:
                return False
            if outcome.document.deleted:
                results.deleted += 1
            else:
                results.updated += 1
            return True

        if isinstance(outcome, Merge):
            stored = self.store.atomic_put(collection, outcome.document, server_doc)
            if stored is None:
                return False
            results.conflicts += 1
            results.updated += 1
            exchange.outbound.append(stored)
            return True

        if isinstance(outcome, Reject):
            results.conflicts += 1
            exchange.outbound.append(outcome.server_document)
            logger.info(
                f"Conflict, keeping server version [collection={collection}, "
                f"doc_id={outcome.server_document.id}, actor={actor_id}]"
            )
            return True

        if isinstance(outcome, Queue):
            self.conflicts.save(ConflictRecord(
                collection=collection,
                document_id=outcome.client_document.id,
                server_version=outcome.server_document,
                client_version=outcome.client_document,
                actor_id=actor_id,
                created_at=self.clock(),
            ))
            results.conflicts += 1
            return True

        if isinstance(outcome, NoOp):
            return True

        raise ValueError(f"Unknown resolver outcome: {outcome!r}")

    def _compute_outgoing(
        self,
        collection: str,
        since: int,
        actor_id: str,
        policy: CollectionPolicy,
        extra: List[Document]
    ):
        # read the clock before querying; writes stamped in the current tick
        # may still be committing, so the next exchange starts one tick back
        watermark = max(self.clock() - 1, since)
        owner_filter = actor_id if self.config.owner_scoping else None

        changed = self.store.query_changed_since(collection, since, owner_filter)
        docs = dedupe_documents(changed + list(extra))

        if policy.transform is not None:
            docs = [policy.transform(doc, actor_id) for doc in docs]
        return watermark, docs

    async def retry_pending(self, operation: PendingOperation) -> None:
        """
        Redeliver one queued write through the same guarded path.

        Documents that can never apply are logged and dropped from the queue.

        Raises:
            TransientStoreError: The store is still failing or contended
            StoreUnavailable: The store cannot be reached
        """
        actor_id = operation.payload.get("actorId")
        entry = operation.payload.get("entry")
        policy = self._policy_for(operation.collection)
        exchange = _Exchange()

        try:
            self._apply_entry(operation.collection, entry, actor_id, policy, exchange)
        except (InvalidDocument, OwnershipViolation, ValidationFailed, DeltaApplyError) as e:
            logger.warning(
                f"Discarding queued write that can no longer apply [collection={operation.collection}, "
                f"doc_id={operation.document_id}, reason={type(e).__name__}]: {e}"
            )
            return
        logger.info(
            f"Redelivered queued write [collection={operation.collection}, "
            f"doc_id={operation.document_id}, results={exchange.results.to_dict()}]"
        )

    def _on_operation_dropped(self, operation: PendingOperation) -> None:
        self._audit(
            "retry_dropped",
            operation.payload.get("actorId"),
            operation.collection,
            None,
            False,
            None,
            {"documentId": operation.document_id, "error": operation.last_error},
        )

    def list_conflicts(self, collection: str, actor_id: str) -> List[ConflictRecord]:
        """Unresolved conflicts queued by this actor."""
        return self.conflicts.list_unresolved(collection, actor_id)

    def resolve_conflict(
        self,
        collection: str,
        document_id: str,
        choice: str,
        actor_id: str,
        custom_payload: Optional[Dict[str, Any]] = None
    ) -> Optional[Document]:
        """
        Settle a queued conflict.

        Args:
            collection: Collection of the document
            document_id: Conflicted document
            choice: "server" keeps the stored version, "client" stores the
                queued client version, "custom" stores `custom_payload`
            actor_id: Actor resolving the conflict
            custom_payload: Payload for the "custom" choice

        Returns:
            The version now stored

        Raises:
            ConflictNotFound: No unresolved conflict for this document
            OwnershipViolation: Conflict belongs to another actor
            TransientStoreError: Write contention persisted
        """
        record = self.conflicts.get(collection, document_id)
        if record is None:
            raise ConflictNotFound(f"No pending conflict for {collection}/{document_id}")
        if record.actor_id != actor_id:
            raise OwnershipViolation(
                f"Conflict on {collection}/{document_id} belongs to another actor"
            )
        if choice not in (CHOICE_SERVER, CHOICE_CLIENT, CHOICE_CUSTOM):
            raise ValueError(f"Unknown resolution choice: {choice}")
        if choice == CHOICE_CUSTOM and custom_payload is None:
            raise InvalidDocument("Custom resolution requires a payload")

        for _ in range(self.config.max_write_attempts):
            current = self.store.get(collection, document_id)

            if choice == CHOICE_SERVER:
                self.conflicts.delete(collection, document_id)
                logger.info(
                    f"Conflict resolved [collection={collection}, doc_id={document_id}, choice={choice}]"
                )
                self._audit(
                    "resolve", actor_id, collection, None, True, None,
                    {"documentId": document_id, "choice": choice}
                )
                return current

            winner = record.client_version
            if choice == CHOICE_CUSTOM:
                winner = replace(winner, payload=dict(custom_payload))
            floor = current.updated_at + 1 if current else 1
            winner = replace(winner, updated_at=max(self.clock(), floor))
            # revalidate after replacing the payload
            winner = Document.from_dict(winner.to_dict())

            check_ownership(winner, actor_id, current)
            stored = self.store.atomic_put(collection, winner, current)
            if stored is not None:
                self.conflicts.delete(collection, document_id)
                logger.info(
                    f"Conflict resolved [collection={collection}, doc_id={document_id}, choice={choice}]"
                )
                self._audit(
                    "resolve", actor_id, collection, None, True, None,
                    {"documentId": document_id, "choice": choice}
                )
                return stored

        raise TransientStoreError(f"Write contention resolving {collection}/{document_id}")

    def status(self) -> Dict[str, Any]:
        """Operational counters for the status endpoint."""
        return {
            "admission": self.admission.snapshot(),
            "pendingOperations": self.retry_queue.pending_count(),
            "unresolvedConflicts": self.conflicts.count_unresolved(),
            "retryScheduled": self.retry_queue.scheduled,
            "conflictPolicy": ConflictPolicy(self.config.conflict_policy).value,
            "ownerScoping": self.config.owner_scoping,
        }

    def _audit(
        self,
        action: str,
        actor_id: Optional[str],
        collection: Optional[str],
        origin: Optional[str],
        success: bool,
        started: Optional[float],
        details: Optional[Dict[str, Any]]
    ) -> None:
        if self.audit is None:
            return
        duration_ms = int((time.monotonic() - started) * 1000) if started is not None else None
        self.audit.record(
            action,
            actor_id,
            collection=collection,
            origin=origin,
            success=success,
            duration_ms=duration_ms,
            details=details,
        )
