"""
Replica-side reconciliation.

Local writes land in the local store and are marked dirty. A sync exchange
sends every dirty document (as a delta against the last version both sides
shared when that is smaller), applies the server's changes under the
replica's conflict policy, re-sends anything the server could not patch and
only then advances the local watermark.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set

from common.conflict_log import ConflictRepository
from common.conflict_resolver import ConflictPolicy
from common.constants import DELTA_SIZE_THRESHOLD, SYNC_DEBOUNCE_SECONDS
from common.delta_codec import TransferUnit, compute_transfer_unit
from common.exceptions import (
    Blocked,
    ConflictNotFound,
    DocSyncError,
    InvalidDocument,
    SyncExchangeError,
    Throttled,
    TransportError,
)
from common.protocol import SyncRequest, SyncResponse
from common.retry_queue import RetryQueue
from common.schema import CollectionSchema
from common.types import ConflictRecord, Document, PendingOperation, PUSH, SyncResults, SyncWatermark
from common.utils import generate_uuid, now_ms
from replica.local_store import LocalStore
from replica.sync_state import SyncStateChannel
from replica.transport import HttpTransport

logger = logging.getLogger(__name__)

COLLECTION_WIDE = "*"
MAX_EXCHANGE_ROUNDS = 3

CHOICE_SERVER = "server"
CHOICE_CLIENT = "client"
CHOICE_CUSTOM = "custom"


class ReplicaCoordinator:
    """
    Drives sync exchanges from a disconnected replica.

    Runs periodic auto-sync and debounced sync-on-mutation as explicit
    asyncio tasks started by `start()` and cancelled by `stop()`.
    """

    def __init__(
        self,
        store: LocalStore,
        transport: HttpTransport,
        retry_queue: RetryQueue,
        conflicts: ConflictRepository,
        actor_id: str = "local",
        collections: Iterable[str] = (),
        conflict_policy: str = "server-wins",
        auto_sync_interval: float = 0.0,
        debounce_seconds: float = SYNC_DEBOUNCE_SECONDS,
        schemas: Optional[Dict[str, CollectionSchema]] = None,
        delta_threshold: float = DELTA_SIZE_THRESHOLD,
        clock=now_ms
    ):
        """
        Initialize the replica coordinator.

        Args:
            store: Local document store
            transport: Connection to the sync server
            retry_queue: Queue for exchanges that failed
            conflicts: Local conflict records (manual policy)
            actor_id: Identity used for local watermarks and conflict records
            collections: Collections synced by sync_all()
            conflict_policy: How server changes meet unsynced local edits
            auto_sync_interval: Seconds between automatic syncs, 0 disables
            debounce_seconds: Quiet period after a local write before syncing
            schemas: Optional collection schemas for new documents and upgrades
            delta_threshold: Maximum delta size relative to the full document
            clock: Millisecond clock for local timestamps
        """
        self.store = store
        self.transport = transport
        self.retry_queue = retry_queue
        self.conflicts = conflicts
        self.actor_id = actor_id
        self.collections: List[str] = list(collections)
        self.conflict_policy = ConflictPolicy(conflict_policy)
        self.auto_sync_interval = auto_sync_interval
        self.debounce_seconds = debounce_seconds
        self.schemas: Dict[str, CollectionSchema] = dict(schemas or {})
        self.delta_threshold = delta_threshold
        self.clock = clock

        self.state = SyncStateChannel()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._debounce_tasks: Dict[str, asyncio.Task] = {}
        self._auto_task: Optional[asyncio.Task] = None
        self._running = False

        self.retry_queue.set_deliver(self._redeliver)
        self.retry_queue.on_dropped(self._on_operation_dropped)

    # lifecycle

    async def start(self) -> None:
        """Start auto-sync and the retry scheduler."""
        if self._running:
            logger.warning("Replica coordinator already running")
            return

        self._running = True
        await self.retry_queue.start()
        if self.auto_sync_interval > 0:
            self._auto_task = asyncio.create_task(self._auto_sync_loop())
        await self._refresh_counters()
        logger.info(
            f"Replica coordinator started [collections={self.collections}, "
            f"auto_sync_interval={self.auto_sync_interval}s, policy={self.conflict_policy.value}]"
        )

    async def stop(self) -> None:
        """Cancel auto-sync, pending debounced syncs and the retry scheduler."""
        if not self._running:
            return

        self._running = False
        tasks = list(self._debounce_tasks.values())
        if self._auto_task:
            tasks.append(self._auto_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._debounce_tasks.clear()
        self._auto_task = None

        await self.retry_queue.stop()
        logger.info("Replica coordinator stopped")

    async def _auto_sync_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.auto_sync_interval)

                if not self._running:
                    break

                await self.sync_all()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in auto-sync loop: {e}", exc_info=True)

    def _schedule_debounced_sync(self, collection: str) -> None:
        if not self._running:
            return

        previous = self._debounce_tasks.get(collection)
        if previous and not previous.done():
            previous.cancel()
        self._debounce_tasks[collection] = asyncio.create_task(self._debounced_sync(collection))

    async def _debounced_sync(self, collection: str) -> None:
        try:
            await asyncio.sleep(self.debounce_seconds)
        except asyncio.CancelledError:
            return

        try:
            await self.sync_collection(collection)
        except SyncExchangeError as e:
            logger.warning(f"Debounced sync failed [collection={collection}]: {e}")
        finally:
            if self._debounce_tasks.get(collection) is asyncio.current_task():
                del self._debounce_tasks[collection]

    # local writes

    def get(self, collection: str, document_id: str) -> Optional[Document]:
        """Live local version of a document; tombstones read as absent."""
        doc = self.store.get(collection, document_id)
        if doc is None or doc.deleted:
            return None
        return doc

    def list(self, collection: str) -> List[Document]:
        return self.store.list_documents(collection)

    async def put(
        self,
        collection: str,
        payload: Dict[str, Any],
        document_id: Optional[str] = None
    ) -> Document:
        """
        Create or replace a document locally.

        Args:
            collection: Target collection
            payload: Document fields
            document_id: Existing or explicit id, generated when omitted

        Returns:
            The stored local version
        """
        existing = self.store.get(collection, document_id) if document_id else None
        now = self.clock()

        if existing is not None:
            doc = replace(
                existing,
                payload=dict(payload),
                deleted=False,
                updated_at=max(now, existing.updated_at + 1),
            )
            doc = Document.from_dict(doc.to_dict())
        elif collection in self.schemas:
            doc = self.schemas[collection].new_document(payload, document_id=document_id, now=now)
        else:
            doc = Document(
                id=document_id or generate_uuid(),
                created_at=now,
                updated_at=now,
                payload=dict(payload),
            )

        return await self._commit_local(collection, doc)

    async def delete(self, collection: str, document_id: str) -> Optional[Document]:
        """
        Tombstone a document locally.

        Returns:
            The tombstone, or None if the document does not exist
        """
        existing = self.store.get(collection, document_id)
        if existing is None or existing.deleted:
            return existing

        tombstone = existing.tombstone(max(self.clock(), existing.updated_at + 1))
        return await self._commit_local(collection, tombstone)

    async def _commit_local(self, collection: str, doc: Document) -> Document:
        stored = self.store.write(collection, doc)
        self.store.mark_dirty(collection, stored)
        if collection not in self.collections:
            self.collections.append(collection)

        logger.debug(f"Local write [collection={collection}, doc_id={doc.id}, deleted={doc.deleted}]")
        await self._refresh_counters()
        self._schedule_debounced_sync(collection)
        return stored

    # exchanges

    def _lock_for(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    async def sync_all(self) -> Dict[str, SyncResults]:
        """
        Sync every known collection; one failing collection does not stop the rest.

        Returns:
            Collection -> tally for collections that synced
        """
        results: Dict[str, SyncResults] = {}
        for collection in list(self.collections):
            try:
                results[collection] = await self.sync_collection(collection)
            except SyncExchangeError as e:
                logger.warning(f"Sync of {collection} failed: {e}")
        return results

    async def sync_collection(self, collection: str, register_failure: bool = True) -> SyncResults:
        """
        Run one full exchange for a collection.

        Args:
            collection: Collection to sync
            register_failure: Queue the collection for retry when the exchange fails

        Returns:
            Combined tally reported by the server

        Raises:
            SyncExchangeError: The exchange failed; the watermark was not moved
        """
        async with self._lock_for(collection):
            await self.state.update(is_syncing=True, error=None)
            try:
                results = await self._exchange(collection)
            except (TransportError, Throttled, Blocked, InvalidDocument) as e:
                await self.state.update(
                    is_syncing=False,
                    error=str(e),
                    online=not isinstance(e, TransportError),
                )
                if register_failure:
                    self._register_collection_failure(collection, e)
                raise SyncExchangeError("exchange", e) from e
            except DocSyncError as e:
                await self.state.update(is_syncing=False, error=str(e))
                raise SyncExchangeError("apply", e) from e

            await self.state.update(
                is_syncing=False,
                last_sync_time=self.clock(),
                error=None,
                online=True,
            )
            await self._refresh_counters()
            return results

    async def _exchange(self, collection: str) -> SyncResults:
        watermark = self.store.get_watermark(collection, self.actor_id).timestamp
        to_send = self.store.dirty_documents(collection)
        total = SyncResults()
        new_watermark = watermark

        logger.info(
            f"Sync started [collection={collection}, dirty={len(to_send)}, since={watermark}]"
        )

        for round_number in range(1, MAX_EXCHANGE_ROUNDS + 1):
            units = [self._encode(collection, doc) for doc in to_send]
            response = await self.transport.exchange(
                collection, SyncRequest.from_units(watermark, units)
            )
            _accumulate(total, response.sync_results)
            new_watermark = max(new_watermark, response.timestamp)

            repush = self._apply_response(collection, to_send, response)
            to_send = [
                doc for doc in (self.store.get(collection, doc_id) for doc_id in sorted(repush))
                if doc is not None and self.store.is_dirty(collection, doc.id)
            ]
            if not to_send:
                break
            if round_number == MAX_EXCHANGE_ROUNDS:
                logger.info(
                    f"Leaving {len(to_send)} documents dirty for the next sync [collection={collection}]"
                )
                break

        self.store.commit_watermark(SyncWatermark(collection, self.actor_id, new_watermark))
        logger.info(
            f"Sync completed [collection={collection}, results={total.to_dict()}, "
            f"watermark={new_watermark}]"
        )
        return total

    def _encode(self, collection: str, doc: Document) -> TransferUnit:
        shadow = self.store.get_shadow(collection, doc.id)
        return compute_transfer_unit(shadow, doc, self.delta_threshold)

    def _apply_response(
        self,
        collection: str,
        sent: List[Document],
        response: SyncResponse
    ) -> Set[str]:
        """
        Apply server documents locally and settle the dirty set.

        Returns:
            Ids that must be sent again in this exchange
        """
        repush: Set[str] = set(response.resync_ids)

        for doc_id in response.resync_ids:
            # next encode falls back to the full document
            self.store.drop_shadow(collection, doc_id)

        sent_by_id = {doc.id: doc for doc in sent}
        for server_doc in response.docs:
            if server_doc.id in response.resync_ids:
                # the server has not seen this edit yet; judge after the full resend
                continue
            if collection in self.schemas:
                server_doc = self.schemas[collection].upgrade(server_doc)
            if self._apply_server_doc(collection, server_doc, sent_by_id.get(server_doc.id)):
                repush.add(server_doc.id)

        for doc in sent:
            if doc.id not in repush:
                self.store.clear_dirty(collection, doc.id, doc.updated_at)

        return repush

    def _apply_server_doc(
        self,
        collection: str,
        server_doc: Document,
        sent: Optional[Document] = None
    ) -> bool:
        """
        Merge one server version into the local store.

        Args:
            collection: Collection of the document
            server_doc: Version returned by the server
            sent: Version this exchange pushed for the same id, if any

        Returns:
            True if the local version won and must be pushed again
        """
        local = self.store.get(collection, server_doc.id)

        if local is not None and server_doc.same_content(sent) and not server_doc.same_content(local):
            # pushed version acknowledged, local edited again meanwhile
            stored = self.store.write(collection, replace(
                local,
                revision=server_doc.revision,
                server_updated_at=server_doc.server_updated_at,
            ))
            self.store.save_shadow(collection, server_doc)
            self.store.mark_dirty(collection, stored)
            return False

        if local is None or server_doc.same_content(local) or not self.store.is_dirty(collection, local.id):
            self._accept_server(collection, server_doc, local)
            return False

        policy = self.conflict_policy
        if policy == ConflictPolicy.TIMESTAMP_WINS:
            policy = (
                ConflictPolicy.SERVER_WINS
                if server_doc.updated_at >= local.updated_at
                else ConflictPolicy.CLIENT_WINS
            )

        logger.info(
            f"Local edit conflicts with server version [collection={collection}, "
            f"doc_id={local.id}, policy={policy.value}]"
        )

        if policy == ConflictPolicy.SERVER_WINS:
            self._accept_server(collection, server_doc, local)
            return False

        if policy == ConflictPolicy.MANUAL:
            self.conflicts.save(ConflictRecord(
                collection=collection,
                document_id=local.id,
                server_version=server_doc,
                client_version=local,
                actor_id=self.actor_id,
                created_at=self.clock(),
            ))
            self.store.save_shadow(collection, server_doc)
            self.store.clear_dirty(collection, local.id, local.updated_at)
            return False

        self._rebase_local(collection, local, server_doc)
        return True

    def _accept_server(self, collection: str, server_doc: Document, local: Optional[Document]) -> None:
        self.store.write(collection, server_doc)
        self.store.save_shadow(collection, server_doc)
        if local is not None:
            self.store.clear_dirty(collection, local.id, max(local.updated_at, server_doc.updated_at))

    def _rebase_local(self, collection: str, local: Document, server_doc: Document) -> Document:
        """Keep the local edit but move it on top of the server version."""
        rebased = replace(
            local,
            revision=server_doc.revision,
            server_updated_at=server_doc.server_updated_at,
            updated_at=max(local.updated_at, server_doc.updated_at + 1, self.clock()),
        )
        stored = self.store.write(collection, rebased)
        self.store.save_shadow(collection, server_doc)
        self.store.mark_dirty(collection, stored)
        return stored

    # retries

    def _register_collection_failure(self, collection: str, error: Exception) -> None:
        already_queued = any(
            op.collection == collection and op.direction == PUSH
            for op in self.retry_queue.repository.list_all()
        )
        if already_queued:
            return
        self.retry_queue.register_failure(
            collection, COLLECTION_WIDE, PUSH, {"collection": collection}, str(error)
        )

    async def _redeliver(self, operation: PendingOperation) -> None:
        await self.sync_collection(operation.collection, register_failure=False)

    def _on_operation_dropped(self, operation: PendingOperation) -> None:
        logger.error(
            f"Giving up on queued sync [collection={operation.collection}, "
            f"retries={operation.retries}, error={operation.last_error}]"
        )

    # manual conflicts

    def list_conflicts(self, collection: str) -> List[ConflictRecord]:
        return self.conflicts.list_unresolved(collection)

    async def resolve_conflict(
        self,
        collection: str,
        document_id: str,
        choice: str,
        custom_payload: Optional[Dict[str, Any]] = None
    ) -> Document:
        """
        Settle a locally recorded conflict.

        Args:
            collection: Collection of the document
            document_id: Conflicted document
            choice: "server", "client" or "custom"
            custom_payload: Payload for the "custom" choice

        Returns:
            The local version after resolution

        Raises:
            ConflictNotFound: No unresolved conflict for this document
            InvalidDocument: Custom payload missing or invalid
        """
        record = self.conflicts.get(collection, document_id)
        if record is None:
            raise ConflictNotFound(f"No pending conflict for {collection}/{document_id}")
        if choice not in (CHOICE_SERVER, CHOICE_CLIENT, CHOICE_CUSTOM):
            raise ValueError(f"Unknown resolution choice: {choice}")
        if choice == CHOICE_CUSTOM and custom_payload is None:
            raise InvalidDocument("Custom resolution requires a payload")

        server_doc = record.server_version
        local = self.store.get(collection, document_id)

        if choice == CHOICE_SERVER:
            self._accept_server(collection, server_doc, local)
            result = server_doc
        else:
            winner = record.client_version
            if choice == CHOICE_CUSTOM:
                winner = Document.from_dict({**winner.to_dict(), "payload": dict(custom_payload)})
            if local is not None:
                winner = replace(winner, updated_at=max(winner.updated_at, local.updated_at))
            result = self._rebase_local(collection, winner, server_doc)
            self._schedule_debounced_sync(collection)

        self.conflicts.delete(collection, document_id)
        logger.info(f"Conflict resolved [collection={collection}, doc_id={document_id}, choice={choice}]")
        await self._refresh_counters()
        return result

    async def _refresh_counters(self) -> None:
        await self.state.update(
            pending_changes=self.store.dirty_count(),
            conflicts=self.conflicts.count_unresolved(),
        )


def _accumulate(total: SyncResults, results: SyncResults) -> None:
    total.added += results.added
    total.updated += results.updated
    total.deleted += results.deleted
    total.conflicts += results.conflicts
    total.rejected += results.rejected
    total.queued += results.queued
