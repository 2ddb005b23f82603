"""
Durable retry queue for operations that failed to apply.

Entries live in the `pending_operations` table so they survive restarts.
A single asyncio task drains the queue in small batches, stops itself when
the queue is empty and is re-armed by the next registered failure.
"""

import asyncio
import json
import logging
import sqlite3
from typing import Awaitable, Callable, List, Optional

from common.constants import RETRY_BATCH_SIZE, RETRY_INTERVAL_SECONDS, RETRY_MAX_RETRIES
from common.database import get_db_connection, init_database, translate_error
from common.types import PendingOperation, PUSH, PULL
from common.utils import generate_uuid, now_ms

logger = logging.getLogger(__name__)

Deliver = Callable[[PendingOperation], Awaitable[None]]
DroppedListener = Callable[[PendingOperation], None]


def _row_to_operation(row: sqlite3.Row) -> PendingOperation:
    return PendingOperation(
        operation_id=row["operation_id"],
        collection=row["collection"],
        document_id=row["document_id"],
        direction=row["direction"],
        payload=json.loads(row["payload"]),
        timestamp=row["timestamp"],
        retries=row["retries"],
        last_error=row["last_error"],
    )


class PendingOperationRepository:
    """SQLite persistence for pending operations."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        try:
            init_database(db_path)
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def add(self, operation: PendingOperation) -> None:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT INTO pending_operations
                    (operation_id, collection, document_id, direction, payload,
                     timestamp, retries, last_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        operation.operation_id,
                        operation.collection,
                        operation.document_id,
                        operation.direction,
                        json.dumps(operation.payload),
                        operation.timestamp,
                        operation.retries,
                        operation.last_error,
                    )
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def next_batch(self, limit: int) -> List[PendingOperation]:
        """
        Return up to `limit` entries, oldest first, then fewest retries.
        """
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    SELECT * FROM pending_operations
                    ORDER BY timestamp ASC, retries ASC, operation_id ASC
                    LIMIT ?
                    """,
                    (limit,)
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise translate_error(e) from e

        return [_row_to_operation(row) for row in rows]

    def record_failure(self, operation_id: str, retries: int, error: str) -> None:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE pending_operations SET retries = ?, last_error = ? WHERE operation_id = ?",
                    (retries, error, operation_id)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def delete(self, operation_id: str) -> None:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "DELETE FROM pending_operations WHERE operation_id = ?",
                    (operation_id,)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def count(self) -> int:
        try:
            with get_db_connection(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM pending_operations")
                return cursor.fetchone()["count"]
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def list_all(self) -> List[PendingOperation]:
        return self.next_batch(-1)


class RetryQueue:
    """
    Backoff-scheduled redelivery of failed operations.

    `deliver` is awaited once per attempt; raising means the attempt failed.
    Entries that fail more than `max_retries` times are dropped and handed to
    every registered `on_dropped` listener.
    """

    def __init__(
        self,
        repository: PendingOperationRepository,
        deliver: Optional[Deliver] = None,
        batch_size: int = RETRY_BATCH_SIZE,
        max_retries: int = RETRY_MAX_RETRIES,
        interval_seconds: float = RETRY_INTERVAL_SECONDS,
        clock: Callable[[], int] = now_ms
    ):
        """
        Initialize the queue.

        Args:
            repository: Persistence for pending operations
            deliver: Coroutine re-attempting one operation
            batch_size: Entries attempted per processing pass
            max_retries: Retry ceiling before an entry is dropped
            interval_seconds: Delay between processing passes
            clock: Millisecond clock used to timestamp new entries
        """
        self.repository = repository
        self.deliver = deliver
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._listeners: List[DroppedListener] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._process_lock = asyncio.Lock()

    def on_dropped(self, listener: DroppedListener) -> Callable[[], None]:
        """
        Register a listener for dropped operations.

        Returns:
            Callable that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_deliver(self, deliver: Deliver) -> None:
        self.deliver = deliver

    def register_failure(
        self,
        collection: str,
        document_id: str,
        direction: str,
        payload: dict,
        error: Optional[str] = None
    ) -> PendingOperation:
        """
        Persist a failed operation and make sure the scheduler is armed.

        Returns:
            The queued PendingOperation
        """
        if direction not in (PUSH, PULL):
            raise ValueError(f"Unknown operation direction: {direction}")

        operation = PendingOperation(
            operation_id=generate_uuid(),
            collection=collection,
            document_id=document_id,
            direction=direction,
            payload=payload,
            timestamp=self.clock(),
            last_error=error,
        )
        self.repository.add(operation)
        logger.warning(
            f"Queued operation for retry [collection={collection}, doc_id={document_id}, "
            f"direction={direction}, error={error}]"
        )
        self._arm()
        return operation

    def pending_count(self) -> int:
        return self.repository.count()

    async def process_pending(self) -> int:
        """
        Attempt redelivery of one batch.

        Returns:
            Number of operations delivered successfully
        """
        if self.deliver is None:
            logger.debug("No delivery callback configured, skipping retry pass")
            return 0

        async with self._process_lock:
            batch = self.repository.next_batch(self.batch_size)
            delivered = 0

            for operation in batch:
                try:
                    await self.deliver(operation)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._handle_failure(operation, e)
                    continue

                self.repository.delete(operation.operation_id)
                delivered += 1
                logger.info(
                    f"Retried operation succeeded [operation_id={operation.operation_id}, "
                    f"doc_id={operation.document_id}, retries={operation.retries}]"
                )

            return delivered

    def _handle_failure(self, operation: PendingOperation, error: Exception) -> None:
        operation.retries += 1
        operation.last_error = str(error)

        if operation.retries > self.max_retries:
            self.repository.delete(operation.operation_id)
            logger.error(
                f"Dropping operation after {operation.retries} failed attempts "
                f"[operation_id={operation.operation_id}, collection={operation.collection}, "
                f"doc_id={operation.document_id}, error={operation.last_error}]"
            )
            for listener in list(self._listeners):
                try:
                    listener(operation)
                except Exception as e:
                    logger.error(f"Dropped-operation listener failed: {e}", exc_info=True)
            return

        self.repository.record_failure(operation.operation_id, operation.retries, operation.last_error)
        logger.warning(
            f"Retry failed [operation_id={operation.operation_id}, "
            f"retries={operation.retries}/{self.max_retries}, error={operation.last_error}]"
        )

    async def start(self) -> None:
        """Enable the scheduler; it only runs while work is pending."""
        self._running = True
        if self.repository.count() > 0:
            self._arm()
        logger.info(f"Retry queue started (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the scheduler task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Retry queue stopped")

    @property
    def scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def _arm(self) -> None:
        if not self._running or self.scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, retry scheduler will arm on start()")
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        """Process batches until the queue drains."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self._running:
                    break

                await self.process_pending()

                if self.repository.count() == 0:
                    logger.debug("Retry queue empty, scheduler going idle")
                    break

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in retry scheduler: {e}", exc_info=True)
