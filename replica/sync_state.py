"""Observable sync status of a replica."""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncState:
    """Snapshot of a replica's sync status."""
    is_syncing: bool = False
    last_sync_time: Optional[int] = None
    pending_changes: int = 0
    conflicts: int = 0
    error: Optional[str] = None
    online: bool = True


Subscriber = Callable[[SyncState], None]


class SyncStateChannel:
    """
    Holds the current SyncState and publishes every change to subscribers.

    Updates are serialized by an asyncio lock; subscribers receive immutable
    snapshots in update order.
    """

    def __init__(self, initial: Optional[SyncState] = None):
        self._state = initial or SyncState()
        self._subscribers: List[Subscriber] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SyncState:
        return self._state

    def subscribe(self, callback: Subscriber, replay: bool = True) -> Callable[[], None]:
        """
        Register a subscriber.

        Args:
            callback: Called with each new state
            replay: Immediately deliver the current state

        Returns:
            Callable that unsubscribes
        """
        self._subscribers.append(callback)
        if replay:
            self._notify(callback, self._state)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def update(self, **changes) -> SyncState:
        """
        Apply field changes and publish the new state.

        Returns:
            The new state
        """
        async with self._lock:
            new_state = replace(self._state, **changes)
            if new_state == self._state:
                return self._state
            self._state = new_state
            for callback in list(self._subscribers):
                self._notify(callback, new_state)
            return new_state

    @staticmethod
    def _notify(callback: Subscriber, state: SyncState) -> None:
        try:
            callback(state)
        except Exception as e:
            logger.error(f"Sync state subscriber failed: {e}", exc_info=True)
