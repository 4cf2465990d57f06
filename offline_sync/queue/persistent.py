"""
Durable FIFO of pending mutations.

Every mutating operation persists the full queue before returning, so
in-memory and persisted state agree after each call and an action that
``enqueue`` accepted survives an immediate process exit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..events import Listeners, SubscriptionHandle
from ..storage.namespaced import NamespacedStore
from .models import QueuedAction

logger = logging.getLogger(__name__)

QUEUE_KEY = "actions"
DEFAULT_CAPACITY = 100


class PersistentQueue:
    """Ordered, bounded, durable list of QueuedActions.

    On overflow the oldest entry is dropped and reported to ``on_loss``
    subscribers; it is never discarded silently.
    """

    def __init__(self, store: NamespacedStore, capacity: int = DEFAULT_CAPACITY):
        """Initialize the queue.

        Args:
            store: Namespace this queue persists into
            capacity: Maximum number of pending actions
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.store = store
        self.capacity = capacity
        self._actions: list[QueuedAction] = []
        self._loss: Listeners[QueuedAction] = Listeners("queue_loss")
        self._in_flight: str | None = None
        self._loaded = False

    async def load(self) -> None:
        """Restore the queue from storage. A corrupt payload starts fresh."""
        data = await self.store.get_json(QUEUE_KEY)
        actions: list[QueuedAction] = []
        if isinstance(data, list):
            for item in data:
                try:
                    actions.append(QueuedAction.from_dict(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Dropping unreadable queued action: {e}")
        self._actions = actions
        self._loaded = True
        if actions:
            logger.info(f"Restored {len(actions)} queued actions")

    async def _persist(self) -> None:
        await self.store.set_json(QUEUE_KEY, self.serialize())

    def serialize(self) -> list[dict[str, Any]]:
        return [action.to_dict() for action in self._actions]

    def on_loss(self, callback: Callable[[QueuedAction], None]) -> SubscriptionHandle:
        """Subscribe to actions dropped on overflow."""
        return self._loss.add(callback)

    async def enqueue(self, action: QueuedAction) -> QueuedAction:
        """Append an action and persist.

        Returns:
            The enqueued action
        """
        self._actions.append(action)
        dropped = self._evict_overflow(protected={action.id})
        await self._persist()
        self._report_loss(dropped)
        return action

    async def push_front(self, action: QueuedAction) -> QueuedAction:
        """Insert an action ahead of everything pending and persist.

        Only for an action issued before every queued one, such as an
        immediate execution that failed after later actions were queued.
        """
        self._actions.insert(0, action)
        dropped = self._evict_overflow(protected={action.id})
        await self._persist()
        self._report_loss(dropped)
        return action

    def mark_in_flight(self, action_id: str | None) -> None:
        """Record which action is executing; overflow never evicts it.

        With a capacity of one the queue can briefly hold one extra action
        until the executing one resolves.
        """
        self._in_flight = action_id

    def _evict_overflow(self, protected: set[str]) -> list[QueuedAction]:
        # Oldest first, skipping the executing action and the one being added
        keep = set(protected)
        if self._in_flight is not None:
            keep.add(self._in_flight)
        dropped: list[QueuedAction] = []
        while len(self._actions) > self.capacity:
            index = next(
                (i for i, queued in enumerate(self._actions) if queued.id not in keep),
                None,
            )
            if index is None:
                break
            dropped.append(self._actions.pop(index))
        return dropped

    def _report_loss(self, dropped: list[QueuedAction]) -> None:
        for lost in dropped:
            logger.warning(
                f"Queue overflow (capacity {self.capacity}): dropped {lost.kind} action {lost.id}"
            )
            self._loss.emit(lost)

    def peek_head(self) -> QueuedAction | None:
        """Earliest unresolved action, without removing it."""
        return self._actions[0] if self._actions else None

    def _index_of(self, action_id: str | None) -> int | None:
        if not self._actions:
            return None
        if action_id is None or self._actions[0].id == action_id:
            return 0
        # The head may have been dropped by overflow while in flight
        for i, action in enumerate(self._actions):
            if action.id == action_id:
                return i
        return None

    async def resolve_head(self, action_id: str | None = None) -> QueuedAction | None:
        """Remove the head (success or permanent failure).

        Args:
            action_id: If given, the action expected at the head. Guards
                against removing a different action after an overflow drop.

        Returns:
            The removed action, or None if nothing matched
        """
        index = self._index_of(action_id)
        if index is None:
            return None
        action = self._actions.pop(index)
        await self._persist()
        return action

    async def requeue_head(
        self, action_id: str | None = None, error: str | None = None
    ) -> QueuedAction | None:
        """Increment the head's retry count and move it to the tail.

        Returns:
            The requeued action, or None if nothing matched
        """
        index = self._index_of(action_id)
        if index is None:
            return None
        action = self._actions.pop(index)
        action.retry_count += 1
        if error is not None:
            action.last_error = error
        self._actions.append(action)
        await self._persist()
        return action

    async def record_retry(
        self, action_id: str | None = None, error: str | None = None
    ) -> QueuedAction | None:
        """Increment the head's retry count in place and persist.

        Returns:
            The updated action, or None if nothing matched
        """
        index = self._index_of(action_id)
        if index is None:
            return None
        action = self._actions[index]
        action.retry_count += 1
        if error is not None:
            action.last_error = error
        await self._persist()
        return action

    async def clear(self) -> int:
        """Remove every pending action.

        Returns:
            Number of actions removed
        """
        count = len(self._actions)
        self._actions = []
        await self._persist()
        return count

    def snapshot(self) -> list[QueuedAction]:
        return list(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def dispose(self) -> None:
        self._loss.clear()
