"""
Disposable subscriptions.

Every pub/sub surface in the package hands back a ``SubscriptionHandle``
instead of a bare function the caller must remember to untrack.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SubscriptionHandle:
    """Non-owning link between an event name and a callback.

    Disposing removes the link only. It never touches the lifecycle of
    whatever produced the events.
    """

    def __init__(self, event_name: str, callback: Callable[..., Any], on_dispose: Callable[[], None]):
        self.event_name = event_name
        self.callback = callback
        self._on_dispose: Callable[[], None] | None = on_dispose

    @property
    def disposed(self) -> bool:
        return self._on_dispose is None

    def dispose(self) -> None:
        """Remove the subscription. Safe to call more than once."""
        if self._on_dispose is None:
            return
        on_dispose, self._on_dispose = self._on_dispose, None
        on_dispose()

    def __enter__(self) -> SubscriptionHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.dispose()

    def __repr__(self) -> str:
        state = "disposed" if self.disposed else "active"
        return f"SubscriptionHandle({self.event_name!r}, {state})"


class Listeners(Generic[T]):
    """Ordered set of callbacks for one event name."""

    def __init__(self, event_name: str):
        self.event_name = event_name
        self._callbacks: list[Callable[[T], Any]] = []

    def add(self, callback: Callable[[T], Any]) -> SubscriptionHandle:
        self._callbacks.append(callback)
        return SubscriptionHandle(self.event_name, callback, lambda: self._remove(callback))

    def _remove(self, callback: Callable[[T], Any]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def emit(self, value: T) -> None:
        """Call every listener in subscription order.

        A listener that raises is logged and skipped so one bad observer
        cannot stall the component that is notifying.
        """
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception(f"Listener for '{self.event_name}' raised")

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)
