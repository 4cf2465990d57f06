"""
Connectivity observation.

``NetworkMonitor`` turns raw connectivity reports into exactly one
online/offline event per edge, debounced so a flapping link does not
start and stop the queue processor repeatedly. It holds no retry logic.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable
from typing import Protocol

from .events import Listeners, SubscriptionHandle

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityObserver(Protocol):
    """Source of raw connectivity reports."""

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]: ...


class ManualConnectivityObserver:
    """Observer driven by explicit ``report()`` calls.

    Hosts bridge their platform's reachability API into this; tests use
    it to simulate connectivity changes.
    """

    def __init__(self) -> None:
        self._callbacks: list[ConnectivityCallback] = []

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def report(self, online: bool) -> None:
        for callback in list(self._callbacks):
            callback(online)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)


class DnsConnectivityObserver:
    """Polls DNS resolution of a well-known host to infer connectivity."""

    def __init__(
        self,
        host: str = "dns.google",
        interval: float = 10.0,
        timeout: float = 5.0,
    ):
        self.host = host
        self.interval = interval
        self.timeout = timeout
        self._callbacks: list[ConnectivityCallback] = []
        self._task: asyncio.Task[None] | None = None

    async def check(self) -> bool:
        """Resolve the configured host once.

        Returns:
            True if resolution succeeded within the timeout
        """
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(loop.getaddrinfo(self.host, None), timeout=self.timeout)
            return True
        except (OSError, socket.gaierror, asyncio.TimeoutError):
            return False

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        self._callbacks.append(callback)
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
            if not self._callbacks and self._task is not None:
                self._task.cancel()
                self._task = None

        return unsubscribe

    async def _poll_loop(self) -> None:
        while True:
            online = await self.check()
            for callback in list(self._callbacks):
                callback(online)
            await asyncio.sleep(self.interval)


class NetworkMonitor:
    """Debounced online/offline edge detector.

    Example:
        >>> monitor = NetworkMonitor(DnsConnectivityObserver())
        >>> handle = monitor.on_change(lambda online: print("online" if online else "offline"))
        >>> monitor.start()
    """

    def __init__(
        self,
        observer: ConnectivityObserver,
        debounce_seconds: float = 0.5,
        initial_online: bool = True,
    ):
        """Initialize the monitor.

        Args:
            observer: Raw connectivity source
            debounce_seconds: How long a new state must hold before it is emitted
            initial_online: Assumed state until the first report settles
        """
        self.observer = observer
        self.debounce_seconds = debounce_seconds
        self._online = initial_online
        self._reported = initial_online
        self._listeners: Listeners[bool] = Listeners("network")
        self._unsubscribe: Callable[[], None] | None = None
        self._pending: asyncio.TimerHandle | None = None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.observer.subscribe(self._on_report)
        logger.debug("Network monitor started")

    def is_online(self) -> bool:
        return self._online

    def offline_pending(self) -> bool:
        """True while an offline report is waiting out the debounce window."""
        return self._online and not self._reported

    def on_change(self, callback: Callable[[bool], None]) -> SubscriptionHandle:
        """Subscribe to online/offline edges. The callback receives the new state."""
        return self._listeners.add(callback)

    def _on_report(self, online: bool) -> None:
        self._reported = online
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

        if online == self._online:
            return

        if self.debounce_seconds <= 0:
            self._commit(online)
            return

        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self.debounce_seconds, self._commit, online)

    def _commit(self, online: bool) -> None:
        self._pending = None
        if online == self._online:
            return
        self._online = online
        logger.info("Network is %s", "online" if online else "offline")
        self._listeners.emit(online)

    def dispose(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._reported = self._online
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()
