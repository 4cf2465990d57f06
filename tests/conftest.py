"""
Shared test configuration and fixtures.

Provides in-process fakes for every external collaborator so tests run
without a network:

- ScriptedRequest: request function replaying queued responses or errors
- FakeRefreshTransport: refresh exchange with call counting and gating
- FakeEventTransport: event transport with manual delivery and drops
- FailingStore: backend that raises StorageError on every call
- FakeClock: controllable UTC clock
"""

import asyncio
import logging
from collections import deque
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from offline_sync.auth import Credential
from offline_sync.exceptions import RefreshFailedError, StorageError
from offline_sync.network import ManualConnectivityObserver, NetworkMonitor
from offline_sync.queue import QueuedAction
from offline_sync.storage import MemoryStore, NamespacedStore, PersistentStore
from offline_sync.transport import Response

logger = logging.getLogger(__name__)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedRequest:
    """Request function that replays scripted results in order.

    Each scripted item is a Response, an exception to raise, or a callable
    ``(method, url, headers, body) -> Response`` (sync or async). When the
    script runs out, ``default`` is returned.
    """

    def __init__(self, *script: Any, default: Response | None = None):
        self.script: deque[Any] = deque(script)
        self.default = default or Response(status=200, body={})
        self.calls: list[dict[str, Any]] = []
        self.gate: asyncio.Event | None = None

    def add(self, *items: Any) -> None:
        self.script.extend(items)

    async def __call__(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> Response:
        self.calls.append(
            {"method": method, "url": url, "headers": dict(headers), "body": body, "timeout": timeout}
        )
        if self.gate is not None:
            await self.gate.wait()

        item = self.script.popleft() if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(method, url, headers, body)
            if asyncio.iscoroutine(item):
                item = await item
        return item

    def urls(self) -> list[str]:
        return [call["url"] for call in self.calls]

    def bodies(self) -> list[Any]:
        return [call["body"] for call in self.calls]


class FakeRefreshTransport:
    """Refresh exchange issuing ``token-<n>`` credentials."""

    def __init__(self, clock: FakeClock, lifetime: float = 3600.0):
        self.clock = clock
        self.lifetime = lifetime
        self.calls = 0
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self, credential: Credential) -> Credential:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return Credential(
            access_token=f"token-{self.calls}",
            expiry=self.clock() + timedelta(seconds=self.lifetime),
            refresh_token=credential.refresh_token,
        )


class FakeEventTransport:
    """In-memory EventTransport.

    ``connect_results`` scripts connect attempts: an exception fails that
    attempt, anything else (or an empty script) succeeds.
    """

    def __init__(self, connect_results: Iterable[Any] = ()):
        self.on_disconnect = None
        self.connect_results: deque[Any] = deque(connect_results)
        self.connect_calls: list[dict[str, Any]] = []
        self.handlers: dict[str, list[Any]] = {}
        self.sent: list[tuple[str, Any]] = []
        self.disconnect_calls = 0
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, url: str, options: dict[str, Any]) -> None:
        self.connect_calls.append({"url": url, "options": options})
        result = self.connect_results.popleft() if self.connect_results else None
        if isinstance(result, BaseException):
            raise result
        self._connected = True

    async def emit(self, event: str, payload: Any) -> None:
        if not self._connected:
            raise ConnectionError("not connected")
        self.sent.append((event, payload))

    def on(self, event: str, handler: Any) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Any) -> None:
        handlers = self.handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self.handlers.pop(event, None)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    # -- test controls -----------------------------------------------------

    def deliver(self, event: str, data: Any) -> None:
        for handler in list(self.handlers.get(event, [])):
            handler(data)

    def drop(self, error: Exception | None = None) -> None:
        self._connected = False
        if self.on_disconnect is not None:
            self.on_disconnect(error or ConnectionResetError("connection reset"))

    def sent_events(self, event: str) -> list[Any]:
        return [payload for name, payload in self.sent if name == event]


class FailingStore(PersistentStore):
    """Backend whose every operation fails."""

    def __init__(self) -> None:
        self.attempts = 0

    async def get(self, key: str) -> bytes | None:
        self.attempts += 1
        raise StorageError("get", key, OSError("disk unavailable"))

    async def set(self, key: str, value: bytes) -> None:
        self.attempts += 1
        raise StorageError("set", key, OSError("disk unavailable"))

    async def remove(self, key: str) -> None:
        self.attempts += 1
        raise StorageError("remove", key, OSError("disk unavailable"))


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def queue_store(memory_store):
    return NamespacedStore(memory_store, "queue")


@pytest.fixture
def observer():
    return ManualConnectivityObserver()


@pytest.fixture
def monitor(observer):
    """Started monitor with no debounce, initially online."""
    monitor = NetworkMonitor(observer, debounce_seconds=0)
    monitor.start()
    yield monitor
    monitor.dispose()


@pytest.fixture
def make_action():
    """Factory for QueuedActions with sequential endpoints."""
    counter = {"n": 0}

    def _make(kind: str = "SEND_MESSAGE", **kwargs: Any) -> QueuedAction:
        counter["n"] += 1
        kwargs.setdefault("endpoint", f"/api/items/{counter['n']}")
        kwargs.setdefault("payload", {"n": counter["n"]})
        return QueuedAction(kind=kind, **kwargs)

    return _make


@pytest.fixture
def credential(clock):
    """Credential valid for an hour."""
    return Credential(
        access_token="token-0",
        expiry=clock() + timedelta(hours=1),
        refresh_token="refresh-0",
    )
