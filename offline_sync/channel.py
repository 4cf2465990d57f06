"""
Real-time event channel.

Maintains one long-lived bidirectional connection over an EventTransport
with automatic reconnect (bounded attempts, capped exponential backoff),
topic scoping via join/leave, and disposable per-event subscriptions.

Subscriptions survive reconnects; only the connection is recreated.
Outbound events sent while disconnected are not buffered. Anything that
needs at-least-once delivery goes through the offline queue instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .events import Listeners, SubscriptionHandle
from .exceptions import ChannelDisconnectedError
from .transport.websocket import EventTransport

logger = logging.getLogger(__name__)

JOIN_EVENT = "join"
LEAVE_EVENT = "leave"


class ChannelState(Enum):
    """Connection state of the channel."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"  # reconnect budget exhausted, no further attempts
    CLOSED = "closed"  # disposed


@dataclass
class ChannelConfig:
    """Reconnect policy for the event channel."""

    max_reconnects: int = 5
    reconnect_delay: float = 1.0
    reconnect_delay_max: float = 5.0
    # A connection that stays up this long resets the reconnect budget
    stable_after: float = 10.0
    options: dict[str, Any] = field(default_factory=dict)

    def delay_for(self, attempt: int) -> float:
        return min(self.reconnect_delay * (2 ** max(attempt - 1, 0)), self.reconnect_delay_max)


class EventChannel:
    """Long-lived event connection with reconnect and subscriptions.

    Example:
        >>> channel = EventChannel(AiohttpWebSocketTransport(), "wss://api.example.com/ws")
        >>> handle = channel.subscribe("message:new", on_message)
        >>> await channel.connect()
        >>> await channel.join("conversation:abc")
        >>> handle.dispose()
    """

    def __init__(
        self,
        transport: EventTransport,
        url: str,
        config: ChannelConfig | None = None,
        options_provider: Callable[[], Awaitable[dict[str, Any]]] | None = None,
    ):
        """Initialize the channel.

        Args:
            transport: Connection-level transport
            url: Endpoint to connect to
            config: Reconnect policy
            options_provider: Called before every connect attempt to build
                transport options (e.g. a fresh Authorization header)
        """
        self.transport = transport
        self.url = url
        self.config = config or ChannelConfig()
        self.options_provider = options_provider

        self._state = ChannelState.IDLE
        self._topics: set[str] = set()
        self._subscribers: dict[str, Listeners[Any]] = {}
        self._dispatchers: dict[str, Callable[[Any], None]] = {}
        self._state_listeners: Listeners[ChannelState] = Listeners("channel_state")
        self._failure_listeners: Listeners[ChannelDisconnectedError] = Listeners("channel_failed")
        self._connection_task: asyncio.Task[None] | None = None
        self._stable_timer: asyncio.TimerHandle | None = None
        self._settled = asyncio.Event()
        self._reconnect_attempts = 0
        self.last_error: ChannelDisconnectedError | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def topics(self) -> frozenset[str]:
        return frozenset(self._topics)

    def is_connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    def _set_state(self, state: ChannelState) -> None:
        if self._state == state:
            return
        logger.debug(f"Channel {self._state.value} -> {state.value}")
        self._state = state
        self._state_listeners.emit(state)

    def on_state(self, callback: Callable[[ChannelState], None]) -> SubscriptionHandle:
        """Subscribe to connection state changes."""
        return self._state_listeners.add(callback)

    def on_failed(self, callback: Callable[[ChannelDisconnectedError], None]) -> SubscriptionHandle:
        """Subscribe to the terminal disconnect after reconnects are exhausted."""
        return self._failure_listeners.add(callback)

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, event_name: str, callback: Callable[[Any], None]) -> SubscriptionHandle:
        """Receive every ``event_name`` event in transport arrival order.

        Returns:
            Handle whose ``dispose()`` removes only this subscription
        """
        if self._state == ChannelState.CLOSED:
            raise RuntimeError("EventChannel has been disposed")

        listeners = self._subscribers.get(event_name)
        if listeners is None:
            listeners = Listeners(event_name)
            self._subscribers[event_name] = listeners
            dispatcher = listeners.emit
            self._dispatchers[event_name] = dispatcher
            self.transport.on(event_name, dispatcher)

        inner = listeners.add(callback)
        return SubscriptionHandle(event_name, callback, lambda: self._unsubscribe(event_name, inner))

    def _unsubscribe(self, event_name: str, inner: SubscriptionHandle) -> None:
        inner.dispose()
        listeners = self._subscribers.get(event_name)
        if listeners is not None and len(listeners) == 0:
            del self._subscribers[event_name]
            dispatcher = self._dispatchers.pop(event_name)
            self.transport.off(event_name, dispatcher)

    def subscriber_count(self, event_name: str) -> int:
        listeners = self._subscribers.get(event_name)
        return len(listeners) if listeners else 0

    # -- topics and outbound -----------------------------------------------

    async def join(self, topic: str) -> None:
        """Scope delivery to a topic. Re-joined automatically after reconnect."""
        self._topics.add(topic)
        if self.is_connected():
            await self.emit(JOIN_EVENT, topic)

    async def leave(self, topic: str) -> None:
        self._topics.discard(topic)
        if self.is_connected():
            await self.emit(LEAVE_EVENT, topic)

    async def emit(self, event_name: str, payload: Any) -> bool:
        """Send an event if connected. Nothing is buffered.

        Returns:
            True if handed to the transport, False if disconnected

        Raises:
            ChannelDisconnectedError: The channel has given up reconnecting
        """
        if self._state == ChannelState.FAILED and self.last_error is not None:
            raise self.last_error
        if not self.is_connected():
            logger.debug(f"Dropping outbound '{event_name}' while {self._state.value}")
            return False
        try:
            await self.transport.emit(event_name, payload)
        except (ConnectionError, OSError) as e:
            logger.warning(f"Failed to emit '{event_name}': {e}")
            return False
        return True

    # -- connection --------------------------------------------------------

    async def connect(self) -> bool:
        """Open the connection, retrying per the reconnect policy.

        Returns:
            True once connected, False if the channel entered FAILED
        """
        if self._state == ChannelState.CLOSED:
            raise RuntimeError("EventChannel has been disposed")
        if self._state == ChannelState.CONNECTED:
            return True

        self.transport.on_disconnect = self._on_transport_disconnect
        if self._state == ChannelState.FAILED:
            # Explicit connect after a terminal failure starts a fresh budget
            self._reconnect_attempts = 0
            self.last_error = None

        if self._connection_task is None or self._connection_task.done():
            self._settled.clear()
            self._set_state(ChannelState.CONNECTING)
            self._connection_task = asyncio.create_task(self._run(first_attempt_free=True))

        await self._settled.wait()
        return self.is_connected()

    async def _build_options(self) -> dict[str, Any]:
        options = dict(self.config.options)
        if self.options_provider is not None:
            options.update(await self.options_provider())
        return options

    async def _run(self, first_attempt_free: bool) -> None:
        free_attempt = first_attempt_free
        last_exc: Exception | None = None

        while self._state not in (ChannelState.CLOSED, ChannelState.FAILED):
            if not free_attempt:
                if self._reconnect_attempts >= self.config.max_reconnects:
                    self._fail(last_exc)
                    return
                self._reconnect_attempts += 1
                delay = self.config.delay_for(self._reconnect_attempts)
                self._set_state(ChannelState.RECONNECTING)
                logger.info(
                    f"Reconnecting in {delay:.1f}s "
                    f"(attempt {self._reconnect_attempts}/{self.config.max_reconnects})"
                )
                await asyncio.sleep(delay)
            free_attempt = False

            try:
                await self.transport.connect(self.url, await self._build_options())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_exc = e
                logger.warning(f"Channel connection to {self.url} failed: {e}")
                continue

            self._on_connected()
            for topic in sorted(self._topics):
                await self.emit(JOIN_EVENT, topic)
            if self._state == ChannelState.CONNECTED:
                self._settled.set()
                return
            # Dropped again while re-joining topics

    def _on_connected(self) -> None:
        self._set_state(ChannelState.CONNECTED)
        logger.info(f"Channel connected: {self.url}")

        if self.config.stable_after > 0:
            loop = asyncio.get_running_loop()
            self._stable_timer = loop.call_later(self.config.stable_after, self._mark_stable)
        else:
            self._mark_stable()

    def _mark_stable(self) -> None:
        self._stable_timer = None
        self._reconnect_attempts = 0

    def _fail(self, cause: Exception | None) -> None:
        error = ChannelDisconnectedError(self.url, self._reconnect_attempts, cause)
        self.last_error = error
        logger.error(str(error))
        self._set_state(ChannelState.FAILED)
        self._settled.set()
        self._failure_listeners.emit(error)

    def _cancel_stable_timer(self) -> None:
        if self._stable_timer is not None:
            self._stable_timer.cancel()
            self._stable_timer = None

    def _on_transport_disconnect(self, error: Exception | None) -> None:
        if self._state in (ChannelState.IDLE, ChannelState.CLOSED, ChannelState.FAILED):
            return
        self._cancel_stable_timer()
        logger.warning(f"Channel disconnected: {error or 'closed by server'}")
        self._set_state(ChannelState.RECONNECTING)
        if self._connection_task is None or self._connection_task.done():
            self._connection_task = asyncio.create_task(self._run(first_attempt_free=False))

    async def _stop_connection_task(self) -> None:
        self._cancel_stable_timer()
        if self._connection_task is not None:
            self._connection_task.cancel()
            try:
                await self._connection_task
            except asyncio.CancelledError:
                pass
            self._connection_task = None

    async def disconnect(self) -> None:
        """Close the connection but keep subscriptions; ``connect()`` may follow."""
        if self._state in (ChannelState.CLOSED, ChannelState.IDLE):
            return
        self._set_state(ChannelState.IDLE)
        self._settled.set()
        await self._stop_connection_task()
        self._reconnect_attempts = 0
        self.last_error = None
        await self.transport.disconnect()
        logger.info(f"Channel disconnected: {self.url}")

    async def dispose(self) -> None:
        """Close the connection and release every subscription and timer."""
        if self._state == ChannelState.CLOSED:
            return
        self._set_state(ChannelState.CLOSED)
        self._settled.set()
        await self._stop_connection_task()

        self.transport.on_disconnect = None
        for event_name, dispatcher in self._dispatchers.items():
            self.transport.off(event_name, dispatcher)
        self._dispatchers.clear()
        for listeners in self._subscribers.values():
            listeners.clear()
        self._subscribers.clear()
        self._state_listeners.clear()
        self._failure_listeners.clear()

        await self.transport.disconnect()
        logger.info("Channel disposed")
