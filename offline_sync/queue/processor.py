"""
Queue processor.

Drains the PersistentQueue one action at a time, strictly in FIFO order,
as an explicit state machine:

    IDLE -> DRAINING -> {IDLE | PAUSED} -> DRAINING

- IDLE: nothing to do, or waiting to be triggered
- DRAINING: executing the head action
- PAUSED: connectivity dropped mid-drain; resumes on reconnect without
  charging the interrupted action a retry
- DISPOSED: torn down, all timers and subscriptions released

Failures are classified as transient (retried with exponential backoff up
to ``max_retries``) or permanent (resolved immediately). Every action ends
in exactly one ActionOutcome.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from ..events import Listeners, SubscriptionHandle
from ..exceptions import (
    PermanentRequestError,
    RefreshFailedError,
    SyncClientError,
    TransientNetworkError,
)
from ..logging_utils import get_sync_logger
from ..network import NetworkMonitor
from ..transport.http import Response
from .models import (
    ActionOutcome,
    ProcessorState,
    QueuedAction,
    QueueStatus,
    SubmitResult,
)
from .persistent import PersistentQueue

logger = logging.getLogger(__name__)

ActionExecutor = Callable[[QueuedAction], Awaitable[Response]]


class RetryOrdering(Enum):
    """Where a transiently failed action waits for its next attempt."""

    STRICT = "strict"  # stays at the head; nothing behind it runs first
    ROTATE = "rotate"  # moves to the tail via requeue_head()


@dataclass
class ProcessorConfig:
    """Retry settings for the queue processor."""

    max_retries: int = 3
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 30.0  # cap
    backoff_multiplier: float = 2.0
    ordering: RetryOrdering = RetryOrdering.STRICT

    def backoff_for(self, retry_count: int) -> float:
        """Delay before the attempt that follows failure number ``retry_count``."""
        exponent = max(retry_count - 1, 0)
        return min(self.backoff_base * (self.backoff_multiplier**exponent), self.backoff_max)


class QueueProcessor:
    """Serial, ordered, bounded-retry drainer for the offline queue.

    The executor performs one action and either returns a successful
    Response or raises a SyncClientError subclass. Anything else it raises
    is treated as a transient network failure.
    """

    def __init__(
        self,
        queue: PersistentQueue,
        monitor: NetworkMonitor,
        executor: ActionExecutor,
        config: ProcessorConfig | None = None,
        is_ready: Callable[[], bool] | None = None,
    ):
        """Initialize the processor.

        Args:
            queue: Queue to drain
            monitor: Connectivity source; draining only happens while online
            executor: Performs a single action
            config: Retry configuration
            is_ready: Extra gate for draining (e.g. "is a session present")
        """
        self.queue = queue
        self.monitor = monitor
        self.executor = executor
        self.config = config or ProcessorConfig()
        self.is_ready = is_ready or (lambda: True)

        self._state = ProcessorState.IDLE
        self._drain_task: asyncio.Task[None] | None = None
        self._immediate_in_flight = False
        self._interrupted = False
        self._status: Listeners[QueueStatus] = Listeners("queue_status")
        self._outcomes: Listeners[ActionOutcome] = Listeners("queue_outcome")
        self._handles: list[SubscriptionHandle] = []
        self._initialized = False

    @property
    def state(self) -> ProcessorState:
        return self._state

    async def initialize(self) -> None:
        """Subscribe to connectivity and queue loss, then drain anything restored."""
        if self._initialized:
            return
        self._initialized = True
        self._handles.append(self.monitor.on_change(self._on_network_change))
        self._handles.append(self.queue.on_loss(self._on_queue_loss))
        self._notify()
        self._ensure_draining()

    # -- observers ---------------------------------------------------------

    def on_status(self, callback: Callable[[QueueStatus], None]) -> SubscriptionHandle:
        """Subscribe to state transitions and queue-size changes."""
        return self._status.add(callback)

    def on_outcome(self, callback: Callable[[ActionOutcome], None]) -> SubscriptionHandle:
        """Subscribe to terminal outcomes (success or permanent failure)."""
        return self._outcomes.add(callback)

    def get_status(self) -> QueueStatus:
        return QueueStatus(
            is_online=self.monitor.is_online(),
            queue_size=len(self.queue),
            is_processing=self._state == ProcessorState.DRAINING,
            state=self._state,
        )

    def _notify(self) -> None:
        self._status.emit(self.get_status())

    def _set_state(self, state: ProcessorState) -> None:
        if self._state == state or self._state == ProcessorState.DISPOSED:
            return
        logger.debug(f"Queue processor {self._state.value} -> {state.value}")
        self._state = state
        self._notify()

    def _emit_outcome(self, outcome: ActionOutcome) -> None:
        self._outcomes.emit(outcome)

    # -- submission --------------------------------------------------------

    async def enqueue_or_execute(self, action: QueuedAction) -> SubmitResult:
        """Execute immediately if online and nothing is pending, otherwise queue.

        Returns:
            SubmitResult; ``queued`` is False when the action already completed

        Raises:
            PermanentRequestError: Immediate attempt was rejected, or failed
                transiently with a retry budget of one (nothing queued)
            RefreshFailedError: The session could not be refreshed
        """
        self._check_not_disposed()

        can_run_now = (
            self.monitor.is_online()
            and len(self.queue) == 0
            and not self._immediate_in_flight
            and self._state != ProcessorState.DRAINING
            and self.is_ready()
        )
        if can_run_now:
            self._immediate_in_flight = True
            try:
                response = await self._execute(action)
            except TransientNetworkError as e:
                if self.monitor.is_online() and not self.monitor.offline_pending():
                    # The immediate attempt counts against the retry budget
                    action.retry_count += 1
                    action.last_error = e.message
                    if action.retry_count >= self.config.max_retries:
                        raise PermanentRequestError.reclassified(e, action.retry_count) from e
                logger.info(f"Immediate {action.kind} failed transiently, queueing: {e}")
                await self.queue.push_front(action)
                self._notify()
                return SubmitResult(queued=True, id=action.id)
            finally:
                self._immediate_in_flight = False
                self._ensure_draining()

            self._emit_outcome(ActionOutcome(action=action, succeeded=True, response=response))
            return SubmitResult(queued=False, id=action.id, response=response)

        await self.queue.enqueue(action)
        logger.debug(f"Queued {action.kind} action {action.id} ({len(self.queue)} pending)")
        self._notify()
        self._ensure_draining()
        return SubmitResult(queued=True, id=action.id)

    def trigger(self) -> None:
        """Start a drain in the background if one can run now."""
        self._ensure_draining()

    async def process_queue(self) -> None:
        """Start draining if possible and wait until the drain stops."""
        self._ensure_draining()
        if self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    async def clear_queue(self, reason: str = "cleared") -> int:
        """Drop every pending action, reporting each as a permanent failure.

        Returns:
            Number of actions cleared
        """
        dropped = self.queue.snapshot()
        count = await self.queue.clear()
        for action in dropped:
            error = PermanentRequestError(
                f"Action discarded: {reason}", {"action_id": action.id}, code=reason
            )
            self._emit_outcome(ActionOutcome(action=action, succeeded=False, error=error))
        self._notify()
        self._settle_if_idle()
        return count

    # -- draining ----------------------------------------------------------

    def _settle_if_idle(self) -> None:
        # A pause that no drain is going to resume is just idle
        drain_running = self._drain_task is not None and not self._drain_task.done()
        if self._state == ProcessorState.PAUSED and not drain_running:
            self._set_state(ProcessorState.IDLE)

    def _ensure_draining(self) -> None:
        if self._state == ProcessorState.DISPOSED:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        if self._immediate_in_flight or len(self.queue) == 0:
            return
        if not self.monitor.is_online():
            return
        if not self.is_ready():
            return
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            if self._state == ProcessorState.DISPOSED:
                return
            if not self.monitor.is_online():
                self._set_state(ProcessorState.PAUSED)
                return
            action = self.queue.peek_head()
            if action is None or not self.is_ready():
                self._set_state(ProcessorState.IDLE)
                return

            self._set_state(ProcessorState.DRAINING)
            self._interrupted = False
            log = get_sync_logger(
                __name__, action_id=action.id, correlation_id=action.correlation_id
            )

            self.queue.mark_in_flight(action.id)
            try:
                response = await self._execute(action)
            except TransientNetworkError as e:
                await self._handle_transient(action, e, log)
                continue
            except RefreshFailedError as e:
                # Session is gone; keep the action for the next authenticated session
                log.error(f"Halting drain, session invalidated: {e}")
                self._set_state(ProcessorState.IDLE)
                return
            except SyncClientError as e:
                await self._resolve_failure(action, e, log)
                continue
            finally:
                self.queue.mark_in_flight(None)

            if await self.queue.resolve_head(action.id) is None:
                # Queue was cleared (logout) while the request was in flight
                continue
            log.info(f"Action {action.kind} delivered")
            self._notify()
            self._emit_outcome(ActionOutcome(action=action, succeeded=True, response=response))

    async def _execute(self, action: QueuedAction) -> Response:
        try:
            return await self.executor(action)
        except SyncClientError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransientNetworkError(str(e), {"action_id": action.id}, code=type(e).__name__) from e

    async def _handle_transient(
        self,
        action: QueuedAction,
        error: TransientNetworkError,
        log: logging.LoggerAdapter,
    ) -> None:
        if self._interrupted or self.monitor.offline_pending() or not self.monitor.is_online():
            log.info(f"Action {action.kind} interrupted by connectivity loss, not charged")
            # Let the offline edge land (or be withdrawn) before looping again
            while self.monitor.offline_pending():
                await asyncio.sleep(self.monitor.debounce_seconds)
            return

        attempts = action.retry_count + 1
        if attempts >= self.config.max_retries:
            log.error(
                "RETRY_EXHAUSTED: attempt=%d/%d status=%s: %s",
                attempts,
                self.config.max_retries,
                error.status,
                error,
            )
            await self._resolve_failure(
                action, PermanentRequestError.reclassified(error, attempts), log
            )
            return

        if self.config.ordering == RetryOrdering.ROTATE:
            retried = await self.queue.requeue_head(action.id, error.message)
        else:
            retried = await self.queue.record_retry(action.id, error.message)
        if retried is None:
            return

        delay = self.config.backoff_for(action.retry_count)
        log.warning(
            "RETRYING: attempt=%d/%d status=%s delay=%.1fs: %s",
            attempts,
            self.config.max_retries,
            error.status,
            delay,
            error,
        )
        self._notify()
        if delay > 0:
            await asyncio.sleep(delay)

    async def _resolve_failure(
        self,
        action: QueuedAction,
        error: SyncClientError,
        log: logging.LoggerAdapter,
    ) -> None:
        if await self.queue.resolve_head(action.id) is None:
            return
        action.last_error = error.message
        log.error(f"Action {action.kind} failed permanently ({error.kind}, status={error.status}): {error}")
        self._notify()
        self._emit_outcome(ActionOutcome(action=action, succeeded=False, error=error))

    # -- events ------------------------------------------------------------

    def _on_network_change(self, online: bool) -> None:
        if online:
            if self._state == ProcessorState.PAUSED and self._drain_task is not None and not self._drain_task.done():
                # Still finishing the interrupted attempt; the loop carries on
                self._set_state(ProcessorState.DRAINING)
            else:
                self._notify()
                self._ensure_draining()
                self._settle_if_idle()
            return

        if self._state == ProcessorState.DRAINING:
            self._interrupted = True
            self._set_state(ProcessorState.PAUSED)
        else:
            self._notify()

    def _on_queue_loss(self, action: QueuedAction) -> None:
        error = PermanentRequestError(
            "Action dropped on queue overflow",
            {"action_id": action.id, "capacity": self.queue.capacity},
            code="queue_overflow",
        )
        self._emit_outcome(ActionOutcome(action=action, succeeded=False, error=error))

    # -- lifecycle ---------------------------------------------------------

    def _check_not_disposed(self) -> None:
        if self._state == ProcessorState.DISPOSED:
            raise RuntimeError("QueueProcessor has been disposed")

    async def dispose(self) -> None:
        """Cancel the drain task and release every subscription."""
        if self._state == ProcessorState.DISPOSED:
            return
        self._state = ProcessorState.DISPOSED

        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

        for handle in self._handles:
            handle.dispose()
        self._handles.clear()
        self._status.clear()
        self._outcomes.clear()
        logger.info("Queue processor disposed")
