"""
SyncClient facade.

Wires the storage, connectivity, credential, queue, channel and cache
components into one explicitly constructed object with an
``initialize()`` / ``dispose()`` lifecycle.

Data flow:

    mutation -> CredentialRefresher -> execute now | PersistentQueue
    QueueProcessor drains on reconnect -> ReconciliationCache
    EventChannel push events -> ReconciliationCache
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .auth import Credential, CredentialRefresher, HttpRefreshTransport, RefreshTransport
from .cache import CacheChange, CacheRecord, ReconciliationCache, UnconfirmedRecord
from .channel import ChannelState, EventChannel
from .config import SyncClientConfig
from .events import SubscriptionHandle
from .exceptions import (
    ChannelDisconnectedError,
    RefreshFailedError,
    SyncClientError,
    TransientNetworkError,
    classify_response,
)
from .logging_utils import get_sync_logger
from .network import ConnectivityObserver, DnsConnectivityObserver, NetworkMonitor
from .queue import (
    ActionOutcome,
    PersistentQueue,
    QueuedAction,
    QueueProcessor,
    QueueStatus,
    SubmitResult,
)
from .storage import FileStore, MemoryStore, NamespacedStore, PersistentStore, SQLiteStore
from .transport import AiohttpRequestFunction, AiohttpWebSocketTransport, EventTransport, RequestFunction, Response

logger = logging.getLogger(__name__)

SEND_MESSAGE = "SEND_MESSAGE"
MARK_READ = "MARK_READ"

JOBS_ENTITY = "jobs"

SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")


def create_store(storage_path: str | None) -> PersistentStore:
    """Pick a backend for ``storage_path``.

    None gives a MemoryStore, a ``.db``/``.sqlite`` file an SQLiteStore,
    anything else a FileStore directory.
    """
    if not storage_path:
        return MemoryStore()
    path = Path(storage_path).expanduser()
    if path.suffix in SQLITE_SUFFIXES:
        return SQLiteStore(path)
    return FileStore(path)


class SyncClient:
    """Offline-first client for conversations and jobs.

    Example:
        >>> client = SyncClient(SyncClientConfig.from_environment())
        >>> await client.initialize()
        >>> await client.login(credential, user={"name": "Sam"})
        >>> await client.send_message("conv-1", {"text": "On my way"})
        >>> client.get_cache_snapshot("conv-1")
        >>> await client.dispose()
    """

    def __init__(
        self,
        config: SyncClientConfig | None = None,
        *,
        store: PersistentStore | None = None,
        request: RequestFunction | None = None,
        transport: EventTransport | None = None,
        observer: ConnectivityObserver | None = None,
        refresh_transport: RefreshTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Construct every component. Nothing touches storage or the network
        until ``initialize()``.

        Args:
            config: Client settings (defaults when None)
            store: Backend override; otherwise chosen from ``config.storage_path``
            request: Request function override; otherwise aiohttp against ``base_url``
            transport: Event transport override; otherwise aiohttp WebSocket
                when ``channel_url`` is set
            observer: Connectivity source override; otherwise DNS probing
            refresh_transport: Refresh exchange override
            clock: Source of "now" (UTC), shared by auth and cache
        """
        self.config = config or SyncClientConfig()

        self.store = store if store is not None else create_store(self.config.storage_path)
        self._owns_request = request is None
        self.request: RequestFunction = request or AiohttpRequestFunction(self.config.base_url or "")

        self.monitor = NetworkMonitor(
            observer or DnsConnectivityObserver(),
            debounce_seconds=self.config.network_debounce,
        )
        self.refresher = CredentialRefresher(
            NamespacedStore(self.store, "auth"),
            self.request,
            refresh_transport or HttpRefreshTransport(self.request, timeout=self.config.request_timeout),
            refresh_threshold=self.config.refresh_threshold,
            request_timeout=self.config.request_timeout,
            clock=clock,
        )
        self.queue = PersistentQueue(NamespacedStore(self.store, "queue"), self.config.queue_capacity)
        self.processor = QueueProcessor(
            self.queue,
            self.monitor,
            self._execute_action,
            self.config.processor_config(),
            is_ready=self.refresher.is_authenticated,
        )
        self.cache = ReconciliationCache(NamespacedStore(self.store, "cache"), clock=clock)

        self.channel: EventChannel | None = None
        if self.config.channel_url or transport is not None:
            self.channel = EventChannel(
                transport or AiohttpWebSocketTransport(),
                self.config.channel_url or "",
                self.config.channel_config(),
                options_provider=self._channel_options,
            )

        self._handles: list[SubscriptionHandle] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._initialized = False
        self._disposed = False

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        """Restore persisted state, start monitoring and begin draining."""
        if self._initialized:
            return
        self._initialized = True

        if isinstance(self.store, SQLiteStore):
            await self.store.initialize()

        await self.refresher.load()
        await self.queue.load()
        await self.cache.load()

        self.monitor.start()
        self._handles.append(self.processor.on_outcome(self._on_outcome))
        self._handles.append(self.refresher.on_session_invalidated(self._on_session_invalidated))
        self._wire_channel_events()
        await self.processor.initialize()

        if self.channel is not None and self.refresher.is_authenticated():
            self._spawn(self.channel.connect())

        logger.info(
            f"Sync client initialized (queued={len(self.queue)}, "
            f"cached_entities={len(self.cache.entity_ids())}, "
            f"authenticated={self.refresher.is_authenticated()})"
        )

    async def dispose(self) -> None:
        """Cancel every task and timer and release all subscriptions."""
        if self._disposed:
            return
        self._disposed = True

        await self.processor.dispose()
        if self.channel is not None:
            await self.channel.dispose()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for handle in self._handles:
            handle.dispose()
        self._handles.clear()

        await self.refresher.dispose()
        await self.cache.dispose()
        self.queue.dispose()
        self.monitor.dispose()

        if self._owns_request and isinstance(self.request, AiohttpRequestFunction):
            await self.request.close()
        await self.store.close()
        logger.info("Sync client disposed")

    def _check_usable(self) -> None:
        if self._disposed:
            raise RuntimeError("SyncClient has been disposed")
        if not self._initialized:
            raise RuntimeError("SyncClient.initialize() has not been called")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background sync task failed: {error}", exc_info=error)

    async def wait_for_pending_updates(self) -> None:
        """Wait until background cache updates and connects have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- session -----------------------------------------------------------

    async def login(
        self,
        credential: Credential,
        user: dict[str, Any] | None = None,
        user_type: str | None = None,
    ) -> None:
        """Start a session, connect the channel and drain anything queued."""
        self._check_usable()
        await self.refresher.login(credential, user, user_type)
        if self.channel is not None:
            self._spawn(self.channel.connect())
        self.processor.trigger()

    async def logout(self) -> None:
        """End the session and clear credential, queue and cache.

        Queued actions are reported to ``on_outcome`` as failures with
        code ``logged_out``.
        """
        self._check_usable()
        if self.channel is not None:
            for topic in self.channel.topics:
                await self.channel.leave(topic)
            await self.channel.disconnect()
        await self.processor.clear_queue(reason="logged_out")
        await self.refresher.logout()
        await self.cache.clear()

    def on_session_invalidated(
        self, callback: Callable[[RefreshFailedError], None]
    ) -> SubscriptionHandle:
        """Subscribe to session loss; the user must log in again."""
        return self.refresher.on_session_invalidated(callback)

    def _on_session_invalidated(self, error: RefreshFailedError) -> None:
        logger.warning(f"Session invalidated, {len(self.queue)} actions kept for next login")
        if self.channel is not None:
            self._spawn(self.channel.disconnect())

    # -- requests and queue ------------------------------------------------

    async def authorized_request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        """Send a request with a valid credential (not queued when offline)."""
        self._check_usable()
        return await self.refresher.authorized_request(method, url, body, headers)

    async def enqueue_or_execute(self, action: QueuedAction) -> SubmitResult:
        """Run a mutation now if possible, otherwise queue it durably."""
        self._check_usable()
        return await self.processor.enqueue_or_execute(action)

    async def process_queue(self) -> None:
        self._check_usable()
        await self.processor.process_queue()

    def get_queue_status(self) -> QueueStatus:
        return self.processor.get_status()

    def on_queue_status(self, callback: Callable[[QueueStatus], None]) -> SubscriptionHandle:
        return self.processor.on_status(callback)

    def on_outcome(self, callback: Callable[[ActionOutcome], None]) -> SubscriptionHandle:
        """Subscribe to the terminal result of every action."""
        return self.processor.on_outcome(callback)

    async def _execute_action(self, action: QueuedAction) -> Response:
        response = await self.refresher.authorized_request(action.method, action.endpoint, action.payload)
        error = classify_response(response, action.endpoint)
        if error is not None:
            raise error
        return response

    def _on_outcome(self, outcome: ActionOutcome) -> None:
        action = outcome.action
        entity_id = action.entity_id
        if entity_id is None or action.kind != SEND_MESSAGE:
            return

        if outcome.succeeded:
            body = outcome.response.body if outcome.response is not None else None
            if isinstance(body, dict):
                payload = dict(body)
                if action.correlation_id:
                    payload.setdefault(self.cache.correlation_field, action.correlation_id)
                self._spawn(self._apply_push(entity_id, payload))
                self._spawn(self._broadcast("message:send", payload))
            return

        # Kept pending; surfaced through unconfirmed_records() for the caller to resolve
        if action.correlation_id and outcome.error is not None:
            self._spawn(
                self.cache.update_record(
                    entity_id,
                    action.correlation_id,
                    {"sendError": outcome.error.message, "sendErrorCode": outcome.error.code},
                )
            )

    # -- messaging ---------------------------------------------------------

    async def send_message(
        self,
        conversation_id: str,
        fields: dict[str, Any],
        endpoint: str = "/api/messages",
    ) -> SubmitResult:
        """Show a message immediately and deliver it now or once back online.

        The cached record stays pending until the server's echo (HTTP
        response or ``message:new`` push) carrying the same correlation id
        confirms it.

        Raises:
            PermanentRequestError: The server rejected the message outright
            RefreshFailedError: The session could not be refreshed
        """
        self._check_usable()
        correlation_id = str(uuid.uuid4())
        await self.cache.apply_optimistic(conversation_id, correlation_id, fields)

        action = QueuedAction(
            kind=SEND_MESSAGE,
            endpoint=endpoint,
            method="POST",
            payload={
                **fields,
                "conversationId": conversation_id,
                self.cache.correlation_field: correlation_id,
            },
            correlation_id=correlation_id,
            meta={"entity_id": conversation_id},
        )
        try:
            return await self.processor.enqueue_or_execute(action)
        except SyncClientError:
            # Nothing was queued, so the optimistic record has no future
            await self.cache.discard_record(conversation_id, correlation_id)
            raise

    async def mark_read(self, conversation_id: str, message_id: str) -> SubmitResult:
        """Mark a message read locally, deliver the receipt and notify peers."""
        self._check_usable()
        await self.cache.update_record(
            conversation_id,
            message_id,
            {"read": True, "readAt": datetime.now(UTC).isoformat()},
        )
        result = await self.processor.enqueue_or_execute(
            QueuedAction(
                kind=MARK_READ,
                endpoint=f"/api/messages/{message_id}/read",
                meta={"entity_id": conversation_id},
            )
        )
        await self._broadcast("message:read", {"conversationId": conversation_id, "messageId": message_id})
        return result

    async def fetch_entity(
        self,
        entity_id: str,
        url: str,
        kind: str = "conversation",
        records_key: str = "messages",
    ) -> list[CacheRecord]:
        """Fetch an entity's records and replace the cached copy.

        Falls back to the cached records when the server is unreachable.

        Returns:
            The entity's records after the fetch
        """
        self._check_usable()
        try:
            response = await self.refresher.authorized_request("GET", url)
            error = classify_response(response, url)
            if error is not None:
                raise error
        except TransientNetworkError as e:
            logger.warning(f"Fetch of {entity_id} failed, serving cached records: {e}")
            return self.cache.get_snapshot(entity_id)

        body = response.body
        records = body.get(records_key, []) if isinstance(body, dict) else body
        if not isinstance(records, list):
            logger.warning(f"Unexpected response shape for {entity_id}, serving cached records")
            return self.cache.get_snapshot(entity_id)
        return await self.cache.replace_entity(
            entity_id, [r for r in records if isinstance(r, dict)], kind
        )

    # -- cache -------------------------------------------------------------

    def get_cache_snapshot(self, entity_id: str) -> list[CacheRecord]:
        return self.cache.get_snapshot(entity_id)

    def on_cache_change(self, callback: Callable[[CacheChange], None]) -> SubscriptionHandle:
        return self.cache.on_change(callback)

    def unconfirmed_records(self, stale_after: float | None = None) -> list[UnconfirmedRecord]:
        """Pending records older than ``stale_after`` (default from config).

        Nothing is resolved automatically; use ``discard_record`` or resend.
        """
        threshold = self.config.stale_pending_after if stale_after is None else stale_after
        return self.cache.unconfirmed(threshold)

    async def discard_record(self, entity_id: str, record_id: str) -> bool:
        return await self.cache.discard_record(entity_id, record_id)

    async def _apply_push(self, entity_id: str, payload: dict[str, Any], kind: str = "conversation") -> None:
        try:
            await self.cache.apply_push(entity_id, payload, kind)
        except ValueError as e:
            get_sync_logger(__name__, entity_id=entity_id).warning(f"Ignoring push: {e}")

    # -- channel -----------------------------------------------------------

    def _require_channel(self) -> EventChannel:
        if self.channel is None:
            raise RuntimeError("No event channel configured (set channel_url)")
        return self.channel

    def subscribe(self, event_name: str, callback: Callable[[Any], None]) -> SubscriptionHandle:
        """Receive raw channel events; dispose the handle to stop."""
        return self._require_channel().subscribe(event_name, callback)

    async def join(self, topic: str) -> None:
        await self._require_channel().join(topic)

    async def leave(self, topic: str) -> None:
        await self._require_channel().leave(topic)

    def channel_state(self) -> ChannelState | None:
        return self.channel.state if self.channel is not None else None

    async def _broadcast(self, event_name: str, payload: dict[str, Any]) -> None:
        # Real-time notice to peers; the HTTP request is the delivery of record
        if self.channel is None:
            return
        try:
            sent = await self.channel.emit(event_name, payload)
        except ChannelDisconnectedError as e:
            logger.debug(f"{event_name} not broadcast: {e}")
            return
        if not sent:
            logger.debug(f"{event_name} not broadcast while channel is {self.channel.state.value}")

    async def _channel_options(self) -> dict[str, Any]:
        credential = await self.refresher.get_valid_credential()
        return {"headers": {"Authorization": f"Bearer {credential.access_token}"}}

    def _wire_channel_events(self) -> None:
        if self.channel is None:
            return
        subscribe = self.channel.subscribe
        self._handles.extend(
            [
                subscribe("message:new", self._on_message_new),
                subscribe("message:updated", self._on_message_updated),
                subscribe("message:read", self._on_message_read),
                subscribe("job:created", self._on_job_event),
                subscribe("newJob", self._on_job_event),
                subscribe("job:updated", self._on_job_event),
                subscribe("jobUpdate", self._on_job_event),
            ]
        )

    def _on_message_new(self, message: Any) -> None:
        if not isinstance(message, dict) or not message.get("conversationId"):
            logger.warning("Ignoring message:new without conversationId")
            return
        self._spawn(self._apply_push(str(message["conversationId"]), message))

    def _on_message_updated(self, message: Any) -> None:
        if not isinstance(message, dict) or not message.get("conversationId"):
            logger.warning("Ignoring message:updated without conversationId")
            return
        record_id = message.get(self.cache.id_field)
        if record_id is None:
            return
        self._spawn(self.cache.update_record(str(message["conversationId"]), str(record_id), message))

    def _on_message_read(self, data: Any) -> None:
        if not isinstance(data, dict) or not data.get("conversationId") or not data.get("messageId"):
            logger.warning("Ignoring malformed message:read event")
            return
        self._spawn(
            self.cache.update_record(
                str(data["conversationId"]),
                str(data["messageId"]),
                {"read": True, "readAt": data.get("readAt") or datetime.now(UTC).isoformat()},
            )
        )

    def _on_job_event(self, job: Any) -> None:
        if not isinstance(job, dict):
            logger.warning("Ignoring malformed job event")
            return
        self._spawn(self._apply_push(JOBS_ENTITY, job, kind="job"))
