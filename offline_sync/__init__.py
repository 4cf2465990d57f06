"""
Offline Sync

Client-side resilience and synchronization layer for apps that must keep
working while connectivity comes and goes.

Provides:
- Durable offline queue for mutations, drained in order on reconnect
- Bounded retries with exponential backoff and failure classification
- Single-flight credential refresh (proactive and on 401)
- Reconnecting event channel with disposable subscriptions
- Reconciliation cache merging optimistic writes with server pushes

Usage:

    >>> from offline_sync import Credential, SyncClient, SyncClientConfig
    >>> client = SyncClient(SyncClientConfig.from_yaml("~/.offline-sync/settings.yaml"))
    >>> await client.initialize()
    >>> await client.login(Credential.from_token_response(auth_response))
    ...
    >>> # Shows up immediately as pending, confirmed when the server echoes it
    >>> await client.send_message("conv-1", {"text": "Running 10 minutes late"})
    >>> client.get_cache_snapshot("conv-1")
    ...
    >>> handle = client.subscribe("job:updated", on_job_update)
    >>> handle.dispose()
    >>> await client.dispose()

Storage Selection:

    # In-memory (tests, ephemeral sessions)
    SyncClientConfig(storage_path=None)

    # SQLite file
    SyncClientConfig(storage_path="~/.offline-sync/state.db")

    # One file per key in a directory
    SyncClientConfig(storage_path="~/.offline-sync/state")
"""

from .auth import Credential, CredentialRefresher, HttpRefreshTransport, SessionProfile
from .cache import CacheChange, CacheEntity, CacheRecord, ReconciliationCache, UnconfirmedRecord
from .channel import ChannelConfig, ChannelState, EventChannel
from .client import SyncClient, create_store
from .config import SyncClientConfig
from .events import SubscriptionHandle

# Exceptions
from .exceptions import (
    AuthExpiredError,
    ChannelDisconnectedError,
    PermanentRequestError,
    RefreshFailedError,
    StorageError,
    SyncClientError,
    TransientNetworkError,
    classify_response,
    classify_status,
)
from .logging_utils import configure_structured_logging, get_sync_logger
from .network import DnsConnectivityObserver, ManualConnectivityObserver, NetworkMonitor
from .queue import (
    ActionOutcome,
    PersistentQueue,
    ProcessorConfig,
    ProcessorState,
    QueuedAction,
    QueueProcessor,
    QueueStatus,
    RetryOrdering,
    SubmitResult,
)
from .storage import FileStore, MemoryStore, NamespacedStore, PersistentStore, SQLiteStore
from .transport import (
    AiohttpRequestFunction,
    AiohttpWebSocketTransport,
    EventTransport,
    RequestFunction,
    Response,
)

__version__ = "0.1.0"

__all__ = [
    # Facade
    "SyncClient",
    "SyncClientConfig",
    "create_store",
    # Storage
    "PersistentStore",
    "MemoryStore",
    "FileStore",
    "SQLiteStore",
    "NamespacedStore",
    # Connectivity
    "NetworkMonitor",
    "DnsConnectivityObserver",
    "ManualConnectivityObserver",
    # Queue
    "QueuedAction",
    "QueueStatus",
    "ActionOutcome",
    "SubmitResult",
    "ProcessorState",
    "PersistentQueue",
    "QueueProcessor",
    "ProcessorConfig",
    "RetryOrdering",
    # Auth
    "Credential",
    "SessionProfile",
    "CredentialRefresher",
    "HttpRefreshTransport",
    # Channel
    "EventChannel",
    "ChannelConfig",
    "ChannelState",
    "SubscriptionHandle",
    # Cache
    "ReconciliationCache",
    "CacheEntity",
    "CacheRecord",
    "CacheChange",
    "UnconfirmedRecord",
    # Transport
    "Response",
    "RequestFunction",
    "AiohttpRequestFunction",
    "EventTransport",
    "AiohttpWebSocketTransport",
    # Exceptions
    "SyncClientError",
    "TransientNetworkError",
    "PermanentRequestError",
    "AuthExpiredError",
    "RefreshFailedError",
    "StorageError",
    "ChannelDisconnectedError",
    "classify_status",
    "classify_response",
    # Logging
    "configure_structured_logging",
    "get_sync_logger",
]
