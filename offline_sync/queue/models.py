"""
Queue data types.

Defines the queued mutation record and the status / outcome values that
the queue processor reports to observers.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..exceptions import SyncClientError
from ..transport.http import Response


@dataclass
class QueuedAction:
    """A mutating request waiting to be delivered.

    Attributes:
        kind: Tag identifying the mutation type (e.g. ``SEND_MESSAGE``)
        endpoint: Request path or URL
        method: HTTP method
        payload: JSON-serializable request body
        correlation_id: Client-generated id echoed back by the server
        meta: Free-form metadata; ``meta["entity_id"]`` names the cache
            entity a successful response is applied to
        id: Unique id assigned at creation
        created_at: When the action was created
        retry_count: Transient failures so far
        last_error: Message of the most recent failure
    """

    kind: str
    endpoint: str
    method: str = "POST"
    payload: Any = None
    correlation_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = 0
    last_error: str | None = None

    @property
    def entity_id(self) -> str | None:
        return self.meta.get("entity_id")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind,
            "endpoint": self.endpoint,
            "method": self.method,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "meta": self.meta,
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedAction:
        """Create from dictionary."""
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        elif created_at is None:
            created_at = datetime.now(UTC)

        return cls(
            id=data["id"],
            kind=data["kind"],
            endpoint=data["endpoint"],
            method=data.get("method", "POST"),
            payload=data.get("payload"),
            correlation_id=data.get("correlation_id"),
            meta=data.get("meta") or {},
            created_at=created_at,
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
        )


class ProcessorState(Enum):
    """Current state of the queue processor."""

    IDLE = "idle"
    DRAINING = "draining"
    PAUSED = "paused"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class QueueStatus:
    """Snapshot handed to status listeners."""

    is_online: bool
    queue_size: int
    is_processing: bool
    state: ProcessorState = ProcessorState.IDLE


@dataclass
class ActionOutcome:
    """Terminal outcome of one action: success or permanent failure."""

    action: QueuedAction
    succeeded: bool
    response: Response | None = None
    error: SyncClientError | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SubmitResult:
    """Result of ``enqueue_or_execute``."""

    queued: bool
    id: str
    response: Response | None = None
