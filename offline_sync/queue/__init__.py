"""
Offline mutation queue.

PersistentQueue holds pending actions durably; QueueProcessor drains
them in order once connectivity returns.
"""

from .models import ActionOutcome, ProcessorState, QueuedAction, QueueStatus, SubmitResult
from .persistent import PersistentQueue
from .processor import ProcessorConfig, QueueProcessor, RetryOrdering

__all__ = [
    "QueuedAction",
    "QueueStatus",
    "ActionOutcome",
    "SubmitResult",
    "ProcessorState",
    "PersistentQueue",
    "QueueProcessor",
    "ProcessorConfig",
    "RetryOrdering",
]
