"""
Key/value persistence for the sync layer.

Backends:
- MemoryStore: process-local, for tests and memory-only sessions
- FileStore: one atomically-written file per key (aiofiles)
- SQLiteStore: single-file database (aiosqlite)

Components never talk to a backend directly; they get a NamespacedStore.
"""

from .base import MemoryStore, PersistentStore
from .file import FileStore
from .namespaced import NamespacedStore
from .sqlite import SQLiteStore

__all__ = [
    "PersistentStore",
    "MemoryStore",
    "FileStore",
    "SQLiteStore",
    "NamespacedStore",
]
