"""
Abstract key/value persistence interface.

Defines the contract that all persistence backends must implement, plus
an in-memory backend used for tests and for memory-only sessions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable


class PersistentStore(ABC):
    """Abstract durable key/value store.

    Values are opaque bytes. A ``set`` that returns has completed its
    durability side effect, and each single-key write is atomic with
    respect to reads of the same key.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Read a value.

        Args:
            key: Key to read

        Returns:
            Stored bytes, or None if the key is absent

        Raises:
            StorageError: If the read fails
        """
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Write a value durably.

        Raises:
            StorageError: If the write fails
        """
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is not an error."""
        ...

    async def remove_many(self, keys: Iterable[str]) -> None:
        """Remove several keys."""
        for key in keys:
            await self.remove(key)

    async def close(self) -> None:
        """Release any resources held by the store."""
        return None


class MemoryStore(PersistentStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
