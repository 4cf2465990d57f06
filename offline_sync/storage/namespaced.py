"""
Per-component view over a shared PersistentStore.

Each component (queue, auth, cache) owns a disjoint key namespace. When
the backing store raises ``StorageError`` the namespace logs it and falls
back to memory-only operation for the rest of the session instead of
crashing its owner.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from ..exceptions import StorageError
from ..logging_utils import get_sync_logger
from .base import PersistentStore


class NamespacedStore:
    """Prefixes keys with ``{namespace}:`` and degrades to memory on failure."""

    def __init__(self, store: PersistentStore, namespace: str):
        if not namespace or ":" in namespace:
            raise ValueError(f"Invalid namespace: {namespace!r}")
        self.store = store
        self.namespace = namespace
        self._degraded = False
        self._memory: dict[str, bytes] = {}
        self._log = get_sync_logger(__name__, namespace=namespace)

    @property
    def degraded(self) -> bool:
        """True once the namespace has fallen back to memory-only."""
        return self._degraded

    def key(self, name: str) -> str:
        return f"{self.namespace}:{name}"

    def _degrade(self, error: StorageError) -> None:
        if not self._degraded:
            self._log.error(
                f"Storage failure in namespace '{self.namespace}', "
                f"continuing memory-only for this session: {error}"
            )
        self._degraded = True

    async def get(self, name: str) -> bytes | None:
        if self._degraded:
            return self._memory.get(name)
        try:
            return await self.store.get(self.key(name))
        except StorageError as e:
            self._degrade(e)
            return self._memory.get(name)

    async def set(self, name: str, value: bytes) -> None:
        if self._degraded:
            self._memory[name] = value
            return
        try:
            await self.store.set(self.key(name), value)
        except StorageError as e:
            self._degrade(e)
            self._memory[name] = value

    async def remove(self, name: str) -> None:
        await self.remove_many([name])

    async def remove_many(self, names: Iterable[str]) -> None:
        name_list = list(names)
        for name in name_list:
            self._memory.pop(name, None)
        if self._degraded or not name_list:
            return
        try:
            await self.store.remove_many([self.key(n) for n in name_list])
        except StorageError as e:
            self._degrade(e)

    async def get_json(self, name: str) -> Any | None:
        """Read and decode a JSON value. Corrupt data reads as absent."""
        raw = await self.get(name)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._log.warning(f"Discarding corrupt value at {self.key(name)}")
            return None

    async def set_json(self, name: str, value: Any) -> None:
        await self.set(name, json.dumps(value, default=str).encode("utf-8"))
