"""
SQLite key/value store.

Single-file database, handy for embedded hosts that already ship SQLite.
Each write commits in its own transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StorageError
from .base import PersistentStore

logger = logging.getLogger(__name__)


class SQLiteStore(PersistentStore):
    """Durable store backed by a ``kv`` table in SQLite."""

    def __init__(self, db_path: Path | str):
        """
        Initialize the SQLite store.

        Args:
            db_path: Database file path (``":memory:"`` for an ephemeral DB)
        """
        self.db_path = str(db_path)
        self.conn: Any = None  # aiosqlite.Connection
        self._initialized = False

    @classmethod
    async def create(cls, db_path: Path | str) -> SQLiteStore:
        """Create and initialize a SQLite store."""
        store = cls(db_path)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(self.db_path)
            await self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
                """
            )
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError("initialize", self.db_path, e) from e

        self._initialized = True
        logger.info(f"SQLite store initialized: {self.db_path}")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def get(self, key: str) -> bytes | None:
        await self._ensure_initialized()
        try:
            async with self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError("get", key, e) from e
        return bytes(row[0]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        await self._ensure_initialized()
        try:
            await self.conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError("set", key, e) from e

    async def remove(self, key: str) -> None:
        await self.remove_many([key])

    async def remove_many(self, keys: Iterable[str]) -> None:
        await self._ensure_initialized()
        key_list = list(keys)
        if not key_list:
            return
        try:
            await self.conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in key_list])
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError("remove_many", ",".join(key_list), e) from e

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False
