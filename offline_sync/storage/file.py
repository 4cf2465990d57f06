"""
File-backed key/value store.

One file per key under a base directory. Writes are atomic using a temp
file + fsync + rename, so a reader never observes a half-written value.
"""

import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote

import aiofiles
import aiofiles.os

from ..exceptions import StorageError
from .base import PersistentStore

logger = logging.getLogger(__name__)

VALUE_SUFFIX = ".bin"


class FileStore(PersistentStore):
    """Durable store that keeps each key in its own file.

    Example:
        >>> store = FileStore(Path.home() / ".offline_sync")
        >>> await store.set("queue:actions", b"[]")
    """

    def __init__(self, base_dir: Path | str):
        """Initialize the file store.

        Args:
            base_dir: Directory holding the value files (created lazily)
        """
        self.base_dir = Path(base_dir)

    def _path_for(self, key: str) -> Path:
        return self.base_dir / (quote(key, safe="") + VALUE_SUFFIX)

    async def _ensure_directory(self) -> None:
        try:
            await aiofiles.os.makedirs(self.base_dir, exist_ok=True)
        except OSError as e:
            raise StorageError("create_directory", str(self.base_dir), e) from e

    async def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            if not await aiofiles.os.path.exists(path):
                return None
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageError("get", key, e) from e

    async def set(self, key: str, value: bytes) -> None:
        await self._ensure_directory()
        path = self._path_for(key)

        try:
            fd, temp_path = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp_", suffix=VALUE_SUFFIX)
        except OSError as e:
            raise StorageError("set", key, e) from e

        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(value)
                await f.flush()
                os.fsync(f.fileno())

            await aiofiles.os.rename(temp_path, path)
        except Exception as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise StorageError("set", key, e) from e

    async def remove(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError("remove", key, e) from e
