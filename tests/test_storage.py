"""
Tests for the persistence backends and namespaced views.

FileStore and SQLiteStore run against real files under tmp_path.
"""

import errno

import pytest

from conftest import FailingStore
from offline_sync.exceptions import StorageError
from offline_sync.queue import PersistentQueue
from offline_sync.storage import FileStore, MemoryStore, NamespacedStore, SQLiteStore
from offline_sync.storage import file as file_backend


@pytest.fixture
async def sqlite_store(tmp_path):
    store = await SQLiteStore.create(tmp_path / "state.db")
    yield store
    await store.close()


class TestMemoryStore:
    """Tests for the in-memory backend."""

    @pytest.mark.asyncio
    async def test_get_set_remove(self):
        """Values round-trip and removal is idempotent."""
        store = MemoryStore()
        assert await store.get("a") is None

        await store.set("a", b"1")
        assert await store.get("a") == b"1"

        await store.remove("a")
        await store.remove("a")
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_remove_many(self):
        store = MemoryStore()
        await store.set("a", b"1")
        await store.set("b", b"2")
        await store.set("c", b"3")

        await store.remove_many(["a", "c", "missing"])

        assert store.keys() == ["b"]


class TestFileStore:
    """Tests for the file-per-key backend."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        """Set then get returns the same bytes."""
        store = FileStore(tmp_path / "state")
        await store.set("queue:actions", b"[1, 2, 3]")

        assert await store.get("queue:actions") == b"[1, 2, 3]"

    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self, tmp_path):
        store = FileStore(tmp_path / "state")
        assert await store.get("nothing") is None

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path):
        """Writes go through a temp file that is renamed into place."""
        store = FileStore(tmp_path / "state")
        await store.set("auth:credential", b"old")
        await store.set("auth:credential", b"new")

        assert await store.get("auth:credential") == b"new"
        names = [p.name for p in (tmp_path / "state").iterdir()]
        assert len(names) == 1
        assert not any(name.startswith(".tmp_") for name in names)

    @pytest.mark.asyncio
    async def test_keys_with_separators_stay_distinct(self, tmp_path):
        """Keys are escaped so path separators cannot collide or escape."""
        store = FileStore(tmp_path / "state")
        await store.set("cache:entity:a/b", b"1")
        await store.set("cache:entity:a_b", b"2")

        assert await store.get("cache:entity:a/b") == b"1"
        assert await store.get("cache:entity:a_b") == b"2"
        assert all(p.parent == tmp_path / "state" for p in (tmp_path / "state").iterdir())

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path):
        store = FileStore(tmp_path / "state")
        await store.set("k", b"v")
        await store.remove("k")
        await store.remove("k")

        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_unwritable_directory_raises_storage_error(self, tmp_path):
        """Filesystem failures surface as StorageError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FileStore(blocker / "state")

        with pytest.raises(StorageError) as exc_info:
            await store.set("k", b"v")
        assert exc_info.value.kind == "storage"

    @pytest.mark.asyncio
    async def test_full_disk_degrades_namespace(self, tmp_path, monkeypatch, make_action):
        """A temp file that cannot be created leaves the queue usable in memory."""

        def no_space(*args, **kwargs):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(file_backend.tempfile, "mkstemp", no_space)
        store = NamespacedStore(FileStore(tmp_path / "state"), "queue")
        queue = PersistentQueue(store)

        with pytest.raises(StorageError):
            await store.store.set("queue:actions", b"[]")
        await queue.enqueue(make_action())

        assert store.degraded is True
        assert len(queue) == 1
        assert len(await store.get_json("actions")) == 1


class TestSQLiteStore:
    """Tests for the SQLite backend."""

    @pytest.mark.asyncio
    async def test_round_trip(self, sqlite_store):
        await sqlite_store.set("queue:actions", b"[]")
        assert await sqlite_store.get("queue:actions") == b"[]"

    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, sqlite_store):
        await sqlite_store.set("k", b"1")
        await sqlite_store.set("k", b"2")
        assert await sqlite_store.get("k") == b"2"

    @pytest.mark.asyncio
    async def test_remove_many(self, sqlite_store):
        for key in ("a", "b", "c"):
            await sqlite_store.set(key, key.encode())

        await sqlite_store.remove_many(["a", "b"])

        assert await sqlite_store.get("a") is None
        assert await sqlite_store.get("b") is None
        assert await sqlite_store.get("c") == b"c"

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path):
        """Data written before close is readable by a new store."""
        path = tmp_path / "durable.db"
        first = await SQLiteStore.create(path)
        await first.set("auth:credential", b"secret")
        await first.close()

        second = await SQLiteStore.create(path)
        try:
            assert await second.get("auth:credential") == b"secret"
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_lazy_initialization(self, tmp_path):
        """Operations initialize the connection on first use."""
        store = SQLiteStore(tmp_path / "lazy.db")
        try:
            await store.set("k", b"v")
            assert await store.get("k") == b"v"
        finally:
            await store.close()


class TestNamespacedStore:
    """Tests for per-component namespaces."""

    @pytest.mark.asyncio
    async def test_keys_are_prefixed(self):
        backend = MemoryStore()
        queue_ns = NamespacedStore(backend, "queue")
        auth_ns = NamespacedStore(backend, "auth")

        await queue_ns.set("state", b"q")
        await auth_ns.set("state", b"a")

        assert sorted(backend.keys()) == ["auth:state", "queue:state"]
        assert await queue_ns.get("state") == b"q"
        assert await auth_ns.get("state") == b"a"

    def test_rejects_invalid_namespace(self):
        with pytest.raises(ValueError):
            NamespacedStore(MemoryStore(), "")
        with pytest.raises(ValueError):
            NamespacedStore(MemoryStore(), "a:b")

    @pytest.mark.asyncio
    async def test_json_round_trip(self):
        ns = NamespacedStore(MemoryStore(), "cache")
        await ns.set_json("index", ["conv-1", "conv-2"])

        assert await ns.get_json("index") == ["conv-1", "conv-2"]
        assert await ns.get_json("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_json_reads_as_absent(self):
        backend = MemoryStore()
        await backend.set("cache:index", b"{not json")
        ns = NamespacedStore(backend, "cache")

        assert await ns.get_json("index") is None

    @pytest.mark.asyncio
    async def test_storage_error_degrades_to_memory(self, caplog):
        """A failing backend is logged once and the namespace keeps working."""
        backend = FailingStore()
        ns = NamespacedStore(backend, "queue")

        await ns.set_json("actions", [{"id": "a"}])

        assert ns.degraded is True
        assert await ns.get_json("actions") == [{"id": "a"}]
        attempts = backend.attempts

        await ns.set_json("actions", [])
        await ns.remove("actions")
        assert backend.attempts == attempts
        assert await ns.get("actions") is None
        assert "continuing memory-only" in caplog.text
