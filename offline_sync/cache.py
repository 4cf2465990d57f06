"""
Reconciliation cache.

Materialized local view of conversations, jobs and their child records,
fed by two write paths:

- Local optimistic writes, applied immediately and tagged ``pending``,
  keyed by a client-generated correlation id
- Server push events, applied strictly in arrival order

Merge rule: a push carrying a known correlation id updates the matching
pending record in place (server wins on conflicting fields) and confirms
it; a push with no match is appended. A record goes pending -> confirmed
exactly once and never back.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .events import Listeners, SubscriptionHandle
from .storage.namespaced import NamespacedStore

logger = logging.getLogger(__name__)

INDEX_KEY = "index"
ENTITY_KEY_PREFIX = "entity:"


@dataclass
class CacheRecord:
    """One child record (e.g. a message) of a cached entity.

    Attributes:
        record_id: Server id once confirmed; the correlation id while pending
        fields: Record payload
        correlation_id: Client-generated id of the originating local write
        pending: True until the server confirms the record
        created_at: When the record entered the cache
        confirmed_at: When the record was confirmed
    """

    record_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None
    pending: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    confirmed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "fields": self.fields,
            "correlation_id": self.correlation_id,
            "pending": self.pending,
            "created_at": self.created_at.isoformat(),
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheRecord:
        confirmed_at = data.get("confirmed_at")
        return cls(
            record_id=data["record_id"],
            fields=data.get("fields") or {},
            correlation_id=data.get("correlation_id"),
            pending=bool(data.get("pending", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
            confirmed_at=datetime.fromisoformat(confirmed_at) if confirmed_at else None,
        )


@dataclass
class CacheEntity:
    """A cached conversation, job, etc. with its ordered child records."""

    entity_id: str
    kind: str = "conversation"
    records: list[CacheRecord] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def find_by_correlation(self, correlation_id: str | None) -> CacheRecord | None:
        if not correlation_id:
            return None
        for record in self.records:
            if record.correlation_id == correlation_id:
                return record
        return None

    def find_by_id(self, record_id: str | None) -> CacheRecord | None:
        if record_id is None:
            return None
        for record in self.records:
            if record.record_id == record_id:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "records": [r.to_dict() for r in self.records],
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntity:
        return cls(
            entity_id=data["entity_id"],
            kind=data.get("kind", "conversation"),
            records=[CacheRecord.from_dict(r) for r in data.get("records", [])],
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class CacheChange:
    """Notification sent to ``on_change`` subscribers."""

    entity_id: str | None
    change: str  # optimistic, confirmed, appended, updated, replaced, discarded, cleared
    record: CacheRecord | None = None


@dataclass(frozen=True)
class UnconfirmedRecord:
    """A pending record older than the staleness threshold."""

    entity_id: str
    record: CacheRecord
    age: timedelta


class ReconciliationCache:
    """Per-entity ordered view merging optimistic writes with server pushes.

    Args:
        store: ``cache`` namespace
        id_field: Payload field holding the server record id
        correlation_field: Payload field echoing the client correlation id
        clock: Source of "now" (UTC)
    """

    def __init__(
        self,
        store: NamespacedStore,
        id_field: str = "_id",
        correlation_field: str = "correlationId",
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.id_field = id_field
        self.correlation_field = correlation_field
        self.clock = clock or (lambda: datetime.now(UTC))

        self._entities: dict[str, CacheEntity] = {}
        self._changes: Listeners[CacheChange] = Listeners("cache_change")
        self._dirty: set[str] = set()
        self._index_dirty = False
        self._flushing: asyncio.Future[None] | None = None

    # -- persistence -------------------------------------------------------

    async def load(self) -> int:
        """Restore cached entities from storage.

        Returns:
            Number of entities loaded
        """
        index = await self.store.get_json(INDEX_KEY)
        self._entities = {}
        if not isinstance(index, list):
            return 0

        for entity_id in index:
            data = await self.store.get_json(ENTITY_KEY_PREFIX + entity_id)
            if not isinstance(data, dict):
                continue
            try:
                self._entities[entity_id] = CacheEntity.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable cached entity {entity_id}: {e}")
        logger.debug(f"Loaded {len(self._entities)} cached entities")
        return len(self._entities)

    async def _flush(self, entity_id: str | None = None) -> None:
        """Persist dirty entities through a single writer, in mutation order."""
        if entity_id is not None:
            self._dirty.add(entity_id)
        if self._flushing is None:
            self._flushing = asyncio.ensure_future(self._flush_loop())
        await asyncio.shield(self._flushing)

    async def _flush_loop(self) -> None:
        try:
            while self._dirty or self._index_dirty:
                if self._index_dirty:
                    self._index_dirty = False
                    await self.store.set_json(INDEX_KEY, list(self._entities))
                    continue
                entity_id = self._dirty.pop()
                entity = self._entities.get(entity_id)
                if entity is None:
                    await self.store.remove(ENTITY_KEY_PREFIX + entity_id)
                else:
                    await self.store.set_json(ENTITY_KEY_PREFIX + entity_id, entity.to_dict())
        finally:
            self._flushing = None

    def _ensure_entity(self, entity_id: str, kind: str) -> CacheEntity:
        entity = self._entities.get(entity_id)
        if entity is None:
            entity = CacheEntity(entity_id=entity_id, kind=kind)
            self._entities[entity_id] = entity
            self._index_dirty = True
        return entity

    def _touch(self, entity: CacheEntity) -> None:
        entity.updated_at = self.clock()
        self._dirty.add(entity.entity_id)

    # -- observers ---------------------------------------------------------

    def on_change(self, callback: Callable[[CacheChange], None]) -> SubscriptionHandle:
        return self._changes.add(callback)

    # -- write paths -------------------------------------------------------

    async def apply_optimistic(
        self,
        entity_id: str,
        correlation_id: str,
        fields: dict[str, Any],
        kind: str = "conversation",
    ) -> CacheRecord:
        """Append a locally-originated record tagged pending.

        If a record with this correlation id already exists (for instance
        the server echo arrived first) nothing is added.

        Returns:
            The pending record, or the existing record for the correlation id
        """
        if not correlation_id:
            raise ValueError("Optimistic writes require a correlation id")

        entity = self._ensure_entity(entity_id, kind)
        existing = entity.find_by_correlation(correlation_id)
        if existing is not None:
            logger.debug(f"Correlation {correlation_id} already cached, skipping optimistic write")
            await self._flush()
            return copy.deepcopy(existing)

        record = CacheRecord(
            record_id=correlation_id,
            fields={**fields, self.correlation_field: correlation_id},
            correlation_id=correlation_id,
            pending=True,
            created_at=self.clock(),
        )
        entity.records.append(record)
        self._touch(entity)
        self._changes.emit(CacheChange(entity_id, "optimistic", copy.deepcopy(record)))
        await self._flush(entity_id)
        return copy.deepcopy(record)

    async def apply_push(
        self,
        entity_id: str,
        payload: dict[str, Any],
        kind: str = "conversation",
    ) -> CacheRecord:
        """Merge a server-pushed record.

        Raises:
            ValueError: If the payload carries no server id
        """
        server_id = payload.get(self.id_field)
        if server_id is None:
            raise ValueError(f"Push payload for {entity_id} has no '{self.id_field}'")
        server_id = str(server_id)
        correlation_id = payload.get(self.correlation_field)

        entity = self._ensure_entity(entity_id, kind)
        record = entity.find_by_correlation(correlation_id)

        if record is not None:
            duplicate = entity.find_by_id(server_id)
            if duplicate is not None and duplicate is not record:
                entity.records.remove(duplicate)
            record.fields.update(payload)
            record.record_id = server_id
            change = "updated"
            if record.pending:
                record.pending = False
                record.confirmed_at = self.clock()
                change = "confirmed"
        else:
            record = entity.find_by_id(server_id)
            if record is not None:
                record.fields.update(payload)
                change = "updated"
            else:
                record = CacheRecord(
                    record_id=server_id,
                    fields=dict(payload),
                    correlation_id=correlation_id,
                    pending=False,
                    created_at=self.clock(),
                    confirmed_at=self.clock(),
                )
                entity.records.append(record)
                change = "appended"

        self._touch(entity)
        self._changes.emit(CacheChange(entity_id, change, copy.deepcopy(record)))
        await self._flush(entity_id)
        return copy.deepcopy(record)

    async def update_record(
        self,
        entity_id: str,
        record_id: str,
        fields: dict[str, Any],
    ) -> CacheRecord | None:
        """Overwrite fields of an existing record (e.g. read receipts).

        Returns:
            The updated record, or None if it is not cached
        """
        entity = self._entities.get(entity_id)
        record = entity.find_by_id(record_id) if entity else None
        if entity is None or record is None:
            return None

        record.fields.update(fields)
        self._touch(entity)
        self._changes.emit(CacheChange(entity_id, "updated", copy.deepcopy(record)))
        await self._flush(entity_id)
        return copy.deepcopy(record)

    async def replace_entity(
        self,
        entity_id: str,
        payloads: list[dict[str, Any]],
        kind: str = "conversation",
    ) -> list[CacheRecord]:
        """Replace an entity's records with a freshly fetched server list.

        Pending records the fetch already contains (by correlation id) are
        confirmed; the rest stay pending at the end of the list.
        """
        entity = self._ensure_entity(entity_id, kind)
        pending = [r for r in entity.records if r.pending]
        now = self.clock()

        records: list[CacheRecord] = []
        seen_ids: set[str] = set()
        for payload in payloads:
            server_id = payload.get(self.id_field)
            if server_id is None or str(server_id) in seen_ids:
                continue
            seen_ids.add(str(server_id))
            correlation_id = payload.get(self.correlation_field)
            previous = entity.find_by_id(str(server_id)) or entity.find_by_correlation(correlation_id)
            records.append(
                CacheRecord(
                    record_id=str(server_id),
                    fields=dict(payload),
                    correlation_id=correlation_id,
                    pending=False,
                    created_at=previous.created_at if previous else now,
                    confirmed_at=(previous.confirmed_at if previous and previous.confirmed_at else now),
                )
            )

        fetched_correlations = {r.correlation_id for r in records if r.correlation_id}
        records.extend(r for r in pending if r.correlation_id not in fetched_correlations)

        entity.records = records
        self._touch(entity)
        self._changes.emit(CacheChange(entity_id, "replaced"))
        await self._flush(entity_id)
        return self.get_snapshot(entity_id)

    async def discard_record(self, entity_id: str, record_id: str) -> bool:
        """Remove a record; used by callers resolving unconfirmed writes."""
        entity = self._entities.get(entity_id)
        record = entity.find_by_id(record_id) if entity else None
        if entity is None or record is None:
            return False

        entity.records.remove(record)
        self._touch(entity)
        self._changes.emit(CacheChange(entity_id, "discarded", copy.deepcopy(record)))
        await self._flush(entity_id)
        return True

    async def clear(self) -> None:
        """Drop every cached entity (logout)."""
        entity_ids = list(self._entities)
        self._entities = {}
        self._dirty.difference_update(entity_ids)
        self._index_dirty = False
        if self._flushing is not None:
            await asyncio.shield(self._flushing)
        await self.store.remove_many([ENTITY_KEY_PREFIX + e for e in entity_ids] + [INDEX_KEY])
        self._changes.emit(CacheChange(None, "cleared"))
        logger.info(f"Cache cleared ({len(entity_ids)} entities)")

    # -- reads -------------------------------------------------------------

    def get_snapshot(self, entity_id: str) -> list[CacheRecord]:
        """Ordered copy of an entity's records (empty if unknown)."""
        entity = self._entities.get(entity_id)
        if entity is None:
            return []
        return copy.deepcopy(entity.records)

    def get_entity(self, entity_id: str) -> CacheEntity | None:
        entity = self._entities.get(entity_id)
        return copy.deepcopy(entity) if entity else None

    def entity_ids(self) -> list[str]:
        return list(self._entities)

    def unconfirmed(self, stale_after: float) -> list[UnconfirmedRecord]:
        """Pending records older than ``stale_after`` seconds.

        They are reported, never auto-resolved; the caller decides whether
        to resend or discard them.
        """
        now = self.clock()
        threshold = timedelta(seconds=stale_after)
        result: list[UnconfirmedRecord] = []
        for entity in self._entities.values():
            for record in entity.records:
                age = now - record.created_at
                if record.pending and age > threshold:
                    result.append(UnconfirmedRecord(entity.entity_id, copy.deepcopy(record), age))
        return result

    async def dispose(self) -> None:
        if self._flushing is not None:
            await asyncio.shield(self._flushing)
        self._changes.clear()
