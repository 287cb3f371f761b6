"""
Chain Mirror - Mirror Store Adapter

Record-oriented CRUD keyed by (entity_type, external_id). The backing
store is not assumed to enforce uniqueness on that pair; `upsert`
serialises lookup-then-write per key inside this process instead.
"""

import asyncio
import itertools
import logging
import weakref
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Mapping, Optional

from chainmirror.core.types import utc_now
from chainmirror.models.records import BlobReference, EntityType, MirrorRecord

logger = logging.getLogger(__name__)

# attachment field -> bytes to store, or None to drop the stored attachment
Attachments = Mapping[str, Optional[BlobReference]]


class MirrorStore(ABC):
    """Single-writer mirror of ledger entities."""

    def __init__(self) -> None:
        # Entries vanish once no upsert or delete holds the lock
        self._key_locks: weakref.WeakValueDictionary[tuple[EntityType, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _key_lock(self, entity_type: EntityType, external_id: str) -> asyncio.Lock:
        return self._key_locks.setdefault((entity_type, external_id), asyncio.Lock())

    @abstractmethod
    async def find_all_by_external_id(
        self, entity_type: EntityType, external_id: str
    ) -> list[MirrorRecord]:
        """Every record with this key, most recently created first."""

    @abstractmethod
    async def list_all(self, entity_type: EntityType) -> list[MirrorRecord]:
        """Every record of one entity type."""

    @abstractmethod
    async def delete_record(self, entity_type: EntityType, record_id: str) -> None:
        """Delete one record by local id. No-op if absent."""

    @abstractmethod
    async def _create(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord: ...

    @abstractmethod
    async def _update(
        self,
        record: MirrorRecord,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord: ...

    async def find_by_external_id(
        self, entity_type: EntityType, external_id: str
    ) -> Optional[MirrorRecord]:
        records = await self.find_all_by_external_id(entity_type, external_id)
        return records[0] if records else None

    async def upsert(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        attachments: Optional[Attachments] = None,
    ) -> MirrorRecord:
        """Create the record if absent, else update it in place."""
        attachments = attachments or {}
        async with self._key_lock(entity_type, external_id):
            existing = await self.find_by_external_id(entity_type, external_id)
            if existing is None:
                record = await self._create(entity_type, external_id, fields, attachments)
                logger.debug(f"[STORE] Created {entity_type.value} {external_id}")
            else:
                record = await self._update(existing, fields, attachments)
                logger.debug(f"[STORE] Updated {entity_type.value} {external_id}")
            return record

    async def delete(self, entity_type: EntityType, external_id: str) -> None:
        """Delete every record with this key. No-op if absent."""
        async with self._key_lock(entity_type, external_id):
            for record in await self.find_all_by_external_id(entity_type, external_id):
                await self.delete_record(entity_type, record.id)

    async def close(self) -> None:
        pass


class InMemoryMirrorStore(MirrorStore):
    """
    Process-local store.

    Backs the `memory` backend and the test suite. `insert` bypasses the
    upsert lookup so tests can seed pre-existing duplicates.
    """

    def __init__(self) -> None:
        super().__init__()
        self._rows: dict[EntityType, dict[str, dict[str, Any]]] = {t: {} for t in EntityType}
        self._ids = itertools.count(1)
        self.writes = 0

    def _to_record(self, entity_type: EntityType, row: dict[str, Any]) -> MirrorRecord:
        return MirrorRecord(
            id=row["id"],
            entity_type=entity_type,
            external_id=row["external_id"],
            fields=dict(row["fields"]),
            blobs={name: ref.content_hash for name, ref in row["attachments"].items()},
            created_at=row["created_at"],
            synced_at=row["synced_at"],
        )

    @staticmethod
    def _apply_attachments(row: dict[str, Any], attachments: Attachments) -> None:
        for name, ref in attachments.items():
            if ref is None:
                row["attachments"].pop(name, None)
            else:
                row["attachments"][name] = ref

    def insert(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> MirrorRecord:
        """Raw create with no duplicate check."""
        seq = next(self._ids)
        now = utc_now()
        row = {
            "id": f"rec{seq:06d}",
            "seq": seq,
            "external_id": external_id,
            "fields": dict(fields),
            "attachments": {},
            "created_at": created_at or now,
            "synced_at": now,
        }
        self._rows[entity_type][row["id"]] = row
        return self._to_record(entity_type, row)

    def attachment(self, entity_type: EntityType, external_id: str, name: str) -> Optional[bytes]:
        for row in self._rows[entity_type].values():
            if row["external_id"] == external_id and name in row["attachments"]:
                return row["attachments"][name].data
        return None

    def _sorted_rows(self, entity_type: EntityType) -> list[dict[str, Any]]:
        return sorted(
            self._rows[entity_type].values(),
            key=lambda r: (r["created_at"], r["seq"]),
            reverse=True,
        )

    async def find_all_by_external_id(
        self, entity_type: EntityType, external_id: str
    ) -> list[MirrorRecord]:
        return [
            self._to_record(entity_type, row)
            for row in self._sorted_rows(entity_type)
            if row["external_id"] == external_id
        ]

    async def list_all(self, entity_type: EntityType) -> list[MirrorRecord]:
        return [self._to_record(entity_type, row) for row in self._sorted_rows(entity_type)]

    async def delete_record(self, entity_type: EntityType, record_id: str) -> None:
        if self._rows[entity_type].pop(record_id, None) is not None:
            self.writes += 1

    async def _create(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord:
        record = self.insert(entity_type, external_id, fields)
        row = self._rows[entity_type][record.id]
        self._apply_attachments(row, attachments)
        self.writes += 1
        return self._to_record(entity_type, row)

    async def _update(
        self,
        record: MirrorRecord,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord:
        row = self._rows[record.entity_type][record.id]
        row["fields"].update(fields)
        self._apply_attachments(row, attachments)
        row["synced_at"] = utc_now()
        self.writes += 1
        return self._to_record(record.entity_type, row)
