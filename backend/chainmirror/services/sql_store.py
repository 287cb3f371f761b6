"""
Chain Mirror - SQL Mirror Store

Mirror backed by SQLAlchemy async (PostgreSQL via asyncpg in production).
Attachments live in `mirror_blobs`, one row per (record, name).
"""

import logging
from typing import Any, Optional

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from chainmirror.core.errors import StoreError
from chainmirror.core.types import utc_now
from chainmirror.db.models import Base, MirrorBlobRow, MirrorRecordRow
from chainmirror.db.session import make_engine, make_session_maker
from chainmirror.models.records import EntityType, MirrorRecord
from chainmirror.services.mirror_store import Attachments, MirrorStore

logger = logging.getLogger(__name__)


def _row_id(record_id: str) -> Optional[int]:
    try:
        return int(record_id)
    except ValueError:
        return None


class SqlMirrorStore(MirrorStore):
    """MirrorStore over the `mirror_records` / `mirror_blobs` tables."""

    def __init__(self, engine: AsyncEngine) -> None:
        super().__init__()
        self.engine = engine
        self._session_maker = make_session_maker(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlMirrorStore":
        return cls(make_engine(database_url))

    async def create_schema(self) -> None:
        """Create tables that do not exist yet."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreError(f"Schema creation failed: {e}") from e

    @staticmethod
    def _to_record(row: MirrorRecordRow) -> MirrorRecord:
        return MirrorRecord(
            id=str(row.id),
            entity_type=EntityType(row.entity_type),
            external_id=row.external_id,
            fields=dict(row.fields or {}),
            blobs={blob.name: blob.content_hash for blob in row.blobs},
            created_at=row.created_at,
            synced_at=row.synced_at,
        )

    @staticmethod
    def _apply_attachments(row: MirrorRecordRow, attachments: Attachments) -> None:
        for name, ref in attachments.items():
            row.blobs = [blob for blob in row.blobs if blob.name != name]
            if ref is not None:
                row.blobs.append(MirrorBlobRow(name=name, content_hash=ref.content_hash, data=ref.data))

    async def find_all_by_external_id(
        self, entity_type: EntityType, external_id: str
    ) -> list[MirrorRecord]:
        stmt = (
            select(MirrorRecordRow)
            .where(
                MirrorRecordRow.entity_type == entity_type.value,
                MirrorRecordRow.external_id == external_id,
            )
            .order_by(desc(MirrorRecordRow.created_at), desc(MirrorRecordRow.id))
        )
        try:
            async with self._session_maker() as session:
                result = await session.execute(stmt)
                return [self._to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Lookup of {entity_type.value} {external_id} failed: {e}") from e

    async def list_all(self, entity_type: EntityType) -> list[MirrorRecord]:
        stmt = (
            select(MirrorRecordRow)
            .where(MirrorRecordRow.entity_type == entity_type.value)
            .order_by(desc(MirrorRecordRow.created_at), desc(MirrorRecordRow.id))
        )
        try:
            async with self._session_maker() as session:
                result = await session.execute(stmt)
                return [self._to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Listing {entity_type.value} failed: {e}") from e

    async def delete_record(self, entity_type: EntityType, record_id: str) -> None:
        row_id = _row_id(record_id)
        if row_id is None:
            return
        try:
            async with self._session_maker() as session:
                row = await session.get(MirrorRecordRow, row_id)
                if row is None or row.entity_type != entity_type.value:
                    return
                await session.delete(row)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Delete of {entity_type.value} record {record_id} failed: {e}") from e

    async def _create(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord:
        now = utc_now()
        row = MirrorRecordRow(
            entity_type=entity_type.value,
            external_id=external_id,
            fields=dict(fields),
            created_at=now,
            synced_at=now,
            blobs=[],
        )
        self._apply_attachments(row, attachments)
        try:
            async with self._session_maker() as session:
                session.add(row)
                await session.commit()
                return self._to_record(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Create of {entity_type.value} {external_id} failed: {e}") from e

    async def _update(
        self,
        record: MirrorRecord,
        fields: dict[str, Any],
        attachments: Attachments,
    ) -> MirrorRecord:
        try:
            async with self._session_maker() as session:
                row = await session.get(MirrorRecordRow, int(record.id))
                if row is None:
                    raise StoreError(f"{record.entity_type.value} record {record.id} vanished")
                # Reassign so the JSON column is flagged dirty
                row.fields = {**(row.fields or {}), **fields}
                self._apply_attachments(row, attachments)
                row.synced_at = utc_now()
                await session.commit()
                return self._to_record(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Update of {record.entity_type.value} {record.external_id} failed: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()
