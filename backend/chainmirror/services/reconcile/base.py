"""
Chain Mirror - Reconciler

Brings the mirror of one entity type into agreement with the ledger:

1. Fetch the full authoritative set. Any failure aborts this entity type
   for the pass and the mirror is left untouched.
2. Per ledger record: look up by external id, delete older duplicates,
   fetch blobs whose hash is not yet stored, and write only if something
   differs.
3. Delete mirror records whose external id is no longer on the ledger.
   Only reached when step 1 succeeded in this same pass.
"""

import asyncio
import logging
from typing import Any, ClassVar, Optional

from chainmirror.bridges.ledger import LedgerQueryClient
from chainmirror.core.errors import BlobNotFound, NetworkError, QueryError, StoreError
from chainmirror.core.types import utc_now
from chainmirror.models.records import (
    BlobReference,
    EntitySyncReport,
    EntityType,
    LedgerRecord,
    MirrorRecord,
    SyncCursor,
)
from chainmirror.services.blob_fetcher import BlobFetcher
from chainmirror.services.mirror_store import MirrorStore

logger = logging.getLogger(__name__)


def fields_match(stored: dict[str, Any], desired: dict[str, Any]) -> bool:
    """True when every desired field already holds the desired value."""
    return all(key in stored and stored[key] == value for key, value in desired.items())


class Reconciler:
    """Fetch-diff-apply for one entity type."""

    entity_type: ClassVar[EntityType]

    def __init__(
        self,
        ledger: LedgerQueryClient,
        store: MirrorStore,
        blobs: BlobFetcher,
        concurrency: int = 1,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.blobs = blobs
        self.concurrency = max(1, concurrency)
        self.cursor = SyncCursor(entity_type=self.entity_type)

    @property
    def label(self) -> str:
        return self.entity_type.value

    async def fetch(self) -> list[LedgerRecord]:
        return await self.ledger.query(self.entity_type)

    async def prepare(self) -> None:
        """Per-pass setup run after a successful fetch."""

    def project(self, record: LedgerRecord) -> dict[str, Any]:
        """Fields to write for a ledger record."""
        return record.to_fields()

    async def reconcile(self) -> EntitySyncReport:
        report = EntitySyncReport(entity_type=self.entity_type)
        self.cursor.last_attempt_at = report.started_at
        logger.info(f"[SYNC] Reconciling {self.label} records...")

        try:
            records = await self.fetch()
        except (NetworkError, QueryError) as e:
            report.aborted = True
            report.error = str(e)
            report.finished_at = utc_now()
            self.cursor.last_error = str(e)
            logger.error(f"[SYNC] Skipping {self.label}: {e}")
            return report

        records = self._collapse(records)
        report.fetched = len(records)
        await self.prepare()

        if self.concurrency == 1:
            for record in records:
                await self._apply(record, report)
        else:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(record: LedgerRecord) -> None:
                async with semaphore:
                    await self._apply(record, report)

            await asyncio.gather(*(bounded(record) for record in records), return_exceptions=True)

        await self._delete_orphans({record.external_id for record in records}, report)

        report.finished_at = utc_now()
        self.cursor.completed_passes += 1
        self.cursor.last_success_at = report.finished_at
        failures = len(report.store_errors) + len(report.record_errors)
        self.cursor.last_error = f"{failures} record errors" if failures else None
        logger.info(
            f"[SYNC] {self.label}: fetched={report.fetched} created={report.created} "
            f"updated={report.updated} unchanged={report.unchanged} deleted={report.deleted} "
            f"duplicates={report.duplicates_removed} store_errors={len(report.store_errors)} "
            f"record_errors={len(report.record_errors)}"
        )
        return report

    def _collapse(self, records: list[LedgerRecord]) -> list[LedgerRecord]:
        """One record per external id; the last occurrence wins."""
        by_id: dict[str, LedgerRecord] = {}
        for record in records:
            if record.external_id in by_id:
                logger.warning(f"[SYNC] Ledger returned {self.label} {record.external_id} more than once")
            by_id[record.external_id] = record
        return list(by_id.values())

    async def _apply(self, record: LedgerRecord, report: EntitySyncReport) -> None:
        external_id = record.external_id
        try:
            matches = await self.store.find_all_by_external_id(self.entity_type, external_id)
            existing = matches[0] if matches else None
            if len(matches) > 1:
                logger.warning(
                    f"[SYNC] Found {len(matches)} records for {self.label} {external_id}. Cleaning up..."
                )
                for duplicate in matches[1:]:
                    await self.store.delete_record(self.entity_type, duplicate.id)
                    report.duplicates_removed += 1

            fields = self.project(record)
            attachments = await self._enrich(record, existing, report)

            if existing is not None and not attachments and fields_match(existing.fields, fields):
                report.unchanged += 1
                return

            await self.store.upsert(self.entity_type, external_id, fields, attachments)
            if existing is None:
                report.created += 1
                logger.info(f"[SYNC] Created {self.label} {external_id}")
            else:
                report.updated += 1
        except StoreError as e:
            logger.error(f"[SYNC] Store error for {self.label} {external_id}: {e}")
            report.store_errors.append(f"{external_id}: {e}")
        except Exception as e:
            logger.exception(f"[SYNC] Failed to apply {self.label} {external_id}")
            report.record_errors.append(f"{external_id}: {e}")

    async def _enrich(
        self,
        record: LedgerRecord,
        existing: Optional[MirrorRecord],
        report: EntitySyncReport,
    ) -> dict[str, Optional[BlobReference]]:
        """Attachments to write: new or changed hashes, and removals."""
        attachments: dict[str, Optional[BlobReference]] = {}
        wanted = record.blob_refs()
        stored = existing.blobs if existing else {}

        for name, content_hash in wanted.items():
            if stored.get(name) == content_hash:
                continue
            try:
                attachments[name] = await self.blobs.get(content_hash)
            except (BlobNotFound, NetworkError) as e:
                # Stored without it; the hash still differs next pass, so it is retried
                report.enrichment_failures += 1
                logger.warning(f"[SYNC] No {name} for {self.label} {record.external_id}: {e}")

        for name in stored:
            if name not in wanted:
                attachments[name] = None
        return attachments

    async def _delete_orphans(self, live_ids: set[str], report: EntitySyncReport) -> None:
        try:
            mirrored = await self.store.list_all(self.entity_type)
        except StoreError as e:
            logger.error(f"[SYNC] Orphan scan of {self.label} failed: {e}")
            report.store_errors.append(f"orphan scan: {e}")
            return

        for record in mirrored:
            if record.external_id in live_ids:
                continue
            logger.info(f"[SYNC] Deleting removed {self.label} {record.external_id}")
            try:
                await self.store.delete_record(self.entity_type, record.id)
                report.deleted += 1
            except StoreError as e:
                logger.error(f"[SYNC] Failed to delete orphan {record.id}: {e}")
                report.store_errors.append(f"{record.external_id}: {e}")
