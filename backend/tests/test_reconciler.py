"""
Chain Mirror - Reconciler Tests

Mirror agreement with the ledger:
- Idempotent upsert
- Dedup keeps the most recently created record
- Orphan deletion only after a successful fetch
- Blob enrichment failure never aborts the entity sync
"""

import asyncio
from datetime import datetime, timedelta, timezone

from chainmirror.core.errors import NetworkError, QueryError, StoreError
from chainmirror.models.records import EntityType
from chainmirror.services.mirror_store import InMemoryMirrorStore
from chainmirror.services.reconcile import (
    DonationReconciler,
    ProductReconciler,
    ProfileReconciler,
    fields_match,
)
from conftest import make_donation, make_product, make_profile


class TestIdempotency:
    """Applying the same ledger state twice changes nothing the second time."""

    def test_second_pass_writes_nothing(self, ledger, store, blobs):
        ledger.records[EntityType.PROFILE] = [make_profile("owner-1", "Ada"), make_profile("owner-2", "Bo")]
        reconciler = ProfileReconciler(ledger, store, blobs)

        first = asyncio.run(reconciler.reconcile())
        writes_after_first = store.writes
        second = asyncio.run(reconciler.reconcile())

        assert first.created == 2
        assert second.unchanged == 2
        assert second.created == second.updated == 0
        assert store.writes == writes_after_first
        records = asyncio.run(store.list_all(EntityType.PROFILE))
        assert sorted(r.external_id for r in records) == ["owner-1", "owner-2"]

    def test_changed_field_updates_in_place(self, ledger, store, blobs):
        reconciler = ProfileReconciler(ledger, store, blobs)
        ledger.records[EntityType.PROFILE] = [make_profile("owner-1", "Ada")]
        asyncio.run(reconciler.reconcile())
        before = asyncio.run(store.find_by_external_id(EntityType.PROFILE, "owner-1"))

        ledger.records[EntityType.PROFILE] = [make_profile("owner-1", "Ada L.")]
        report = asyncio.run(reconciler.reconcile())

        updated = asyncio.run(store.find_by_external_id(EntityType.PROFILE, "owner-1"))
        assert report.updated == 1
        assert updated.id == before.id
        assert updated.fields["name"] == "Ada L."

    def test_duplicate_ids_in_one_response_collapse(self, ledger, store, blobs):
        """The last occurrence of a repeated ledger id wins."""
        ledger.records[EntityType.PROFILE] = [make_profile("owner-1", "old"), make_profile("owner-1", "new")]

        report = asyncio.run(ProfileReconciler(ledger, store, blobs).reconcile())

        records = asyncio.run(store.list_all(EntityType.PROFILE))
        assert report.fetched == 1
        assert len(records) == 1
        assert records[0].fields["name"] == "new"

    def test_fields_match_ignores_extra_stored_fields(self):
        assert fields_match({"a": 1, "owner_name": "x"}, {"a": 1})
        assert not fields_match({"a": 1}, {"a": 2})
        assert not fields_match({}, {"a": 1})


class TestDedup:
    """Pre-existing duplicates collapse to the newest record."""

    def test_keeps_most_recently_created(self, ledger, store, blobs):
        now = datetime.now(timezone.utc)
        store.insert(EntityType.PROFILE, "owner-1", {"owner": "owner-1", "name": "stale"}, created_at=now - timedelta(hours=2))
        newest = store.insert(EntityType.PROFILE, "owner-1", {"owner": "owner-1", "name": "stale"}, created_at=now)
        store.insert(EntityType.PROFILE, "owner-1", {"owner": "owner-1", "name": "stale"}, created_at=now - timedelta(hours=1))
        ledger.records[EntityType.PROFILE] = [make_profile("owner-1", "Ada")]

        report = asyncio.run(ProfileReconciler(ledger, store, blobs).reconcile())

        records = asyncio.run(store.find_all_by_external_id(EntityType.PROFILE, "owner-1"))
        assert report.duplicates_removed == 2
        assert [r.id for r in records] == [newest.id]
        assert records[0].fields["name"] == "Ada"


class TestOrphans:
    """Orphan cleanup is gated on this pass's fetch succeeding."""

    def test_orphan_deleted_after_successful_fetch(self, ledger, store, blobs):
        store.insert(EntityType.DONATION, "99", {"donation_id": "99"})
        ledger.records[EntityType.DONATION] = [make_donation(1)]

        report = asyncio.run(DonationReconciler(ledger, store, blobs).reconcile())

        ids = [r.external_id for r in asyncio.run(store.list_all(EntityType.DONATION))]
        assert ids == ["1"]
        assert report.deleted == 1

    def test_empty_ledger_set_clears_mirror(self, ledger, store, blobs):
        """A successful empty fetch is authoritative."""
        store.insert(EntityType.PRODUCT, "p1", {"product_id": "p1"})

        report = asyncio.run(ProductReconciler(ledger, store, blobs).reconcile())

        assert report.deleted == 1
        assert asyncio.run(store.list_all(EntityType.PRODUCT)) == []

    def test_network_error_leaves_mirror_untouched(self, ledger, store, blobs):
        store.insert(EntityType.PROFILE, "owner-9", {"owner": "owner-9"})
        ledger.failures[EntityType.PROFILE] = NetworkError("unreachable")
        reconciler = ProfileReconciler(ledger, store, blobs)

        report = asyncio.run(reconciler.reconcile())

        assert report.aborted
        assert report.deleted == 0
        assert len(asyncio.run(store.list_all(EntityType.PROFILE))) == 1
        assert reconciler.cursor.last_error == "unreachable"
        assert not reconciler.cursor.has_full_fetch

    def test_query_error_after_success_still_gates(self, ledger, store, blobs):
        """A prior successful pass does not license deletes in a failed one."""
        reconciler = ProfileReconciler(ledger, store, blobs)
        ledger.records[EntityType.PROFILE] = [make_profile("owner-1")]
        asyncio.run(reconciler.reconcile())
        store.insert(EntityType.PROFILE, "owner-x", {"owner": "owner-x"})
        ledger.failures[EntityType.PROFILE] = QueryError("bad query")

        report = asyncio.run(reconciler.reconcile())

        assert report.aborted
        assert reconciler.cursor.has_full_fetch
        assert len(asyncio.run(store.list_all(EntityType.PROFILE))) == 2


class TestProducts:
    """Product reconciliation, enrichment and denormalisation."""

    def test_price_change_and_removal(self, ledger, store, blobs):
        """p1/p2 at 5/10, then only p1 at 7: one record, p1 at 7."""
        reconciler = ProductReconciler(ledger, store, blobs)
        ledger.records[EntityType.PRODUCT] = [make_product("p1", price="5"), make_product("p2", price="10")]
        asyncio.run(reconciler.reconcile())

        records = asyncio.run(store.list_all(EntityType.PRODUCT))
        assert sorted((r.external_id, r.fields["price"]) for r in records) == [("p1", "5"), ("p2", "10")]

        ledger.records[EntityType.PRODUCT] = [make_product("p1", price="7")]
        asyncio.run(reconciler.reconcile())

        records = asyncio.run(store.list_all(EntityType.PRODUCT))
        assert [(r.external_id, r.fields["price"]) for r in records] == [("p1", "7")]

    def test_missing_blob_does_not_abort(self, ledger, store, blobs):
        """The record is stored without its preview; others still sync."""
        ledger.records[EntityType.PRODUCT] = [
            make_product("p1", image_hash="missing"),
            make_product("p2", image_hash="h2"),
        ]
        ledger.blobs["h2"] = b"\x89PNG preview"

        report = asyncio.run(ProductReconciler(ledger, store, blobs).reconcile())

        assert report.created == 2
        assert report.enrichment_failures == 1
        assert store.attachment(EntityType.PRODUCT, "p1", "image_preview") is None
        assert store.attachment(EntityType.PRODUCT, "p2", "image_preview") == b"\x89PNG preview"

    def test_transient_blob_failure_retried_next_pass(self, ledger, store, blobs):
        ledger.records[EntityType.PRODUCT] = [make_product("p1", image_hash="h1")]
        ledger.blob_errors["h1"] = NetworkError("timeout")
        reconciler = ProductReconciler(ledger, store, blobs)
        asyncio.run(reconciler.reconcile())
        assert store.attachment(EntityType.PRODUCT, "p1", "image_preview") is None

        del ledger.blob_errors["h1"]
        ledger.blobs["h1"] = b"preview"
        report = asyncio.run(reconciler.reconcile())

        assert report.updated == 1
        assert store.attachment(EntityType.PRODUCT, "p1", "image_preview") == b"preview"

    def test_unchanged_hash_not_refetched(self, ledger, store, blobs):
        ledger.records[EntityType.PRODUCT] = [make_product("p1", image_hash="h1")]
        ledger.blobs["h1"] = b"preview"
        reconciler = ProductReconciler(ledger, store, blobs)

        asyncio.run(reconciler.reconcile())
        report = asyncio.run(reconciler.reconcile())

        assert report.unchanged == 1
        assert ledger.blob_calls == ["h1"]

    def test_removed_preview_drops_attachment(self, ledger, store, blobs):
        ledger.records[EntityType.PRODUCT] = [make_product("p1", image_hash="h1")]
        ledger.blobs["h1"] = b"preview"
        reconciler = ProductReconciler(ledger, store, blobs)
        asyncio.run(reconciler.reconcile())

        ledger.records[EntityType.PRODUCT] = [make_product("p1")]
        asyncio.run(reconciler.reconcile())

        assert store.attachment(EntityType.PRODUCT, "p1", "image_preview") is None

    def test_owner_name_from_profiles_mirror(self, ledger, store, blobs):
        ledger.records[EntityType.PROFILE] = [make_profile("owner-1", "Ada")]
        ledger.records[EntityType.PRODUCT] = [make_product("p1", author="owner-1"), make_product("p2", author="owner-2")]

        async def scenario():
            await ProfileReconciler(ledger, store, blobs).reconcile()
            await ProductReconciler(ledger, store, blobs).reconcile()

        asyncio.run(scenario())

        p1 = asyncio.run(store.find_by_external_id(EntityType.PRODUCT, "p1"))
        p2 = asyncio.run(store.find_by_external_id(EntityType.PRODUCT, "p2"))
        assert p1.fields["owner_name"] == "Ada"
        assert p2.fields["owner_name"] == ""

    def test_concurrent_records_match_sequential(self, ledger, store, blobs):
        ledger.records[EntityType.PRODUCT] = [make_product(f"p{i}", image_hash="shared") for i in range(6)]
        ledger.blobs["shared"] = b"img"

        report = asyncio.run(ProductReconciler(ledger, store, blobs, concurrency=3).reconcile())

        assert report.created == 6
        assert ledger.blob_calls == ["shared"]
        assert len(asyncio.run(store.list_all(EntityType.PRODUCT))) == 6


class FailingWritesStore(InMemoryMirrorStore):
    """Rejects writes for one external id."""

    def __init__(self, bad_id: str) -> None:
        super().__init__()
        self.bad_id = bad_id

    async def _create(self, entity_type, external_id, fields, attachments):
        if external_id == self.bad_id:
            raise StoreError("write rejected")
        return await super()._create(entity_type, external_id, fields, attachments)


class TestStoreErrors:
    """One failed write never stops the rest of the pass."""

    def test_store_error_is_collected(self, ledger, blobs):
        store = FailingWritesStore("owner-2")
        ledger.records[EntityType.PROFILE] = [make_profile(f"owner-{i}") for i in range(1, 4)]
        reconciler = ProfileReconciler(ledger, store, blobs)

        report = asyncio.run(reconciler.reconcile())

        assert report.created == 2
        assert len(report.store_errors) == 1
        assert not report.aborted
        assert reconciler.cursor.last_error == "1 record errors"

    def test_unexpected_record_failure_does_not_stop_pass(self, ledger, store, blobs):
        """A record that cannot be projected is reported; later records and orphan cleanup still run."""
        store.insert(EntityType.DONATION, "99", {"donation_id": "99"})
        ledger.records[EntityType.DONATION] = [make_donation(1, timestamp=2**63), make_donation(2)]
        reconciler = DonationReconciler(ledger, store, blobs)

        report = asyncio.run(reconciler.reconcile())

        ids = [r.external_id for r in asyncio.run(store.list_all(EntityType.DONATION))]
        assert ids == ["2"]
        assert report.created == 1
        assert report.deleted == 1
        assert len(report.record_errors) == 1
        assert report.record_errors[0].startswith("1: ")
        assert not report.aborted
        assert reconciler.cursor.last_error == "1 record errors"

    def test_unexpected_record_failure_with_concurrency(self, ledger, store, blobs):
        store.insert(EntityType.DONATION, "99", {"donation_id": "99"})
        ledger.records[EntityType.DONATION] = [make_donation(i) for i in range(2, 6)]
        ledger.records[EntityType.DONATION].insert(1, make_donation(1, timestamp=2**63))

        report = asyncio.run(DonationReconciler(ledger, store, blobs, concurrency=3).reconcile())

        ids = sorted(r.external_id for r in asyncio.run(store.list_all(EntityType.DONATION)))
        assert ids == ["2", "3", "4", "5"]
        assert report.created == 4
        assert report.deleted == 1
        assert len(report.record_errors) == 1


class TestConcurrentUpserts:
    """Concurrent upserts of one key leave a single record."""

    def test_same_key_upserts_create_one_record(self, store):
        async def scenario():
            await asyncio.gather(
                *(store.upsert(EntityType.PRODUCT, "p1", {"product_id": "p1", "name": f"v{i}"}) for i in range(5))
            )
            return await store.find_all_by_external_id(EntityType.PRODUCT, "p1")

        records = asyncio.run(scenario())

        assert len(records) == 1
        assert records[0].fields["name"] == "v4"

    def test_key_locks_released_after_use(self, store):
        async def scenario():
            await asyncio.gather(*(store.upsert(EntityType.PRODUCT, f"p{i}", {"n": i}) for i in range(3)))
            await store.delete(EntityType.PRODUCT, "p0")

        asyncio.run(scenario())

        assert len(store._key_locks) == 0
