"""
Store contract tests, run against both InMemoryHotspotStore and
MongoHotspotStore (on FakeDB).
"""

import pytest
from bson import ObjectId

from noisemap.core.errors import ConflictError, NotFoundError, StoreUnavailableError
from noisemap.models.hotspot import GeoPoint
from noisemap.services.hotspot_store import InMemoryHotspotStore, MongoHotspotStore, neumaier_add

DELHI = GeoPoint(lat=28.6139, lng=77.2090)
NEAR_DELHI = GeoPoint(lat=28.6140, lng=77.2091)
NORTH_DELHI = GeoPoint(lat=28.7041, lng=77.1025)


@pytest.fixture(params=["memory", "mongo"])
def store(request, fake_db):
    if request.param == "memory":
        return InMemoryHotspotStore()
    return MongoHotspotStore(fake_db)


class TestCreate:
    async def test_new_hotspot_holds_one_reading(self, store):
        h = await store.create(DELHI, 85.5)
        assert h.report_count == 1
        assert h.average_decibels == 85.5
        assert h.centroid == DELHI
        assert h.version == 1
        assert len(h.id) == 24  # ObjectId hex string

    async def test_created_hotspot_is_readable(self, store):
        h = await store.create(DELHI, 70.0)
        assert (await store.get_by_id(h.id)) == h
        assert await store.count() == 1


class TestFind:
    async def test_find_nearest_within_radius(self, store):
        h = await store.create(DELHI, 80.0)
        assert (await store.find_nearest(NEAR_DELHI, 0.11)).id == h.id

    async def test_find_nearest_none_outside_radius(self, store):
        await store.create(DELHI, 80.0)
        assert await store.find_nearest(NORTH_DELHI, 0.11) is None

    async def test_find_nearest_picks_closest(self, store):
        far = await store.create(GeoPoint(lat=28.6145, lng=77.2090), 60.0)
        close = await store.create(NEAR_DELHI, 60.0)
        found = await store.find_nearest(DELHI, 0.11)
        assert found.id == close.id != far.id

    async def test_equidistant_tie_goes_to_smaller_id(self, store):
        a = await store.create(GeoPoint(lat=0.0, lng=0.0005), 60.0)
        b = await store.create(GeoPoint(lat=0.0, lng=-0.0005), 60.0)
        found = await store.find_nearest(GeoPoint(lat=0.0, lng=0.0), 0.11)
        assert found.id == min(a.id, b.id)

    async def test_find_within_reports_distances_in_order(self, store):
        await store.create(DELHI, 60.0)
        await store.create(NORTH_DELHI, 60.0)
        found = await store.find_within(DELHI, 20.0)
        distances = [d for d, _ in found]
        assert len(found) == 2
        assert distances == sorted(distances)
        assert distances[0] == 0.0

    async def test_find_across_antimeridian(self, store):
        h = await store.create(GeoPoint(lat=-16.5, lng=179.9995), 55.0)
        found = await store.find_nearest(GeoPoint(lat=-16.5, lng=-179.9995), 0.11)
        assert found is not None and found.id == h.id


class TestApplyAbsorb:
    async def test_running_mean_and_version(self, store):
        h = await store.create(DELHI, 85.5)
        updated = await store.apply_absorb(h.id, 90.0)
        assert updated.report_count == 2
        assert updated.average_decibels == pytest.approx(87.75)
        assert updated.version == h.version + 1
        assert updated.centroid == DELHI

    async def test_unknown_hotspot_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.apply_absorb("64b7f0c2a1b2c3d4e5f60718", 70.0)

    async def test_garbage_id_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.apply_absorb("not-an-id", 70.0)

    async def test_mean_does_not_drift(self, store):
        h = await store.create(DELHI, 0.1)
        for _ in range(999):
            h = await store.apply_absorb(h.id, 0.1)
        assert h.report_count == 1000
        assert h.average_decibels == pytest.approx(0.1, rel=1e-15)


class TestMerge:
    async def test_merge_folds_totals_and_hides_duplicate(self, store):
        survivor = await store.create(DELHI, 80.0)
        duplicate = await store.create(NEAR_DELHI, 90.0)
        await store.apply_absorb(duplicate.id, 70.0)

        merged = await store.merge_into(survivor.id, duplicate.id)

        assert merged.id == survivor.id
        assert merged.report_count == 3
        assert merged.average_decibels == pytest.approx(80.0)
        assert await store.get_by_id(duplicate.id) is None
        assert await store.count() == 1
        assert [h.id for _, h in await store.find_within(DELHI, 1.0)] == [survivor.id]

    async def test_absorb_into_merged_hotspot_conflicts(self, store):
        survivor = await store.create(DELHI, 80.0)
        duplicate = await store.create(NEAR_DELHI, 90.0)
        await store.merge_into(survivor.id, duplicate.id)
        with pytest.raises(ConflictError):
            await store.apply_absorb(duplicate.id, 60.0)

    async def test_merge_into_self_conflicts(self, store):
        h = await store.create(DELHI, 80.0)
        with pytest.raises(ConflictError):
            await store.merge_into(h.id, h.id)

    async def test_double_merge_conflicts(self, store):
        survivor = await store.create(DELHI, 80.0)
        duplicate = await store.create(NEAR_DELHI, 90.0)
        await store.merge_into(survivor.id, duplicate.id)
        with pytest.raises(ConflictError):
            await store.merge_into(survivor.id, duplicate.id)


    async def test_merge_into_merged_survivor_folds_into_heir(self, store):
        heir = await store.create(DELHI, 70.0)
        survivor = await store.create(NEAR_DELHI, 80.0)
        duplicate = await store.create(GeoPoint(lat=28.6141, lng=77.2091), 90.0)
        await store.merge_into(heir.id, survivor.id)

        merged = await store.merge_into(survivor.id, duplicate.id)

        assert merged.id == heir.id
        assert merged.report_count == 3
        assert merged.average_decibels == pytest.approx(80.0)
        assert await store.count() == 1

    async def test_resolve_follows_merges(self, store):
        heir = await store.create(DELHI, 70.0)
        survivor = await store.create(NEAR_DELHI, 80.0)
        duplicate = await store.create(GeoPoint(lat=28.6141, lng=77.2091), 90.0)
        await store.merge_into(survivor.id, duplicate.id)
        await store.merge_into(heir.id, survivor.id)

        assert (await store.resolve(duplicate.id)).id == heir.id
        assert (await store.resolve(heir.id)).report_count == 3
        assert await store.resolve("not-an-id") is None
        assert await store.resolve(str(ObjectId())) is None


class TestSeverityOrder:
    async def test_loudest_first_ties_by_count_then_id(self, store):
        quiet = await store.create(GeoPoint(lat=10, lng=10), 50.0)
        loud = await store.create(GeoPoint(lat=20, lng=20), 95.0)
        busy = await store.create(GeoPoint(lat=30, lng=30), 70.0)
        await store.apply_absorb(busy.id, 70.0)
        single = await store.create(GeoPoint(lat=40, lng=40), 70.0)

        ranked = await store.list_by_severity_desc(10)
        assert [h.id for h in ranked] == [loud.id, busy.id, single.id, quiet.id]

    async def test_limit(self, store):
        for i in range(5):
            await store.create(GeoPoint(lat=i, lng=i), 60.0 + i)
        assert len(await store.list_by_severity_desc(3)) == 3


class TestMongoSpecifics:
    async def test_stale_version_is_a_conflict(self, fake_db):
        store = MongoHotspotStore(fake_db)
        h = await store.create(DELHI, 80.0)
        doc = await store._load(h.id)
        # Another writer bumps the version between our read and write
        await fake_db["hotspots"].update_one({"_id": doc["_id"]}, {"$set": {"version": 7}})
        assert await store._compare_and_set(doc, {"report_count": 2}) is False

    async def test_driver_failure_becomes_store_unavailable(self, fake_db):
        store = MongoHotspotStore(fake_db)
        fake_db["hotspots"].fail = True
        with pytest.raises(StoreUnavailableError):
            await store.create(DELHI, 80.0)
        with pytest.raises(StoreUnavailableError):
            await store.find_nearest(DELHI, 0.11)

    async def test_ensure_indexes(self, fake_db):
        await MongoHotspotStore(fake_db).ensure_indexes()
        assert len(fake_db["hotspots"].indexes) == 2

    async def test_tombstoned_document_is_kept(self, fake_db):
        store = MongoHotspotStore(fake_db)
        survivor = await store.create(DELHI, 80.0)
        duplicate = await store.create(NEAR_DELHI, 90.0)
        await store.merge_into(survivor.id, duplicate.id)
        doc = await store._load(duplicate.id)
        assert doc["merged_into"] == survivor.id

    async def test_unfoldable_merge_revives_duplicate(self, fake_db):
        store = _ContendedStore(fake_db, merge_attempts=3)
        survivor = await store.create(DELHI, 80.0)
        duplicate = await store.create(NEAR_DELHI, 90.0)
        store.contended_id = survivor.id

        with pytest.raises(ConflictError):
            await store.merge_into(survivor.id, duplicate.id)

        revived = await store.get_by_id(duplicate.id)
        assert revived is not None
        assert revived.report_count == 1
        assert revived.average_decibels == 90.0
        assert (await store.get_by_id(survivor.id)).report_count == 1
        assert await store.count() == 2


class _ContendedStore(MongoHotspotStore):
    """Another writer bumps contended_id's version right after every read."""

    contended_id = None

    async def _load(self, hotspot_id):
        doc = await super()._load(hotspot_id)
        if hotspot_id == self.contended_id:
            await self._col.update_one({"_id": doc["_id"]}, {"$set": {"version": doc["version"] + 100}})
        return doc


def test_neumaier_add_recovers_lost_bits():
    total, comp = 1e16, 0.0
    for _ in range(10):
        total, comp = neumaier_add(total, comp, 1.0)
    assert total + comp == 1e16 + 10
