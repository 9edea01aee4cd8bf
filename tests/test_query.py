"""
Tests for services/query.py.

The facade must agree with the aggregator: every ingested report is found
within the cluster radius of the hotspot that absorbed it.
"""

import pytest

from noisemap.core.errors import NotFoundError, ValidationError
from noisemap.models.hotspot import GeoPoint
from noisemap.services.aggregator import Aggregator
from noisemap.services.hotspot_store import InMemoryHotspotStore, MongoHotspotStore
from noisemap.services.ingestion import IngestionService
from noisemap.services.query import QueryFacade
from noisemap.services.report_store import InMemoryReportStore, MongoReportStore, ReportFilters

DELHI = GeoPoint(lat=28.6139, lng=77.2090)

SAMPLE_REPORTS = [
    {"reporter_id": "u1", "latitude": 28.6139, "longitude": 77.2090, "decibels": 85.5, "noise_type": "traffic"},
    {"reporter_id": "u1", "latitude": 28.6140, "longitude": 77.2091, "decibels": 90.0, "noise_type": "construction"},
    {"reporter_id": "u2", "latitude": 28.7041, "longitude": 77.1025, "decibels": 92.3, "noise_type": "events"},
    {"reporter_id": "u2", "latitude": 28.5355, "longitude": 77.3910, "decibels": 55.0, "noise_type": "other"},
]


@pytest.fixture(params=["memory", "mongo"])
def stack(request, fake_db):
    if request.param == "memory":
        reports, hotspots = InMemoryReportStore(), InMemoryHotspotStore()
    else:
        reports, hotspots = MongoReportStore(fake_db), MongoHotspotStore(fake_db)
    ingestion = IngestionService(reports, Aggregator(hotspots, cluster_radius_km=0.11))
    return ingestion, QueryFacade(reports, hotspots)


@pytest.fixture()
async def seeded(stack):
    ingestion, queries = stack
    results = [await ingestion.submit(r) for r in SAMPLE_REPORTS]
    return queries, results


class TestRadiusQueries:
    async def test_reports_near_sorted_by_distance(self, seeded):
        queries, results = seeded
        found = await queries.reports_near(DELHI, 1.0)
        assert [r.id for r in found] == [results[0].report.id, results[1].report.id]

    async def test_reports_near_filters(self, seeded):
        queries, results = seeded
        found = await queries.reports_near(DELHI, 50.0, ReportFilters(noise_types=frozenset({"events", "other"})))
        assert {r.id for r in found} == {results[2].report.id, results[3].report.id}

        loud = await queries.reports_near(DELHI, 50.0, ReportFilters(min_decibels=90.0, max_decibels=92.3))
        assert {r.decibels for r in loud} == {90.0, 92.3}

    async def test_every_report_is_near_its_hotspot(self, seeded):
        queries, results = seeded
        for result in results:
            nearby = await queries.reports_near(result.hotspot.centroid, 0.11)
            assert result.report.id in {r.id for r in nearby}

    async def test_hotspots_near(self, seeded):
        queries, results = seeded
        ranked = await queries.hotspots_near_ranked(DELHI, 15.0)
        assert [h.id for _, h in ranked] == [results[0].hotspot.id, results[2].hotspot.id]
        assert ranked[0][0] == 0.0

    @pytest.mark.parametrize("radius", [0, -1])
    async def test_non_positive_radius_rejected(self, seeded, radius):
        queries, _ = seeded
        with pytest.raises(ValidationError):
            await queries.reports_near(DELHI, radius)
        with pytest.raises(ValidationError):
            await queries.hotspots_near(DELHI, radius)

    async def test_inverted_decibel_range_rejected(self, seeded):
        queries, _ = seeded
        with pytest.raises(ValidationError):
            await queries.reports_near(DELHI, 1.0, ReportFilters(min_decibels=80, max_decibels=70))


class TestRankings:
    async def test_top_hotspots(self, seeded):
        queries, results = seeded
        top = await queries.top_hotspots(2)
        assert [h.id for h in top] == [results[2].hotspot.id, results[0].hotspot.id]

    async def test_high_noise_hotspots(self, seeded):
        queries, _ = seeded
        loud = await queries.high_noise_hotspots(threshold_db=75.0)
        assert [round(h.average_decibels, 2) for h in loud] == [92.3, 87.75]

    async def test_zero_limit_rejected(self, seeded):
        queries, _ = seeded
        with pytest.raises(ValidationError):
            await queries.top_hotspots(0)


class TestLookups:
    async def test_get_report_and_hotspot(self, seeded):
        queries, results = seeded
        assert (await queries.get_report(results[0].report.id)).decibels == 85.5
        assert (await queries.get_hotspot(results[0].hotspot.id)).report_count == 2

    async def test_missing_ids_raise_not_found(self, seeded):
        queries, _ = seeded
        with pytest.raises(NotFoundError):
            await queries.get_report("64b7f0c2a1b2c3d4e5f60718")
        with pytest.raises(NotFoundError):
            await queries.get_hotspot("nope")

    async def test_list_reports_newest_first_with_total(self, seeded):
        queries, results = seeded
        items, total = await queries.list_reports(limit=2)
        assert total == 4
        assert [r.id for r in items] == [results[3].report.id, results[2].report.id]

        page2, _ = await queries.list_reports(limit=2, offset=2)
        assert [r.id for r in page2] == [results[1].report.id, results[0].report.id]

    async def test_list_reports_filters(self, seeded):
        queries, _ = seeded
        items, total = await queries.list_reports(reporter_id="u2", noise_type="events")
        assert total == 1 and items[0].decibels == 92.3

    async def test_reporter_summary(self, seeded):
        queries, _ = seeded
        count, mean = await queries.reporter_summary("u1")
        assert count == 2
        assert mean == pytest.approx(87.75)
        assert await queries.reporter_summary("nobody") == (0, None)
