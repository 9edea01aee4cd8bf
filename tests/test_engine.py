"""Tests for core/engine.py backend selection and the MongoDB connect step."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from noisemap.core.config import settings
from noisemap.core.engine import Engine
from noisemap.core.errors import StoreUnavailableError
from noisemap.services.hotspot_store import InMemoryHotspotStore, MongoHotspotStore
from noisemap.services.report_store import InMemoryReportStore, MongoReportStore


class TestEngine:
    def test_memory_backend_without_database(self, monkeypatch):
        monkeypatch.setattr(settings, "store_backend", "memory")
        engine = Engine().configure(None)
        assert engine.backend == "memory"
        assert isinstance(engine.hotspots, InMemoryHotspotStore)
        assert isinstance(engine.reports, InMemoryReportStore)

    def test_memory_backend_ignores_database(self, fake_db, monkeypatch):
        monkeypatch.setattr(settings, "store_backend", "memory")
        assert Engine().configure(fake_db).backend == "memory"

    def test_mongo_backend_without_database_refuses_memory(self, monkeypatch):
        monkeypatch.setattr(settings, "store_backend", "mongo")
        monkeypatch.setattr(settings, "allow_memory_fallback", False)
        engine = Engine()
        with pytest.raises(StoreUnavailableError):
            engine.configure(None)
        assert engine.backend is None

    def test_mongo_backend_falls_back_only_when_allowed(self, monkeypatch):
        monkeypatch.setattr(settings, "store_backend", "mongo")
        monkeypatch.setattr(settings, "allow_memory_fallback", True)
        assert Engine().configure(None).backend == "memory"

    async def test_mongo_backend_builds_indexes(self, fake_db, monkeypatch):
        monkeypatch.setattr(settings, "store_backend", "mongo")
        engine = Engine()
        await engine.start(fake_db)
        assert engine.backend == "mongo"
        assert isinstance(engine.hotspots, MongoHotspotStore)
        assert isinstance(engine.reports, MongoReportStore)
        assert fake_db["hotspots"].indexes
        assert fake_db["reports"].indexes

    async def test_unreachable_mongo_keeps_mongo_stores(self, fake_db, monkeypatch):
        monkeypatch.setattr(settings, "store_backend", "mongo")
        monkeypatch.setattr(settings, "allow_memory_fallback", False)
        fake_db["hotspots"].fail = True
        fake_db["reports"].fail = True

        engine = Engine()
        await engine.start(fake_db)

        assert engine.backend == "mongo"
        with pytest.raises(StoreUnavailableError):
            await engine.ingestion.submit(
                {"reporter_id": "u1", "latitude": 28.6, "longitude": 77.2,
                 "decibels": 80.0, "noise_type": "traffic"}
            )

    def test_services_share_stores(self):
        engine = Engine().configure(None)
        assert engine.queries.hotspots is engine.hotspots
        assert engine.ingestion.reports is engine.reports
        assert engine.aggregator.store is engine.hotspots
        assert engine.ingestion.events is engine.events

    def test_ensure_builds_lazily(self):
        engine = Engine()
        assert engine.backend is None
        assert engine.ensure().backend == "memory"


class TestConnect:
    @pytest.fixture()
    def unreachable_client(self, monkeypatch):
        import noisemap.core.database as db_module

        fake_client = MagicMock()
        fake_client.__getitem__.return_value = "noisemap-db"
        fake_client.admin.command = AsyncMock(side_effect=RuntimeError("no server"))
        monkeypatch.setattr(db_module, "AsyncIOMotorClient", MagicMock(return_value=fake_client))
        return fake_client

    async def test_failed_ping_keeps_database_handle(self, unreachable_client, monkeypatch):
        import noisemap.core.database as db_module

        monkeypatch.setattr(settings, "allow_memory_fallback", False)
        await db_module.connect_to_mongo()
        assert db_module.get_db() == "noisemap-db"
        unreachable_client.close.assert_not_called()

    async def test_failed_ping_drops_handle_when_fallback_allowed(self, unreachable_client, monkeypatch):
        import noisemap.core.database as db_module

        monkeypatch.setattr(settings, "allow_memory_fallback", True)
        await db_module.connect_to_mongo()
        assert db_module.get_db() is None
        unreachable_client.close.assert_called_once()
