"""
engine.py: wires stores, aggregator, ingestion and queries together.

One Engine per process, built in the FastAPI lifespan:

  store_backend="memory"                    → in-memory stores
  store_backend="mongo" with a database     → Motor-backed stores
  store_backend="mongo", no database        → in-memory stores only if
                                              allow_memory_fallback is set,
                                              otherwise StoreUnavailableError

A Motor database whose server is down still counts as "a database": the
stores then raise StoreUnavailableError per request instead of accepting
reports into memory that a restart would lose.

Routes never build services themselves; they depend on get_ingestion /
get_queries / get_events. Tests call engine.configure(None) to start each
case from empty in-memory stores.
"""

import logging
from typing import Optional

from noisemap.core.config import settings
from noisemap.core.database import get_db
from noisemap.core.errors import StoreUnavailableError
from noisemap.services.aggregator import Aggregator
from noisemap.services.events import EventBus
from noisemap.services.hotspot_store import HotspotStore, InMemoryHotspotStore, MongoHotspotStore
from noisemap.services.ingestion import IngestionService
from noisemap.services.query import QueryFacade
from noisemap.services.report_store import InMemoryReportStore, MongoReportStore, ReportStore

logger = logging.getLogger(__name__)


class Engine:
    hotspots: HotspotStore
    reports: ReportStore
    aggregator: Aggregator
    events: EventBus
    ingestion: IngestionService
    queries: QueryFacade

    def __init__(self):
        self.backend: Optional[str] = None

    def configure(self, db=None) -> "Engine":
        """(Re)build every service. db is a Motor database or None."""
        if settings.store_backend == "mongo" and db is not None:
            self.hotspots = MongoHotspotStore(db)
            self.reports = MongoReportStore(db)
            self.backend = "mongo"
        elif settings.store_backend == "mongo" and not settings.allow_memory_fallback:
            raise StoreUnavailableError(
                "MongoDB is not configured and allow_memory_fallback is off"
            )
        else:
            if settings.store_backend == "mongo":
                logger.warning("MongoDB not available, hotspots and reports are kept in memory only")
            self.hotspots = InMemoryHotspotStore()
            self.reports = InMemoryReportStore()
            self.backend = "memory"

        self.aggregator = Aggregator(self.hotspots)
        self.events = EventBus(queue_size=settings.event_queue_size)
        self.ingestion = IngestionService(self.reports, self.aggregator, self.events)
        self.queries = QueryFacade(self.reports, self.hotspots)
        logger.info(
            "Engine ready (backend=%s, cluster radius=%.3f km)",
            self.backend, self.aggregator.cluster_radius_km,
        )
        return self

    async def start(self, db=None) -> None:
        self.configure(db)
        if self.backend == "mongo":
            try:
                await self.hotspots.ensure_indexes()
                await self.reports.ensure_indexes()
            except StoreUnavailableError as exc:
                # Requests fail with 503 until MongoDB is back; indexes are
                # created on the next start.
                logger.error("Skipped index creation: %s", exc)

    def ensure(self) -> "Engine":
        if self.backend is None:
            self.configure(get_db())
        return self


# Module-level singleton, like db_client
engine = Engine()


def get_ingestion() -> IngestionService:
    return engine.ensure().ingestion


def get_queries() -> QueryFacade:
    return engine.ensure().queries


def get_events() -> EventBus:
    return engine.ensure().events
