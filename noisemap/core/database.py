"""
MongoDB connection management using Motor (async driver).

Architecture decision: single DatabaseClient instance shared across all
requests via a module-level singleton. The engine (core/engine.py) builds
the Mongo-backed stores from it at startup.

Local dev: connects to the Docker Compose mongo container.
Production: connects to MongoDB Atlas (same code, different URI).

The connection is opened in FastAPI's lifespan (startup) and closed
on shutdown.
"""

import logging
import re
from contextlib import contextmanager
from typing import Iterator

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from noisemap.core.config import settings
from noisemap.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    A class rather than bare globals so tests can replace .client and .db.
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton, all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection and validate it with a ping.

    Called once at app startup (via lifespan). If the ping fails the API
    still starts. The Motor handle is kept, so store calls raise
    StoreUnavailableError (503) until MongoDB is reachable again, unless
    settings.allow_memory_fallback asks for in-memory stores instead.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        # certifi's CA bundle makes Atlas TLS work without system cert setup
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
            tz_aware=True,  # created_at ordering compares with datetime.now(tz=utc)
        )
        db_client.db = db_client.client[settings.mongo_db_name]
    except Exception as exc:
        logger.error("Could not create MongoDB client: %s", exc)
        db_client.client = None
        db_client.db = None
        return

    try:
        await db_client.client.admin.command("ping")
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        if settings.allow_memory_fallback:
            logger.warning(
                "MongoDB unavailable at startup: %s. "
                "API running in degraded mode with in-memory stores.",
                exc,
            )
            db_client.client.close()
            db_client.client = None
            db_client.db = None
        else:
            logger.error(
                "MongoDB unavailable at startup: %s. "
                "Store operations will fail with 503 until it is reachable.",
                exc,
            )


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """Return the Motor database, or None when no client is held."""
    return db_client.db


@contextmanager
def mongo_errors(operation: str) -> Iterator[None]:
    """
    Translate driver failures into StoreUnavailableError.

        with mongo_errors("hotspot insert"):
            await collection.insert_one(doc)
    """
    try:
        yield
    except PyMongoError as exc:
        logger.warning("MongoDB %s failed: %s", operation, exc)
        raise StoreUnavailableError(f"Store unavailable during {operation}") from exc


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
