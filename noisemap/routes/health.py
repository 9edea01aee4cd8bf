"""
Health check endpoint.

Used by:
  - Docker HEALTHCHECK instruction
  - Load balancers
  - The mobile app, to tell "API down" from "API up but DB unreachable"

Also reports which store backend the engine is running on, so a degraded
(in-memory) deployment is visible from outside.
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from noisemap.core import database as db_module
from noisemap.core.engine import engine

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected"
    store_backend: str  # "mongo" | "memory"
    environment: str


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check() -> HealthResponse:
    """
    Liveness of the API and its database connection.

    Healthy (HTTP 200) even when the database is disconnected. Store
    endpoints answer 503 meanwhile, unless allow_memory_fallback put the
    engine on in-memory stores (store_backend reports "memory").
    """
    from noisemap.core.config import settings

    db_status = "disconnected"
    try:
        # Access via module reference so tests can patch db_module.db_client
        if db_module.db_client.client is not None:
            await db_module.db_client.client.admin.command("ping")
            db_status = "connected"
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)

    return HealthResponse(
        status="ok",
        version="0.1.0",
        database=db_status,
        store_backend=engine.ensure().backend,
        environment=settings.environment,
    )
