"""
NoiseMap API: application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups, and
manages the MongoDB connection and engine lifecycle.

Extension points:
  - Add new route groups with app.include_router() below
  - Add new middleware in the middleware block
  - Change startup behaviour in the lifespan context manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from noisemap.core.config import settings
from noisemap.core.database import close_mongo_connection, connect_to_mongo, get_db
from noisemap.core.engine import engine
from noisemap.core.errors import NoiseMapError
from noisemap.core.rate_limit import limiter
from noisemap.routes.health import router as health_router
from noisemap.routes.hotspots import router as hotspots_router
from noisemap.routes.reports import router as reports_router

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Code before `yield` runs on startup; code after runs on shutdown.

    The engine is built after the connection attempt so it can pick the
    Mongo stores, or in-memory ones when the database is unreachable.
    """
    logger.info("Starting NoiseMap API (env: %s)", settings.environment)
    await connect_to_mongo()
    await engine.start(get_db())
    yield
    logger.info("Shutting down NoiseMap API")
    await close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="NoiseMap API",
    description=(
        "Crowd-sourced noise reports aggregated into geographic hotspots. "
        "Decibel readings come from phone microphones and are indicative only."
    ),
    version="0.1.0",
    lifespan=lifespan,
    # Disable docs in production to reduce attack surface
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Attach the limiter to app state so slowapi can find it.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Errors ────────────────────────────────────────────────────────────────────
# Service-layer errors carry their own status code; the body matches
# HTTPException's {"detail": "..."} shape.
@app.exception_handler(NoiseMapError)
async def noisemap_error_handler(request: Request, exc: NoiseMapError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ─── Middleware ─────────────────────────────────────────────────────────────────
# CORS: allow the mobile web build and the dashboard to call the API.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(reports_router)
app.include_router(hotspots_router)


@app.get("/", tags=["root"])
async def root():
    """API root: basic metadata."""
    return {
        "name": "NoiseMap API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
