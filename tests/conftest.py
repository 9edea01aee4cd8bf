"""
pytest configuration and shared fixtures for the NoiseMap API tests.

Key concern: tests must not require a live MongoDB. We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so the health check
     correctly reports "disconnected", a valid test-mode state.
  3. Rebuilding the engine on empty in-memory stores before every test.

Mongo-backed stores are exercised against FakeDB below, an in-process
stand-in for the few Motor collection methods the stores call.
"""

import copy
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from pymongo.errors import AutoReconnect

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORE_BACKEND", "memory")


# ── FakeDB ────────────────────────────────────────────────────────────────────

_MISSING = object()


def _lookup(doc, dotted):
    value = doc
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(doc, query):
    for key, cond in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue
        value = _lookup(doc, key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            if value is _MISSING:
                return False
            for op, arg in cond.items():
                if op == "$gte" and not value >= arg:
                    return False
                if op == "$lte" and not value <= arg:
                    return False
                if op == "$in" and value not in arg:
                    return False
        elif cond is None:
            # Mongo: {field: null} matches null and missing
            if value is not _MISSING and value is not None:
                return False
        elif value is _MISSING or value != cond:
            return False
    return True


class FakeCursor:
    def __init__(self, docs, collection):
        self._docs = docs
        self._collection = collection
        self._skip = 0
        self._limit = None

    def sort(self, keys):
        for key, direction in reversed(keys):
            self._docs.sort(key=lambda d: _lookup(d, key), reverse=direction < 0)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def __aiter__(self):
        self._collection._check()
        end = None if self._limit is None else self._skip + self._limit
        for doc in self._docs[self._skip:end]:
            yield copy.deepcopy(doc)


class FakeCollection:
    def __init__(self):
        self._docs = {}
        self.indexes = []
        self.fail = False      # every call raises AutoReconnect while set

    def _check(self):
        if self.fail:
            raise AutoReconnect("connection refused")

    async def create_index(self, keys, **_kwargs):
        self._check()
        self.indexes.append(keys)

    async def insert_one(self, doc):
        from bson import ObjectId

        self._check()
        oid = ObjectId()
        self._docs[oid] = {**copy.deepcopy(doc), "_id": oid}
        result = MagicMock()
        result.inserted_id = oid
        return result

    async def find_one(self, query, _projection=None):
        self._check()
        for doc in self._docs.values():
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, _projection=None):
        return FakeCursor([d for d in self._docs.values() if _matches(d, query or {})], self)

    async def update_one(self, query, update):
        self._check()
        result = MagicMock()
        result.matched_count = 0
        result.modified_count = 0
        for doc in self._docs.values():
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                result.matched_count = 1
                result.modified_count = 1
                break
        return result

    async def delete_one(self, query):
        self._check()
        result = MagicMock()
        result.deleted_count = 0
        for oid, doc in list(self._docs.items()):
            if _matches(doc, query):
                del self._docs[oid]
                result.deleted_count = 1
                break
        return result

    async def count_documents(self, query):
        self._check()
        return sum(1 for d in self._docs.values() if _matches(d, query))


class FakeDB:
    def __init__(self):
        self._cols = {}

    def __getitem__(self, name):
        if name not in self._cols:
            self._cols[name] = FakeCollection()
        return self._cols[name]


@pytest.fixture()
def fake_db():
    return FakeDB()


# ── App fixtures ──────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_db():
    """
    Patch the MongoDB lifecycle and start every test on a fresh engine.

    - connect_to_mongo / close_mongo_connection → no-op AsyncMocks
    - db_client.client / db_client.db → None ("disconnected")
    - engine → empty in-memory stores, new event bus
    - limiter → counters cleared
    """
    with (
        patch("noisemap.main.connect_to_mongo", new_callable=AsyncMock),
        patch("noisemap.main.close_mongo_connection", new_callable=AsyncMock),
    ):
        import noisemap.core.database as db_module
        from noisemap.core.engine import engine
        from noisemap.core.rate_limit import limiter

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None
        engine.configure(None)
        limiter.reset()

        yield engine

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001, mock_db must run first
    """
    HTTPX async test client wired to the FastAPI app.

    ASGITransport does not run the lifespan; mock_db already built the engine.
    """
    from noisemap.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def auth_header():
    """Build a Bearer header for a reporter id."""
    from noisemap.core.security import create_access_token

    def _header(reporter_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(reporter_id)}"}

    return _header
