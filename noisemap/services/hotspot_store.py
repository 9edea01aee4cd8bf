"""
hotspot_store.py: durable storage and spatial retrieval of hotspots.

Two implementations share one contract (HotspotStore):

  InMemoryHotspotStore  process-local, grid-indexed. Used by tests, demos and
                        the opt-in degraded mode (allow_memory_fallback).
  MongoHotspotStore     Motor-backed `hotspots` collection.

CONTRACT
────────
- Snapshots returned are frozen Hotspot models; nothing handed out can be
  mutated behind the aggregator's back.
- apply_absorb() and merge_into() are atomic compare-and-update operations
  keyed on `version`. A lost race raises ConflictError and the caller
  retries the whole absorb.
- Hotspots merged away during de-duplication are tombstoned
  (`merged_into`), never deleted, and are invisible to every read.
  merge_into() folds into the survivor's live heir when the survivor was
  itself merged away, and leaves the duplicate live if it cannot fold.
  resolve() follows `merged_into` to the hotspot now holding the readings.
- The running mean is kept as a compensated (Neumaier) sum next to the
  count, so average_decibels == Σd / n to within IEEE-754 rounding no
  matter how many reports were absorbed.

Distance semantics come from services/geo.py only: the database is used
for a bounding-box prefilter, the exact radius check runs in Python.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from noisemap.core.database import mongo_errors
from noisemap.core.errors import ConflictError, NotFoundError
from noisemap.models.hotspot import GeoPoint, Hotspot
from noisemap.services.geo import bounding_box, rank_within

logger = logging.getLogger(__name__)

NearbyHotspot = tuple[float, Hotspot]


def neumaier_add(total: float, compensation: float, value: float) -> tuple[float, float]:
    """Add value to a compensated running sum; returns (total, compensation)."""
    t = total + value
    if abs(total) >= abs(value):
        compensation += (total - t) + value
    else:
        compensation += (value - t) + total
    return t, compensation


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class HotspotStore(ABC):
    """Keyed collection of hotspots with spatial lookup."""

    @abstractmethod
    async def find_within(self, point: GeoPoint, radius_km: float) -> list[NearbyHotspot]:
        """Live hotspots whose centroid is within radius_km, nearest first."""

    async def find_nearest(self, point: GeoPoint, radius_km: float) -> Optional[Hotspot]:
        """Closest live hotspot within radius_km (ties: smaller id), or None."""
        matches = await self.find_within(point, radius_km)
        return matches[0][1] if matches else None

    @abstractmethod
    async def create(self, point: GeoPoint, initial_decibels: float) -> Hotspot: ...

    @abstractmethod
    async def apply_absorb(self, hotspot_id: str, decibels: float) -> Hotspot: ...

    @abstractmethod
    async def merge_into(self, survivor_id: str, duplicate_id: str) -> Hotspot: ...

    @abstractmethod
    async def get_by_id(self, hotspot_id: str) -> Optional[Hotspot]: ...

    @abstractmethod
    async def resolve(self, hotspot_id: str) -> Optional[Hotspot]:
        """The live hotspot holding hotspot_id's readings, following merges."""

    @abstractmethod
    async def list_by_severity_desc(self, limit: int) -> list[Hotspot]: ...

    @abstractmethod
    async def count(self) -> int: ...


# ── In-memory ─────────────────────────────────────────────────────────────────

_GRID_DEG = 0.01          # index cell, roughly 1.1 km of latitude
_MAX_GRID_CELLS = 4096    # wider searches fall back to a full scan


@dataclass
class _HotspotRecord:
    id: str
    centroid: GeoPoint
    decibel_sum: float
    decibel_compensation: float
    report_count: int
    created_at: datetime
    updated_at: datetime
    version: int = 1
    merged_into: Optional[str] = None

    def add(self, total: float, compensation: float, count: int) -> None:
        self.decibel_sum, self.decibel_compensation = neumaier_add(
            self.decibel_sum, self.decibel_compensation, total
        )
        self.decibel_sum, self.decibel_compensation = neumaier_add(
            self.decibel_sum, self.decibel_compensation, compensation
        )
        self.report_count += count
        self.version += 1
        self.updated_at = _now()

    def snapshot(self) -> Hotspot:
        return Hotspot(
            id=self.id,
            centroid=self.centroid,
            average_decibels=(self.decibel_sum + self.decibel_compensation) / self.report_count,
            report_count=self.report_count,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
        )


class InMemoryHotspotStore(HotspotStore):
    """
    Process-local store. Every read-modify-write happens under one
    threading.Lock without awaiting in between, so it is atomic for both
    asyncio tasks and threads.
    """

    def __init__(self):
        self._records: dict[str, _HotspotRecord] = {}
        self._grid: dict[tuple[int, int], set[str]] = {}
        self._mutex = threading.Lock()

    @staticmethod
    def _cell(lat: float, lng: float) -> tuple[int, int]:
        return math.floor(lat / _GRID_DEG), math.floor(lng / _GRID_DEG)

    def _candidates(self, point: GeoPoint, radius_km: float) -> list[_HotspotRecord]:
        cells: list[tuple[int, int]] = []
        for box in bounding_box(point, radius_km):
            lo = self._cell(box.min_lat, box.min_lng)
            hi = self._cell(box.max_lat, box.max_lng)
            if (hi[0] - lo[0] + 1) * (hi[1] - lo[1] + 1) > _MAX_GRID_CELLS:
                return [r for r in self._records.values() if r.merged_into is None]
            cells.extend(
                (row, col)
                for row in range(lo[0], hi[0] + 1)
                for col in range(lo[1], hi[1] + 1)
            )

        found: dict[str, _HotspotRecord] = {}
        for cell in cells:
            for hotspot_id in self._grid.get(cell, ()):
                record = self._records[hotspot_id]
                if record.merged_into is None:
                    found[hotspot_id] = record
        return list(found.values())

    async def find_within(self, point: GeoPoint, radius_km: float) -> list[NearbyHotspot]:
        with self._mutex:
            snapshots = [r.snapshot() for r in self._candidates(point, radius_km)]
        return rank_within(point, radius_km, snapshots, lambda h: h.centroid)

    async def create(self, point: GeoPoint, initial_decibels: float) -> Hotspot:
        now = _now()
        record = _HotspotRecord(
            id=str(ObjectId()),
            centroid=point,
            decibel_sum=float(initial_decibels),
            decibel_compensation=0.0,
            report_count=1,
            created_at=now,
            updated_at=now,
        )
        with self._mutex:
            self._records[record.id] = record
            self._grid.setdefault(self._cell(point.lat, point.lng), set()).add(record.id)
            return record.snapshot()

    async def apply_absorb(self, hotspot_id: str, decibels: float) -> Hotspot:
        with self._mutex:
            record = self._records.get(hotspot_id)
            if record is None:
                raise NotFoundError(f"Hotspot {hotspot_id} not found")
            if record.merged_into is not None:
                raise ConflictError(f"Hotspot {hotspot_id} was merged into {record.merged_into}")
            record.add(float(decibels), 0.0, 1)
            return record.snapshot()

    async def merge_into(self, survivor_id: str, duplicate_id: str) -> Hotspot:
        if survivor_id == duplicate_id:
            raise ConflictError("Cannot merge a hotspot into itself")
        with self._mutex:
            survivor = self._records.get(survivor_id)
            duplicate = self._records.get(duplicate_id)
            if survivor is None or duplicate is None:
                missing = survivor_id if survivor is None else duplicate_id
                raise NotFoundError(f"Hotspot {missing} not found")
            if duplicate.merged_into is not None:
                raise ConflictError(f"Hotspot {duplicate_id} already merged")
            heir = self._heir(survivor)
            if heir is None or heir.id == duplicate_id:
                raise ConflictError(f"Hotspot {survivor_id} has no live heir to merge into")

            duplicate.merged_into = heir.id
            duplicate.version += 1
            duplicate.updated_at = _now()
            heir.add(duplicate.decibel_sum, duplicate.decibel_compensation, duplicate.report_count)
            return heir.snapshot()

    def _heir(self, record: Optional[_HotspotRecord]) -> Optional[_HotspotRecord]:
        seen: set[str] = set()
        while record is not None and record.merged_into is not None:
            if record.id in seen:
                return None
            seen.add(record.id)
            record = self._records.get(record.merged_into)
        return record

    async def get_by_id(self, hotspot_id: str) -> Optional[Hotspot]:
        with self._mutex:
            record = self._records.get(hotspot_id)
            if record is None or record.merged_into is not None:
                return None
            return record.snapshot()

    async def resolve(self, hotspot_id: str) -> Optional[Hotspot]:
        with self._mutex:
            heir = self._heir(self._records.get(hotspot_id))
            return heir.snapshot() if heir is not None else None

    async def list_by_severity_desc(self, limit: int) -> list[Hotspot]:
        with self._mutex:
            live = [r.snapshot() for r in self._records.values() if r.merged_into is None]
        live.sort(key=lambda h: (-h.average_decibels, -h.report_count, h.id))
        return live[:limit]

    async def count(self) -> int:
        with self._mutex:
            return sum(1 for r in self._records.values() if r.merged_into is None)


# ── MongoDB ───────────────────────────────────────────────────────────────────

def _box_query(point: GeoPoint, radius_km: float) -> dict:
    boxes = [
        {
            "centroid.lat": {"$gte": box.min_lat, "$lte": box.max_lat},
            "centroid.lng": {"$gte": box.min_lng, "$lte": box.max_lng},
        }
        for box in bounding_box(point, radius_km)
    ]
    query: dict = {"merged_into": None}
    if len(boxes) == 1:
        query.update(boxes[0])
    else:
        query["$or"] = boxes
    return query


def _doc_to_hotspot(doc: dict) -> Hotspot:
    total = doc["decibel_sum"] + doc.get("decibel_compensation", 0.0)
    return Hotspot(
        id=str(doc["_id"]),
        centroid=GeoPoint(**doc["centroid"]),
        average_decibels=total / doc["report_count"],
        report_count=doc["report_count"],
        created_at=doc["created_at"],
        updated_at=doc["updated_at"],
        version=doc.get("version", 1),
    )


def _to_oid(hotspot_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(hotspot_id)
    except (InvalidId, TypeError):
        return None


class MongoHotspotStore(HotspotStore):
    """
    Hotspots in MongoDB. Updates are conditional on the `version` the new
    state was computed from; modified_count == 0 means another writer got
    there first.
    """

    def __init__(self, db, collection: str = "hotspots", merge_attempts: int = 5):
        self._col = db[collection]
        self._merge_attempts = merge_attempts

    async def ensure_indexes(self) -> None:
        with mongo_errors("hotspot index creation"):
            await self._col.create_index([("centroid.lat", 1), ("centroid.lng", 1)])
            await self._col.create_index([("average_decibels", -1)])

    async def find_within(self, point: GeoPoint, radius_km: float) -> list[NearbyHotspot]:
        with mongo_errors("hotspot radius query"):
            docs = [doc async for doc in self._col.find(_box_query(point, radius_km))]
        return rank_within(point, radius_km, [_doc_to_hotspot(d) for d in docs], lambda h: h.centroid)

    async def create(self, point: GeoPoint, initial_decibels: float) -> Hotspot:
        now = _now()
        doc = {
            "centroid": {"lat": point.lat, "lng": point.lng},
            "average_decibels": float(initial_decibels),
            "report_count": 1,
            "decibel_sum": float(initial_decibels),
            "decibel_compensation": 0.0,
            "version": 1,
            "merged_into": None,
            "created_at": now,
            "updated_at": now,
        }
        with mongo_errors("hotspot insert"):
            result = await self._col.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _doc_to_hotspot(doc)

    async def _load(self, hotspot_id: str) -> dict:
        oid = _to_oid(hotspot_id)
        doc = None
        if oid is not None:
            with mongo_errors("hotspot lookup"):
                doc = await self._col.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError(f"Hotspot {hotspot_id} not found")
        return doc

    async def _compare_and_set(self, doc: dict, changes: dict) -> bool:
        changes = {**changes, "version": doc["version"] + 1, "updated_at": _now()}
        with mongo_errors("hotspot update"):
            result = await self._col.update_one(
                {"_id": doc["_id"], "version": doc["version"], "merged_into": None},
                {"$set": changes},
            )
        if result.modified_count == 0:
            return False
        doc.update(changes)
        return True

    @staticmethod
    def _added(doc: dict, total: float, compensation: float, count: int) -> dict:
        s, c = neumaier_add(doc["decibel_sum"], doc.get("decibel_compensation", 0.0), total)
        s, c = neumaier_add(s, c, compensation)
        n = doc["report_count"] + count
        return {
            "decibel_sum": s,
            "decibel_compensation": c,
            "report_count": n,
            "average_decibels": (s + c) / n,
        }

    async def apply_absorb(self, hotspot_id: str, decibels: float) -> Hotspot:
        doc = await self._load(hotspot_id)
        if doc.get("merged_into") is not None:
            raise ConflictError(f"Hotspot {hotspot_id} was merged into {doc['merged_into']}")
        if not await self._compare_and_set(doc, self._added(doc, float(decibels), 0.0, 1)):
            raise ConflictError(f"Hotspot {hotspot_id} changed concurrently")
        return _doc_to_hotspot(doc)

    async def merge_into(self, survivor_id: str, duplicate_id: str) -> Hotspot:
        if survivor_id == duplicate_id:
            raise ConflictError("Cannot merge a hotspot into itself")

        duplicate = await self._load(duplicate_id)
        if duplicate.get("merged_into") is not None:
            raise ConflictError(f"Hotspot {duplicate_id} already merged")
        # Tombstone first: from here on no absorb can land in the duplicate,
        # so its totals are final when they are folded into the survivor.
        if not await self._compare_and_set(duplicate, {"merged_into": survivor_id}):
            raise ConflictError(f"Hotspot {duplicate_id} changed concurrently")

        target_id = survivor_id
        for _ in range(self._merge_attempts):
            survivor = await self._load(target_id)
            heir_id = survivor.get("merged_into")
            if heir_id is not None:
                # Another worker merged the survivor away; fold into its heir.
                if heir_id == duplicate_id:
                    break
                target_id = heir_id
                continue
            changes = self._added(
                survivor,
                duplicate["decibel_sum"],
                duplicate.get("decibel_compensation", 0.0),
                duplicate["report_count"],
            )
            if await self._compare_and_set(survivor, changes):
                return _doc_to_hotspot(survivor)

        await self._revive(duplicate)
        raise ConflictError(f"Could not merge hotspot {duplicate_id} into {survivor_id}")

    async def _revive(self, duplicate: dict) -> None:
        """Undo a tombstone whose totals were never folded anywhere."""
        with mongo_errors("hotspot merge rollback"):
            result = await self._col.update_one(
                {
                    "_id": duplicate["_id"],
                    "version": duplicate["version"],
                    "merged_into": duplicate["merged_into"],
                },
                {"$set": {"merged_into": None, "version": duplicate["version"] + 1, "updated_at": _now()}},
            )
        if result.modified_count == 0:
            logger.error(
                "Hotspot %s tombstoned but neither folded nor revived; its readings are orphaned",
                duplicate["_id"],
            )
            return
        logger.warning("Merge of hotspot %s abandoned; hotspot is live again", duplicate["_id"])

    async def get_by_id(self, hotspot_id: str) -> Optional[Hotspot]:
        oid = _to_oid(hotspot_id)
        if oid is None:
            return None
        with mongo_errors("hotspot lookup"):
            doc = await self._col.find_one({"_id": oid, "merged_into": None})
        return _doc_to_hotspot(doc) if doc else None

    async def resolve(self, hotspot_id: str) -> Optional[Hotspot]:
        seen: set[str] = set()
        current = hotspot_id
        while current not in seen:
            seen.add(current)
            oid = _to_oid(current)
            if oid is None:
                return None
            with mongo_errors("hotspot lookup"):
                doc = await self._col.find_one({"_id": oid})
            if doc is None:
                return None
            if doc.get("merged_into") is None:
                return _doc_to_hotspot(doc)
            current = doc["merged_into"]
        return None

    async def list_by_severity_desc(self, limit: int) -> list[Hotspot]:
        cursor = (
            self._col.find({"merged_into": None})
            .sort([("average_decibels", -1), ("report_count", -1), ("_id", 1)])
            .limit(limit)
        )
        with mongo_errors("hotspot ranking"):
            docs = [doc async for doc in cursor]
        return [_doc_to_hotspot(d) for d in docs]

    async def count(self) -> int:
        with mongo_errors("hotspot count"):
            return await self._col.count_documents({"merged_into": None})
