# reliefmatch/repos/mongo.py
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, GEOSPHERE
from pymongo.errors import PyMongoError

from reliefmatch.core.errors import PersistenceError
from reliefmatch.schemas import Coordinate, Donation, GeocodeCacheEntry, Need

KINDS = ("donations", "needs")


def _maybe_oid(x):
    if isinstance(x, ObjectId):
        return x
    if isinstance(x, str) and ObjectId.is_valid(x):
        return ObjectId(x)
    return x


def _geo(c: Coordinate) -> dict:
    return {"type": "Point", "coordinates": [c.lng, c.lat]}


def _to_doc(model) -> Dict[str, Any]:
    doc = model.model_dump()
    doc["_id"] = _maybe_oid(doc.pop("id"))
    if model.coordinates is not None:
        doc["geo"] = _geo(model.coordinates)
    return doc


def _from_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("geo", None)
    return doc


def _wrap_errors(fn):
    @wraps(fn)
    async def inner(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as ex:
            raise PersistenceError(f"{fn.__name__} failed: {ex}") from ex
    return inner


class MongoRepo:
    """
    Motor-backed store.
    Docs keep `coordinates: {lat, lng}` for the app and a GeoJSON `geo` Point for 2dsphere queries.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    def _col(self, kind: str):
        if kind not in KINDS:
            raise ValueError(f"unknown record kind: {kind}")
        return self.db[kind]

    # Donations / Needs
    @_wrap_errors
    async def insert_donation(self, donation: Donation) -> Donation:
        await self.db.donations.replace_one({"_id": _maybe_oid(donation.id)}, _to_doc(donation), upsert=True)
        return donation

    @_wrap_errors
    async def insert_need(self, need: Need) -> Need:
        await self.db.needs.replace_one({"_id": _maybe_oid(need.id)}, _to_doc(need), upsert=True)
        return need

    @_wrap_errors
    async def get_donation(self, donation_id: str) -> Optional[Donation]:
        doc = await self.db.donations.find_one({"_id": _maybe_oid(donation_id)})
        return Donation(**_from_doc(doc)) if doc else None

    @_wrap_errors
    async def get_need(self, need_id: str) -> Optional[Need]:
        doc = await self.db.needs.find_one({"_id": _maybe_oid(need_id)})
        return Need(**_from_doc(doc)) if doc else None

    @_wrap_errors
    async def list_missing_coordinates(self, kind: str, limit: int,
                                       retry_before: Optional[datetime] = None) -> List[Any]:
        clauses: List[Dict[str, Any]] = [{"geocoded_at": None}]
        if retry_before is not None:
            clauses.append({"coordinates": None, "geocoded_at": {"$lt": retry_before}})
        cur = self._col(kind).find({"$or": clauses}).sort("created_at", ASCENDING).limit(limit)
        model = Donation if kind == "donations" else Need
        return [model(**_from_doc(d)) async for d in cur]

    @_wrap_errors
    async def update_geocode(self, kind: str, record_id: str, fields: Dict[str, Any]) -> None:
        update = dict(fields)
        coords = update.get("coordinates")
        if isinstance(coords, Coordinate):
            update["coordinates"] = coords.model_dump()
            update["geo"] = _geo(coords)
        await self._col(kind).update_one({"_id": _maybe_oid(record_id)}, {"$set": update})

    @_wrap_errors
    async def find_open_needs_near(self, center: Coordinate, radius_m: float, limit: int) -> List[Need]:
        if limit <= 0:
            return []  # limit(0) means unlimited to mongo
        # $nearSphere returns nearest first
        cur = self.db.needs.find({
            "status": "open",
            "geo": {
                "$nearSphere": {
                    "$geometry": _geo(center),
                    "$maxDistance": float(radius_m),
                }
            },
        }).limit(limit)
        return [Need(**_from_doc(d)) async for d in cur]

    # Geocoding cache
    @_wrap_errors
    async def get_cached_geocode(self, normalized_address: str) -> Optional[GeocodeCacheEntry]:
        doc = await self.db.geocoding_cache.find_one({"normalized_address": normalized_address})
        if not doc:
            return None
        doc.pop("_id", None)
        return GeocodeCacheEntry(**doc)

    @_wrap_errors
    async def upsert_cached_geocode(self, entry: GeocodeCacheEntry) -> None:
        await self.db.geocoding_cache.update_one(
            {"normalized_address": entry.normalized_address},
            {"$set": entry.model_dump()},
            upsert=True,
        )


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    for kind in KINDS:
        await db[kind].create_index([("status", ASCENDING)], name="status_1")
        await db[kind].create_index([("geocoded_at", ASCENDING)], name="geocoded_at_1")
        await db[kind].create_index([("geo", GEOSPHERE)], name="geo_2dsphere")
    await db.geocoding_cache.create_index(
        [("normalized_address", ASCENDING)], name="normalized_address_1", unique=True
    )
