# reliefmatch/repos/inmemory.py
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from reliefmatch.schemas import Coordinate, Donation, GeocodeCacheEntry, Need
from reliefmatch.services.geo import distance_km


def _id() -> str:
    return uuid.uuid4().hex


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class InMemoryRepo:
    """Dict-backed store for dev and tests. Same surface as MongoRepo."""

    def __init__(self):
        self.donations: Dict[str, Donation] = {}
        self.needs: Dict[str, Need] = {}
        self.geocoding_cache: Dict[str, GeocodeCacheEntry] = {}

    def _table(self, kind: str) -> Dict[str, Any]:
        if kind == "donations":
            return self.donations
        if kind == "needs":
            return self.needs
        raise ValueError(f"unknown record kind: {kind}")

    # Donations / Needs
    async def insert_donation(self, donation: Donation) -> Donation:
        self.donations[donation.id] = donation
        return donation

    async def insert_need(self, need: Need) -> Need:
        self.needs[need.id] = need
        return need

    async def get_donation(self, donation_id: str) -> Optional[Donation]:
        return self.donations.get(donation_id)

    async def get_need(self, need_id: str) -> Optional[Need]:
        return self.needs.get(need_id)

    async def list_missing_coordinates(self, kind: str, limit: int,
                                       retry_before: Optional[datetime] = None) -> List[Any]:
        out = []
        for rec in self._table(kind).values():
            if rec.geocoded_at is None:
                out.append(rec)
            elif rec.coordinates is None and retry_before and _aware(rec.geocoded_at) < retry_before:
                out.append(rec)
        out.sort(key=lambda r: _aware(r.created_at))
        return out[:limit]

    async def update_geocode(self, kind: str, record_id: str, fields: Dict[str, Any]) -> None:
        table = self._table(kind)
        rec = table.get(record_id)
        if rec is None:
            return
        table[record_id] = rec.model_copy(update=fields)

    async def find_open_needs_near(self, center: Coordinate, radius_m: float, limit: int) -> List[Need]:
        hits = []
        for n in self.needs.values():
            if n.status != "open" or n.coordinates is None:
                continue
            d = distance_km(center, n.coordinates)
            if d * 1000.0 <= radius_m:
                hits.append((d, n))
        hits.sort(key=lambda x: x[0])
        return [n for _, n in hits[:limit]]

    # Geocoding cache
    async def get_cached_geocode(self, normalized_address: str) -> Optional[GeocodeCacheEntry]:
        return self.geocoding_cache.get(normalized_address)

    async def upsert_cached_geocode(self, entry: GeocodeCacheEntry) -> None:
        self.geocoding_cache[entry.normalized_address] = entry
