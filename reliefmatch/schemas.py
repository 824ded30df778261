from typing import Optional, Literal, Any, Dict, get_args
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field

from reliefmatch.core.config import GeocodeQuality

# --------------------------
# Enumerations
# --------------------------
Category = Literal[
    "Medical Supplies",
    "Food & Nutrition",
    "Clothing & Textiles",
    "Comfort Items",
    "Technology",
    "Hygiene Products",
    "Educational Materials",
    "Other",
]
CATEGORIES = get_args(Category)
Urgency = Literal["none", "low", "medium", "high", "critical"]
DonationStatus = Literal["pending", "available", "matched"]
NeedStatus = Literal["open", "closed"]
MatchQuality = Literal["excellent", "good", "fair", "poor"]
TravelProfile = Literal["driving", "walking", "cycling"]
RecordKind = Literal["donations", "needs"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --------------------------
# Geo
# --------------------------
class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    northeast: Coordinate
    southwest: Coordinate


# --------------------------
# Donations & Needs
# --------------------------
class _Geocoded(BaseModel):
    id: str
    item: str
    category: Category
    quantity: int = Field(ge=1)
    location_text: str = ""
    coordinates: Optional[Coordinate] = None
    formatted_address: Optional[str] = None
    geocode_quality: Optional[GeocodeQuality] = None
    geocoded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Donation(_Geocoded):
    donor_ref: str
    description: Optional[str] = None
    status: DonationStatus = "pending"


class Need(_Geocoded):
    organization_ref: str
    urgency: Urgency = "medium"
    status: NeedStatus = "open"


# --------------------------
# Geocoding
# --------------------------
class GeocodeResult(BaseModel):
    coordinates: Coordinate
    formatted_address: str
    quality: GeocodeQuality
    confidence: float = Field(ge=0, le=1)
    provider: Optional[str] = None


class GeocodeCacheEntry(BaseModel):
    normalized_address: str
    coordinates: Coordinate
    formatted_address: str
    quality: GeocodeQuality
    confidence: float = Field(ge=0, le=1)
    updated_at: datetime = Field(default_factory=_utcnow)


# --------------------------
# Distance
# --------------------------
class RouteLeg(BaseModel):
    distance_m: float = Field(ge=0)
    duration_s: float = Field(ge=0)


class TravelEstimate(BaseModel):
    distance_km: float = Field(ge=0)
    straight_line_km: float = Field(ge=0)
    driving_time_minutes: float = Field(ge=0)
    logistics_cost: float = Field(ge=0)
    source: str = "straight_line"


# --------------------------
# Matching
# --------------------------
class MatchScore(BaseModel):
    total: float = Field(ge=0, le=1)
    category: float = Field(ge=0, le=1)
    distance: float = Field(ge=0, le=1)
    urgency: float = Field(ge=0, le=1)
    quantity: float = Field(ge=0, le=1)
    item_similarity: float = Field(ge=0, le=1)
    recency: float = Field(ge=0, le=1)


class ScoredMatch(BaseModel):
    need: Need
    score: MatchScore
    distance_km: float = Field(ge=0)
    driving_time_minutes: float = Field(ge=0)
    logistics_cost: float = Field(ge=0)
    match_quality: MatchQuality


# --------------------------
# API payloads
# --------------------------
class GeocodeIn(BaseModel):
    address: str


class TravelIn(BaseModel):
    origin: Coordinate
    destination: Coordinate
    profile: Optional[TravelProfile] = None


class WorkerStatus(BaseModel):
    running: bool
    passes: int
    last_pass: Dict[str, Any] = {}
    last_error: Optional[str] = None
