from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

GeocodeQuality = Literal["exact", "approximate", "failed"]


class QualityTable(BaseModel):
    """Maps a provider's place/feature types onto the three quality tiers."""
    exact: List[str] = []
    approximate: List[str] = []
    fallback: GeocodeQuality = "failed"

    def classify(self, *types: Optional[str]) -> GeocodeQuality:
        seen = [t for t in types if t]
        if any(t in self.exact for t in seen):
            return "exact"
        if any(t in self.approximate for t in seen):
            return "approximate"
        return self.fallback


# Mapbox place types: https://docs.mapbox.com/api/search/geocoding/#data-types
MAPBOX_QUALITY = QualityTable(
    exact=["address", "poi", "postcode"],
    approximate=["place", "locality", "neighborhood", "region"],
    fallback="failed",
)

# Nominatim returns a coordinate for anything it matches, so unknown types are approximate
NOMINATIM_QUALITY = QualityTable(
    exact=["house", "building", "commercial", "retail", "industrial", "apartments"],
    approximate=["road", "neighbourhood", "suburb", "village", "town", "city"],
    fallback="approximate",
)


class MatchWeights(BaseModel):
    category: float = 0.25
    distance: float = 0.25
    urgency: float = 0.20
    quantity: float = 0.15
    item_similarity: float = 0.10
    recency: float = 0.05


class QualityThresholds(BaseModel):
    excellent: float = 0.8
    good: float = 0.6
    fair: float = 0.4


class Settings(BaseSettings):
    # storage
    use_mongo: bool = False
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "reliefmatch"

    # providers
    mapbox_access_token: Optional[str] = None
    mapbox_country: Optional[str] = "US"
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    nominatim_user_agent: str = "ReliefMatch/1.0 (mailto:admin@example.com)"
    nominatim_countrycodes: Optional[str] = "us"
    osrm_base_url: Optional[str] = None
    routing_profile: Literal["driving", "walking", "cycling"] = "driving"
    http_timeout_s: float = 12.0

    # geocoding
    geocode_cache_ttl_days: int = 30
    mapbox_quality: QualityTable = MAPBOX_QUALITY
    nominatim_quality: QualityTable = NOMINATIM_QUALITY

    # matching
    match_weights: MatchWeights = MatchWeights()
    quality_thresholds: QualityThresholds = QualityThresholds()
    min_match_score: float = 0.2
    max_distance_score_km: float = 100.0
    recency_window_days: float = 30.0
    average_speed_kph: float = 50.0
    logistics_base_cost: float = 5.0
    logistics_cost_per_km: float = 0.5
    match_concurrency: int = 8

    # backfill worker
    worker_enabled: bool = True
    worker_batch_size: int = 10
    worker_batch_delay_s: float = 5.0
    worker_retry_after_hours: float = 24.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_nested_delimiter="__")


@lru_cache
def get_settings() -> Settings:
    return Settings()


URGENCY_SCORES: Dict[str, float] = {
    "critical": 1.0,
    "high": 0.75,
    "medium": 0.5,
    "low": 0.25,
    "none": 0.1,
}
