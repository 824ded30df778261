# reliefmatch/services/geocode.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

import httpx
from urllib.parse import quote

from reliefmatch.core.config import MAPBOX_QUALITY, NOMINATIM_QUALITY, QualityTable, Settings
from reliefmatch.core.errors import GeocodeUnavailableError, InvalidInputError, ProviderUnavailableError
from reliefmatch.schemas import Coordinate, GeocodeCacheEntry, GeocodeResult

logger = logging.getLogger(__name__)

MAPBOX_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
DEFAULT_CONFIDENCE = 0.7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def _confidence(relevance) -> float:
    return DEFAULT_CONFIDENCE if relevance is None else float(relevance)


def _failed(address: str, provider: str) -> GeocodeResult:
    return GeocodeResult(
        coordinates=Coordinate(lat=0.0, lng=0.0),
        formatted_address=address,
        quality="failed",
        confidence=0.0,
        provider=provider,
    )


class GeocodeProvider:
    """One geocoding backend. Raises ProviderUnavailableError; returns quality='failed' on no match."""
    name = "provider"

    async def geocode(self, address: str) -> GeocodeResult:
        raise NotImplementedError

    async def _get(self, client: httpx.AsyncClient, url: str, **kwargs):
        try:
            r = await client.get(url, **kwargs)
            r.raise_for_status()
        except httpx.HTTPStatusError as ex:
            raise ProviderUnavailableError(self.name, f"HTTP {ex.response.status_code}") from ex
        except httpx.HTTPError as ex:
            raise ProviderUnavailableError(self.name, str(ex) or type(ex).__name__) from ex
        try:
            return r.json()
        except ValueError as ex:
            raise ProviderUnavailableError(self.name, "invalid JSON") from ex


class MapboxGeocoder(GeocodeProvider):
    name = "mapbox"

    def __init__(self, client: httpx.AsyncClient, access_token: Optional[str],
                 country: Optional[str] = "US", quality: QualityTable = MAPBOX_QUALITY):
        self.client = client
        self.access_token = access_token
        self.country = country
        self.quality = quality

    async def geocode(self, address: str) -> GeocodeResult:
        if not self.access_token:
            raise ProviderUnavailableError(self.name, "access token not configured")

        params = {
            "access_token": self.access_token,
            "limit": 1,
            "types": "address,poi,place,postcode,locality,neighborhood",
        }
        if self.country:
            params["country"] = self.country
        js = await self._get(self.client, MAPBOX_URL.format(query=quote(address, safe="")), params=params)

        features = js.get("features") if isinstance(js, dict) else None
        if not features:
            return _failed(address, self.name)

        f = features[0]
        lng, lat = f["center"]
        place_type = (f.get("place_type") or [None])[0]
        return GeocodeResult(
            coordinates=Coordinate(lat=float(lat), lng=float(lng)),
            formatted_address=f.get("place_name") or address,
            quality=self.quality.classify(place_type),
            confidence=_confidence(f.get("relevance")),
            provider=self.name,
        )


class NominatimGeocoder(GeocodeProvider):
    name = "nominatim"

    def __init__(self, client: httpx.AsyncClient, url: str, user_agent: str,
                 countrycodes: Optional[str] = None, quality: QualityTable = NOMINATIM_QUALITY):
        self.client = client
        self.url = url
        self.user_agent = user_agent
        self.countrycodes = countrycodes
        self.quality = quality

    async def geocode(self, address: str) -> GeocodeResult:
        params = {
            "q": address,
            "format": "json",
            "limit": 1,
            "addressdetails": 1,
            "accept-language": "en",
        }
        if self.countrycodes:
            params["countrycodes"] = self.countrycodes
        # Nominatim usage policy requires an identifying UA
        js = await self._get(self.client, self.url, params=params, headers={"User-Agent": self.user_agent})

        if not isinstance(js, list) or not js:
            return _failed(address, self.name)

        hit = js[0]
        if hit.get("lat") is None or hit.get("lon") is None:
            return _failed(address, self.name)
        return GeocodeResult(
            coordinates=Coordinate(lat=float(hit["lat"]), lng=float(hit["lon"])),
            formatted_address=hit.get("display_name") or address,
            quality=self.quality.classify(hit.get("type"), hit.get("category") or hit.get("class")),
            confidence=DEFAULT_CONFIDENCE,
            provider=self.name,
        )


class GeocodingService:
    """
    Cache-first geocoder over an ordered provider chain.
      - fresh cache hits never touch a provider
      - first exact/approximate result wins and is cached
      - failed results are never cached
    """

    def __init__(self, repo, providers: Sequence[GeocodeProvider], cache_ttl_days: int = 30,
                 clock: Callable[[], datetime] = _utcnow):
        self.repo = repo
        self.providers: List[GeocodeProvider] = list(providers)
        self.cache_ttl = timedelta(days=cache_ttl_days)
        self.clock = clock

    async def geocode(self, address: str) -> GeocodeResult:
        key = normalize_address(address)
        if not key:
            raise InvalidInputError("Address is required for geocoding")

        cached = await self.check_cache(key)
        if cached:
            return cached

        errors: List[Exception] = []
        for provider in self.providers:
            try:
                result = await provider.geocode(address.strip())
            except ProviderUnavailableError as ex:
                logger.warning("Geocoder %s unavailable for %r: %s", provider.name, key, ex.reason)
                errors.append(ex)
                continue
            except (AttributeError, KeyError, TypeError, ValueError) as ex:
                logger.warning("Geocoder %s returned an unexpected payload for %r: %r", provider.name, key, ex)
                errors.append(ProviderUnavailableError(provider.name, f"unexpected payload: {ex!r}"))
                continue
            if result.quality in ("exact", "approximate"):
                await self.cache_result(key, result)
                return result
            logger.info("Geocoder %s had no usable match for %r", provider.name, key)

        logger.error("All geocoding providers failed for %r", key)
        raise GeocodeUnavailableError(address, errors)

    async def check_cache(self, key: str) -> Optional[GeocodeResult]:
        entry = await self.repo.get_cached_geocode(key)
        if not entry or entry.quality == "failed":
            return None
        updated = entry.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        if self.clock() - updated > self.cache_ttl:
            return None  # expired
        return GeocodeResult(
            coordinates=entry.coordinates,
            formatted_address=entry.formatted_address or key,
            quality=entry.quality,
            confidence=entry.confidence,
            provider="cache",
        )

    async def cache_result(self, key: str, result: GeocodeResult) -> None:
        if not key or result.quality == "failed":
            return
        await self.repo.upsert_cached_geocode(GeocodeCacheEntry(
            normalized_address=key,
            coordinates=result.coordinates,
            formatted_address=result.formatted_address,
            quality=result.quality,
            confidence=result.confidence,
            updated_at=self.clock(),
        ))


def build_geocoder(repo, client: httpx.AsyncClient, settings: Settings) -> GeocodingService:
    providers = [
        MapboxGeocoder(client, settings.mapbox_access_token, settings.mapbox_country,
                       quality=settings.mapbox_quality),
        NominatimGeocoder(client, settings.nominatim_url, settings.nominatim_user_agent,
                          settings.nominatim_countrycodes, quality=settings.nominatim_quality),
    ]
    return GeocodingService(repo, providers, cache_ttl_days=settings.geocode_cache_ttl_days)
