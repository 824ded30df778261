# reliefmatch/services/routing.py
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from reliefmatch.core.config import Settings
from reliefmatch.core.errors import NoRouteFoundError, ProviderUnavailableError
from reliefmatch.schemas import Coordinate, Need, RouteLeg, TravelEstimate
from .geo import distance_km

logger = logging.getLogger(__name__)

MAPBOX_DIRECTIONS_URL = "https://api.mapbox.com/directions/v5/mapbox/{profile}/{coords}"


def _lnglat(points: Sequence[Coordinate]) -> str:
    # both Mapbox and OSRM want lon,lat;lon,lat
    return ";".join(f"{p.lng},{p.lat}" for p in points)


class RoutingProvider:
    name = "router"

    async def route(self, origin: Coordinate, destination: Coordinate, profile: str) -> RouteLeg:
        raise NotImplementedError

    async def _fetch(self, client: httpx.AsyncClient, url: str, params: dict) -> dict:
        try:
            r = await client.get(url, params=params)
            r.raise_for_status()
        except httpx.HTTPStatusError as ex:
            raise ProviderUnavailableError(self.name, f"HTTP {ex.response.status_code}") from ex
        except httpx.HTTPError as ex:
            raise ProviderUnavailableError(self.name, str(ex) or type(ex).__name__) from ex
        try:
            data = r.json()
        except ValueError as ex:
            raise ProviderUnavailableError(self.name, "invalid JSON") from ex
        if not isinstance(data, dict) or not data.get("routes"):
            raise NoRouteFoundError(self.name, "no route found")
        return data


class MapboxDirections(RoutingProvider):
    """Mapbox Directions API. Requires an access token."""
    name = "mapbox"

    def __init__(self, client: httpx.AsyncClient, access_token: Optional[str]):
        self.client = client
        self.access_token = access_token

    async def route(self, origin: Coordinate, destination: Coordinate, profile: str = "driving") -> RouteLeg:
        if not self.access_token:
            raise ProviderUnavailableError(self.name, "access token not configured")
        url = MAPBOX_DIRECTIONS_URL.format(profile=profile, coords=_lnglat([origin, destination]))
        params = {
            "access_token": self.access_token,
            "geometries": "geojson",
            "overview": "simplified",
            "alternatives": "false",
            "steps": "false",
        }
        data = await self._fetch(self.client, url, params)
        route = data["routes"][0]
        return RouteLeg(distance_m=float(route["distance"]), duration_s=float(route["duration"]))


class OSRMRouter(RoutingProvider):
    """
    OSRM public or self-hosted instance (free). No key needed.
    """
    name = "osrm"

    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str]):
        self.client = client
        self.base_url = (base_url or "").rstrip("/")

    async def route(self, origin: Coordinate, destination: Coordinate, profile: str = "driving") -> RouteLeg:
        if not self.base_url:
            raise ProviderUnavailableError(self.name, "base URL not configured")
        url = f"{self.base_url}/route/v1/{profile}/{_lnglat([origin, destination])}"
        params = {"overview": "false", "steps": "false"}
        data = await self._fetch(self.client, url, params)
        route = data["routes"][0]
        return RouteLeg(distance_m=float(route["distance"]), duration_s=float(route["duration"]))


class DistanceService:
    """Road distance via the routing chain, straight-line estimate when every router fails."""

    def __init__(self, providers: Sequence[RoutingProvider], repo=None, profile: str = "driving",
                 average_speed_kph: float = 50.0, base_cost: float = 5.0, cost_per_km: float = 0.5):
        self.providers: List[RoutingProvider] = list(providers)
        self.repo = repo
        self.profile = profile
        self.average_speed_kph = average_speed_kph
        self.base_cost = base_cost
        self.cost_per_km = cost_per_km

    def estimate_driving_time(self, km: float) -> float:
        return (km / self.average_speed_kph) * 60.0

    def estimate_logistics_cost(self, km: float) -> float:
        return self.base_cost + km * self.cost_per_km

    async def estimate_travel(self, origin: Coordinate, destination: Coordinate,
                              profile: Optional[str] = None) -> TravelEstimate:
        straight = distance_km(origin, destination)
        profile = profile or self.profile

        for provider in self.providers:
            try:
                leg = await provider.route(origin, destination, profile)
                km = leg.distance_m / 1000.0
                return TravelEstimate(
                    distance_km=km,
                    straight_line_km=straight,
                    driving_time_minutes=leg.duration_s / 60.0,
                    logistics_cost=self.estimate_logistics_cost(km),
                    source=provider.name,
                )
            except ProviderUnavailableError as ex:
                logger.warning("Router %s failed, trying next: %s", provider.name, ex.reason)
                continue
            except (AttributeError, KeyError, TypeError, ValueError) as ex:
                logger.warning("Router %s returned an unexpected payload: %r", provider.name, ex)
                continue

        return TravelEstimate(
            distance_km=straight,
            straight_line_km=straight,
            driving_time_minutes=self.estimate_driving_time(straight),
            logistics_cost=self.estimate_logistics_cost(straight),
            source="straight_line",
        )

    async def find_needs_within_radius(self, center: Coordinate, radius_km: float = 50.0,
                                       limit: int = 50) -> List[Need]:
        return await self.repo.find_open_needs_near(center, radius_km * 1000.0, limit)


class TravelMemo:
    """Per-run memo so repeated coordinate pairs hit the router once."""

    def __init__(self, service: DistanceService):
        self.service = service
        self._seen: Dict[Tuple[float, float, float, float], TravelEstimate] = {}

    async def estimate(self, origin: Coordinate, destination: Coordinate) -> TravelEstimate:
        key = (origin.lat, origin.lng, destination.lat, destination.lng)
        if key not in self._seen:
            self._seen[key] = await self.service.estimate_travel(origin, destination)
        return self._seen[key]


def build_distance_service(client: httpx.AsyncClient, settings: Settings, repo=None) -> DistanceService:
    providers: List[RoutingProvider] = []
    if settings.mapbox_access_token:
        providers.append(MapboxDirections(client, settings.mapbox_access_token))
    if settings.osrm_base_url:
        providers.append(OSRMRouter(client, settings.osrm_base_url))
    return DistanceService(
        providers,
        repo=repo,
        profile=settings.routing_profile,
        average_speed_kph=settings.average_speed_kph,
        base_cost=settings.logistics_base_cost,
        cost_per_km=settings.logistics_cost_per_km,
    )
