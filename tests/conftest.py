# tests/conftest.py
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from reliefmatch.core.config import Settings
from reliefmatch.core.errors import GeocodeUnavailableError
from reliefmatch.main import create_app
from reliefmatch.repos.inmemory import InMemoryRepo
from reliefmatch.schemas import Coordinate, Donation, GeocodeResult, Need

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def anyio_backend():
    # keep AnyIO on asyncio for the whole test session
    return "asyncio"


@pytest.fixture
def repo():
    return InMemoryRepo()


class Clock:
    """Settable clock for cache expiry / recency tests."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


@pytest.fixture
def clock():
    return Clock()


class StubGeocoder:
    def __init__(self, result=None, exc=None, failing=()):
        self.result = result
        self.exc = exc
        self.failing = set(failing)
        self.calls = []

    async def geocode(self, address):
        self.calls.append(address)
        if self.exc is not None:
            raise self.exc
        if address in self.failing:
            raise GeocodeUnavailableError(address)
        return self.result or GeocodeResult(
            coordinates=Coordinate(lat=40.0, lng=-75.0),
            formatted_address=address.title(),
            quality="exact",
            confidence=0.9,
        )


def make_donation(**kw) -> Donation:
    data = dict(
        id="don-1",
        donor_ref="donor-1",
        item="masks",
        category="Medical Supplies",
        quantity=500,
        location_text="100 Market St, Philadelphia",
        coordinates=Coordinate(lat=40.0, lng=-75.0),
        created_at=NOW,
    )
    data.update(kw)
    return Donation(**data)


def make_need(**kw) -> Need:
    data = dict(
        id="need-1",
        organization_ref="org-1",
        item="medical masks",
        category="Medical Supplies",
        quantity=400,
        urgency="high",
        location_text="200 Walnut St, Philadelphia",
        coordinates=Coordinate(lat=40.01, lng=-75.01),
        created_at=NOW,
        geocoded_at=NOW,
    )
    data.update(kw)
    return Need(**data)


def mapbox_feature(lat=40.0, lng=-75.0, place_type="address", name="100 Market St, Philadelphia, PA"):
    return {"features": [{"center": [lng, lat], "place_name": name,
                          "place_type": [place_type], "relevance": 0.95}]}


def provider_handler(calls):
    """Mapbox answers geocode + directions, Nominatim finds nothing."""
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.host == "api.mapbox.com" and request.url.path.startswith("/geocoding"):
            return httpx.Response(200, json=mapbox_feature())
        if request.url.host == "api.mapbox.com" and request.url.path.startswith("/directions"):
            return httpx.Response(200, json={"routes": [{"distance": 2500.0, "duration": 300.0}]})
        return httpx.Response(200, json=[])
    return handler


@pytest.fixture
def provider_calls():
    return []


@pytest.fixture
def test_settings():
    return Settings(_env_file=None, worker_enabled=False, mapbox_access_token="test-token",
                    osrm_base_url=None, use_mongo=False)


@pytest.fixture
async def test_client(repo, test_settings, provider_calls):
    app = create_app(settings=test_settings, repo=repo,
                     http_transport=httpx.MockTransport(provider_handler(provider_calls)))
    async with LifespanManager(app):
        transport = ASGITransport(app=app, raise_app_exceptions=True)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
