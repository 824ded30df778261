import httpx
import pytest

from reliefmatch.core.config import NOMINATIM_QUALITY, QualityTable
from reliefmatch.core.errors import GeocodeUnavailableError, InvalidInputError, ProviderUnavailableError
from reliefmatch.schemas import Coordinate, GeocodeCacheEntry
from reliefmatch.services.geocode import (
    GeocodingService,
    MapboxGeocoder,
    NominatimGeocoder,
    normalize_address,
)

from .conftest import NOW, mapbox_feature

pytestmark = pytest.mark.anyio

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"


def nominatim_hit(type_="house", lat="40.5", lon="-75.5"):
    return [{"lat": lat, "lon": lon, "display_name": "1 Elm St, Springfield", "type": type_, "class": "place"}]


class Router:
    """Per-host canned responses; records every request."""

    def __init__(self, mapbox=None, nominatim=None):
        self.mapbox = mapbox if mapbox is not None else httpx.Response(200, json=mapbox_feature())
        self.nominatim = nominatim if nominatim is not None else httpx.Response(200, json=nominatim_hit())
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        resp = self.mapbox if request.url.host == "api.mapbox.com" else self.nominatim
        if isinstance(resp, Exception):
            raise resp
        return httpx.Response(resp.status_code, content=resp.content, headers=resp.headers)

    def hosts(self):
        return [r.url.host for r in self.calls]


def build(repo, router, clock, token="tok", mapbox_quality=None, nominatim_quality=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(router))
    providers = [
        MapboxGeocoder(client, token, **({"quality": mapbox_quality} if mapbox_quality else {})),
        NominatimGeocoder(client, NOMINATIM_URL, "ReliefMatch-tests/1.0",
                          **({"quality": nominatim_quality} if nominatim_quality else {})),
    ]
    return GeocodingService(repo, providers, cache_ttl_days=30, clock=clock)


def test_normalize_address():
    assert normalize_address("  123 Main ST ") == "123 main st"
    assert normalize_address(None) == ""


async def test_primary_exact_result_is_cached(repo, clock):
    router = Router()
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("100 Market St, Philadelphia")
    assert res.quality == "exact"
    assert res.coordinates == Coordinate(lat=40.0, lng=-75.0)
    assert res.provider == "mapbox"
    assert res.confidence == pytest.approx(0.95)

    entry = repo.geocoding_cache["100 market st, philadelphia"]
    assert entry.quality == "exact"
    assert entry.updated_at == NOW


async def test_second_lookup_within_ttl_skips_provider(repo, clock):
    router = Router()
    geocoder = build(repo, router, clock)

    first = await geocoder.geocode("100 Market St, Philadelphia")
    clock.advance(days=29)
    second = await geocoder.geocode("  100 MARKET ST, PHILADELPHIA ")

    assert len(router.calls) == 1
    assert second.provider == "cache"
    assert second.coordinates == first.coordinates
    assert second.formatted_address == first.formatted_address


async def test_expired_cache_entry_is_a_miss(repo, clock):
    router = Router()
    geocoder = build(repo, router, clock)

    await geocoder.geocode("100 Market St")
    clock.advance(days=31)
    res = await geocoder.geocode("100 Market St")

    assert len(router.calls) == 2
    assert res.provider == "mapbox"
    # refreshed in place, not duplicated
    assert list(repo.geocoding_cache) == ["100 market st"]
    assert repo.geocoding_cache["100 market st"].updated_at == clock.now


async def test_falls_back_when_primary_errors(repo, clock):
    router = Router(mapbox=httpx.Response(500, json={"message": "boom"}))
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("1 Elm St, Springfield")
    assert res.provider == "nominatim"
    assert res.quality == "exact"
    assert res.coordinates == Coordinate(lat=40.5, lng=-75.5)
    assert router.hosts() == ["api.mapbox.com", "nominatim.openstreetmap.org"]
    assert "1 elm st, springfield" in repo.geocoding_cache


async def test_falls_back_when_primary_unreachable(repo, clock):
    router = Router(mapbox=httpx.ConnectError("connection refused"))
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("1 Elm St")
    assert res.provider == "nominatim"


async def test_falls_back_when_primary_has_no_token(repo, clock):
    router = Router()
    geocoder = build(repo, router, clock, token=None)

    res = await geocoder.geocode("1 Elm St")
    assert res.provider == "nominatim"
    assert router.hosts() == ["nominatim.openstreetmap.org"]


async def test_falls_back_on_low_quality_primary_result(repo, clock):
    router = Router(mapbox=httpx.Response(200, json=mapbox_feature(place_type="country")))
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("Somewhere")
    assert res.provider == "nominatim"


async def test_both_providers_fail(repo, clock):
    router = Router(mapbox=httpx.Response(503), nominatim=httpx.Response(200, json=[]))
    geocoder = build(repo, router, clock)

    with pytest.raises(GeocodeUnavailableError) as exc:
        await geocoder.geocode("Nowhere Lane")
    assert len(exc.value.errors) == 1
    assert isinstance(exc.value.errors[0], ProviderUnavailableError)
    assert repo.geocoding_cache == {}


async def test_failed_results_are_never_cached(repo, clock):
    router = Router(mapbox=httpx.Response(200, json={"features": []}),
                    nominatim=httpx.Response(200, json=[]))
    geocoder = build(repo, router, clock)

    with pytest.raises(GeocodeUnavailableError):
        await geocoder.geocode("Atlantis")
    with pytest.raises(GeocodeUnavailableError):
        await geocoder.geocode("Atlantis")

    # retried every time since nothing was cached
    assert len(router.calls) == 4
    assert all(e.quality != "failed" for e in repo.geocoding_cache.values())


async def test_failed_cache_entry_is_ignored(repo, clock):
    await repo.upsert_cached_geocode(GeocodeCacheEntry(
        normalized_address="1 elm st", coordinates=Coordinate(lat=0, lng=0),
        formatted_address="1 elm st", quality="failed", confidence=0, updated_at=NOW,
    ))
    router = Router()
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("1 Elm St")
    assert res.provider == "mapbox"
    assert repo.geocoding_cache["1 elm st"].quality == "exact"


@pytest.mark.parametrize("address", ["", "   ", None])
async def test_empty_address_is_invalid(repo, clock, address):
    router = Router()
    geocoder = build(repo, router, clock)
    with pytest.raises(InvalidInputError):
        await geocoder.geocode(address)
    assert router.calls == []


async def test_quality_table_is_overridable(repo, clock):
    # treat a city-level Nominatim hit as exact, and reject everything from Mapbox
    strict_mapbox = QualityTable(exact=[], approximate=[], fallback="failed")
    city_exact = QualityTable(exact=["city"], approximate=[], fallback="failed")
    router = Router(nominatim=httpx.Response(200, json=nominatim_hit(type_="city")))
    geocoder = build(repo, router, clock, mapbox_quality=strict_mapbox, nominatim_quality=city_exact)

    res = await geocoder.geocode("Springfield")
    assert res.provider == "nominatim"
    assert res.quality == "exact"


def test_default_nominatim_table_treats_unknown_types_as_approximate():
    assert NOMINATIM_QUALITY.classify("house") == "exact"
    assert NOMINATIM_QUALITY.classify("town") == "approximate"
    assert NOMINATIM_QUALITY.classify("peak") == "approximate"


async def test_nominatim_sends_user_agent(repo, clock):
    router = Router(mapbox=httpx.Response(500))
    geocoder = build(repo, router, clock)
    await geocoder.geocode("1 Elm St")
    nominatim_req = router.calls[-1]
    assert nominatim_req.headers["User-Agent"] == "ReliefMatch-tests/1.0"
    assert nominatim_req.url.params["format"] == "json"


@pytest.mark.parametrize("mapbox", [
    httpx.Response(200, content=b"<html>gateway</html>"),
    httpx.Response(200, json={"features": [{"place_type": ["address"]}]}),
    httpx.Response(200, json={"features": [{"center": [-75.0, 123.0], "place_type": ["address"]}]}),
    httpx.Response(200, json=[]),
])
async def test_malformed_primary_payload_falls_back(repo, clock, mapbox):
    router = Router(mapbox=mapbox)
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("1 Elm St")
    assert res.provider == "nominatim"
    assert router.hosts() == ["api.mapbox.com", "nominatim.openstreetmap.org"]


async def test_malformed_payloads_everywhere_raise_unavailable(repo, clock):
    router = Router(mapbox=httpx.Response(200, content=b"not json"),
                    nominatim=httpx.Response(200, json=[{"lat": "north", "lon": "-75.5"}]))
    geocoder = build(repo, router, clock)

    with pytest.raises(GeocodeUnavailableError) as exc:
        await geocoder.geocode("1 Elm St")
    assert [e.provider for e in exc.value.errors] == ["mapbox", "nominatim"]
    assert repo.geocoding_cache == {}


async def test_zero_relevance_is_kept(repo, clock):
    feature = mapbox_feature()
    feature["features"][0]["relevance"] = 0
    router = Router(mapbox=httpx.Response(200, json=feature))
    geocoder = build(repo, router, clock)

    res = await geocoder.geocode("100 Market St")
    assert res.confidence == 0.0
