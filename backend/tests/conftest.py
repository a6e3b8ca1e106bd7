from __future__ import annotations

from typing import Any

import pytest

from lst_routes.geocode_cache import GeocodeCache, normalize_query
from lst_routes.json_store import JsonDocument
from lst_routes.models import LatLng
from lst_routes.route_cache import RouteCache, RouteCacheStore
from lst_routes.routing_osrm import OSRMError
from lst_routes.settings import settings

# label -> (lat, lng); all inside the UK envelope
GAZETTEER: dict[str, tuple[float, float]] = {
    "Newmarket CB8 7NR": (52.2450, 0.4070),
    "Landwade Rd, Newmarket": (52.2561, 0.3935),
    "A142, Newmarket": (52.2620, 0.3850),
    "A142/A10, Ely": (52.3995, 0.2624),
    "A10/A17, King's Lynn": (52.7543, 0.3976),
    "A1/A14 Junction": (52.3330, -0.2390),
    "Leicester LE1": (52.6369, -1.1398),
    "Bickers Yard": (52.9120, -0.6420),
    "Huntingdon": (52.3310, -0.1820),
}


def feature(lat: float, lng: float, name: str = "") -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [lng, lat]},
        "properties": {"name": name},
    }


class FakePlaces:
    """In-memory stand-in for the place-search client."""

    def __init__(self) -> None:
        self.places: dict[str, list[dict[str, Any]]] = {}
        self.queries: list[str] = []

    def add(self, label: str, lat: float, lng: float, name: str | None = None) -> FakePlaces:
        key = normalize_query(label).lower()
        self.places.setdefault(key, []).append(feature(lat, lng, name or label))
        return self

    def point(self, label: str) -> LatLng:
        lat, lng = GAZETTEER[label]
        return LatLng(lat=lat, lng=lng)

    async def search(self, query: str, *, limit: int, bbox: str) -> list[dict[str, Any]]:
        self.queries.append(query)
        base = query[:-4] if query.lower().endswith(", uk") else query
        return list(self.places.get(base.lower(), []))[:limit]


class FakeOSRM:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[LatLng, LatLng]] = []

    async def fetch_path(self, origin: LatLng, destination: LatLng) -> list[list[float]]:
        self.calls.append((origin, destination))
        if self.fail:
            raise OSRMError("OSRM HTTP 503", status_code=503)
        mid = [(origin.lng + destination.lng) / 2.0, (origin.lat + destination.lat) / 2.0]
        return [[origin.lng, origin.lat], mid, [destination.lng, destination.lat]]


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _isolated_out_dir(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    monkeypatch.setattr(settings, "route_store_path", str(tmp_path / "routes.json"))
    monkeypatch.setattr(settings, "geocode_cache_path", "")
    monkeypatch.setattr(settings, "route_cache_path", "")


@pytest.fixture
def places() -> FakePlaces:
    fake = FakePlaces()
    for label, (lat, lng) in GAZETTEER.items():
        fake.add(label, lat, lng)
    return fake


@pytest.fixture
def osrm() -> FakeOSRM:
    return FakeOSRM()


@pytest.fixture
def geocodes(places: FakePlaces) -> GeocodeCache:
    return GeocodeCache(places, document=JsonDocument(None), throttle_s=0, sleep=no_sleep)


@pytest.fixture
def routes_cache(osrm: FakeOSRM) -> RouteCache:
    return RouteCache(
        osrm,
        store=RouteCacheStore(max_entries=250, evict_batch=50),
        throttle_s=0,
        sleep=no_sleep,
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
