from __future__ import annotations

import pytest

from conftest import no_sleep
from lst_routes import route_cache as route_cache_module
from lst_routes.json_store import JsonDocument
from lst_routes.models import LatLng
from lst_routes.route_cache import RouteCache, RouteCacheStore, route_key


A = LatLng(lat=52.2450, lng=0.4070)
B = LatLng(lat=52.3995, lng=0.2624)


def test_route_key_is_six_decimal_lng_lat() -> None:
    assert route_key(A, B) == "0.407000,52.245000|0.262400,52.399500"


def test_store_evicts_oldest_batch_when_full() -> None:
    store = RouteCacheStore(max_entries=250, evict_batch=50)
    path = [[0.1, 52.0], [0.2, 52.1]]
    for i in range(251):
        store.set(f"k{i}", path)

    assert len(store) == 201
    assert "k0" not in store
    assert "k49" not in store
    assert "k50" in store
    assert "k250" in store
    assert store.snapshot()["evictions"] == 50


def test_store_rejects_out_of_area_entry() -> None:
    doc = JsonDocument(None)
    # Entirely outside [45,62] x [-12,5]
    doc.write({"bad": [[-74.0, 40.7], [-73.9, 40.8]], "good": [[0.1, 52.0], [0.2, 52.1]]})
    store = RouteCacheStore(max_entries=10, evict_batch=2, document=doc)

    assert store.get("bad") is None
    assert "bad" not in store
    assert store.get("good") == [[0.1, 52.0], [0.2, 52.1]]
    assert store.snapshot()["rejected"] == 1


@pytest.mark.parametrize(
    "coords",
    [
        [[0.1, 52.0]],
        [[0.1, 52.0], ["x", 52.1]],
        [[0.1, 52.0], [float("nan"), 52.1]],
        "not a list",
        [[0.1, 52.0], [5.0, 52.1]],  # touches the sanity edge
    ],
)
def test_store_rejects_malformed_paths(coords) -> None:  # noqa: ANN001
    doc = JsonDocument(None)
    doc.write({"k": coords})
    store = RouteCacheStore(max_entries=10, evict_batch=2, document=doc)
    assert store.get("k") is None


@pytest.mark.anyio
async def test_cached_path_is_reused(osrm) -> None:  # noqa: ANN001
    cache = RouteCache(osrm, store=RouteCacheStore(max_entries=10, evict_batch=2), throttle_s=0, sleep=no_sleep)

    first = await cache.path(A, B)
    second = await cache.path(A, B)

    assert first == second
    assert len(osrm.calls) == 1
    assert cache.network_calls == 1


@pytest.mark.anyio
async def test_invalid_cached_path_is_refetched(osrm) -> None:  # noqa: ANN001
    doc = JsonDocument(None)
    doc.write({route_key(A, B): [[-74.0, 40.7], [-73.9, 40.8]]})
    store = RouteCacheStore(max_entries=10, evict_batch=2, document=doc)
    cache = RouteCache(osrm, store=store, throttle_s=0, sleep=no_sleep)

    path = await cache.path(A, B)

    assert len(osrm.calls) == 1
    assert path is not None
    assert path[0] == [A.lng, A.lat]
    assert store.get(route_key(A, B)) == path


@pytest.mark.anyio
async def test_provider_failure_returns_none(osrm) -> None:  # noqa: ANN001
    osrm.fail = True
    store = RouteCacheStore(max_entries=10, evict_batch=2)
    cache = RouteCache(osrm, store=store, throttle_s=0, sleep=no_sleep)

    assert await cache.path(A, B) is None
    assert len(store) == 0


@pytest.mark.anyio
async def test_out_of_area_route_is_not_cached() -> None:
    class _Wild:
        async def fetch_path(self, origin: LatLng, destination: LatLng) -> list[list[float]]:
            return [[origin.lng, origin.lat], [20.0, 60.0]]

    store = RouteCacheStore(max_entries=10, evict_batch=2)
    cache = RouteCache(_Wild(), store=store, throttle_s=0, sleep=no_sleep)

    assert await cache.path(A, B) is None
    assert len(store) == 0


@pytest.mark.anyio
async def test_throttle_runs_only_on_network_calls(osrm) -> None:  # noqa: ANN001
    slept: list[float] = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)

    cache = RouteCache(osrm, store=RouteCacheStore(max_entries=10, evict_batch=2), throttle_s=0.18, sleep=sleep)
    await cache.path(A, B)
    await cache.path(A, B)

    assert slept == [0.18]


def test_persisted_store_reloads(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "routes-cache.json"
    RouteCacheStore(max_entries=10, evict_batch=2, document=JsonDocument(path)).set("k", [[0.1, 52.0], [0.2, 52.1]])

    reloaded = RouteCacheStore(max_entries=10, evict_batch=2, document=JsonDocument(path))
    assert reloaded.get("k") == [[0.1, 52.0], [0.2, 52.1]]


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("provider", "reason_code"),
    [
        ("failing", "route_provider_failed"),
        ("wild", "route_geometry_invalid"),
    ],
)
async def test_route_failures_are_logged_with_reason(monkeypatch, osrm, provider, reason_code) -> None:  # noqa: ANN001
    class _Wild:
        async def fetch_path(self, origin: LatLng, destination: LatLng) -> list[list[float]]:
            return [[origin.lng, origin.lat]]

    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(route_cache_module, "log_event", lambda event, **fields: events.append((event, fields)))
    osrm.fail = True
    client = osrm if provider == "failing" else _Wild()
    cache = RouteCache(client, store=RouteCacheStore(max_entries=10, evict_batch=2), throttle_s=0, sleep=no_sleep)

    assert await cache.path(A, B) is None
    assert [event for event, _ in events] == ["osrm_route_failed"]
    assert events[0][1]["reason_code"] == reason_code
    assert events[0][1]["key"] == route_key(A, B)
