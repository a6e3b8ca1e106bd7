from __future__ import annotations

from typing import Any

import pytest

from conftest import no_sleep
from lst_routes.errors import GeocodeError, MissingLabel
from lst_routes.geo import haversine_km, in_uk_bounds
from lst_routes.geocode_cache import GEOCODE_CACHE_VERSION, GeocodeCache, cache_key, normalize_query
from lst_routes.geocoding_photon import PhotonError
from lst_routes.json_store import JsonDocument
from lst_routes.models import LatLng


def _cache(client: Any, document: JsonDocument | None = None, **kwargs: Any) -> GeocodeCache:
    return GeocodeCache(client, document=document or JsonDocument(None), throttle_s=0, sleep=no_sleep, **kwargs)


def test_normalize_query_expands_sheet_shorthand() -> None:
    assert normalize_query("A1/A14 R/A") == "A1 A14 Roundabout"
    assert normalize_query("A17/A52, near Grantham") == "A17 A52, Grantham"
    assert normalize_query("M1 Jn 14") == "M1 Junction 14"
    assert normalize_query("Dockham Way Rdbt") == "Dockham Way Roundabout"
    assert normalize_query("   ") == ""


def test_cache_key_ignores_case_and_padding() -> None:
    assert cache_key("  Newmarket CB8 7NR ") == cache_key("newmarket cb8 7nr")


@pytest.mark.anyio
async def test_repeated_label_hits_network_once(places) -> None:  # noqa: ANN001
    geocodes = _cache(places)

    first = await geocodes.geocode("Newmarket CB8 7NR")
    second = await geocodes.geocode("  newmarket cb8 7nr ")

    assert geocodes.network_calls == 1
    assert places.queries == ["Newmarket CB8 7NR, UK"]
    assert (first.lat, first.lng) == (second.lat, second.lng)
    assert geocodes.stats()["hits"] == 1
    assert geocodes.stats()["size"] == 1


class _UkQueryMisses:
    def __init__(self, inner: Any) -> None:
        self.inner = inner
        self.calls: list[str] = []

    async def search(self, query: str, *, limit: int, bbox: str) -> list[dict[str, Any]]:
        self.calls.append(query)
        if query.endswith(", UK"):
            return []
        return await self.inner.search(query, limit=limit, bbox=bbox)


@pytest.mark.anyio
async def test_raw_label_is_tried_after_uk_biased_query(places) -> None:  # noqa: ANN001
    client = _UkQueryMisses(places)
    anchor = await _cache(client).geocode("Huntingdon")

    assert client.calls == ["Huntingdon, UK", "Huntingdon"]
    assert in_uk_bounds(anchor.lat, anchor.lng)


@pytest.mark.anyio
async def test_version_bump_forces_a_miss(places) -> None:  # noqa: ANN001
    doc = JsonDocument(None)
    old = _cache(places, doc)
    await old.geocode("Leicester LE1")
    assert old.lookup("Leicester LE1") is not None

    bumped = _cache(places, doc, version=GEOCODE_CACHE_VERSION + 1)
    assert bumped.lookup("Leicester LE1") is None

    await bumped.geocode("Leicester LE1")
    assert bumped.network_calls == 1
    assert doc.read()["__v"] == GEOCODE_CACHE_VERSION + 1


@pytest.mark.anyio
async def test_persisted_cache_survives_restart(tmp_path, places) -> None:  # noqa: ANN001
    path = tmp_path / "geocode.json"
    await _cache(places, JsonDocument(path)).geocode("Huntingdon")

    again = _cache(places, JsonDocument(path))
    anchor = await again.geocode("Huntingdon")

    assert again.network_calls == 0
    assert anchor.display_name == "Huntingdon"


@pytest.mark.anyio
async def test_candidates_outside_envelope_are_never_returned(places) -> None:  # noqa: ANN001
    places.add("Junction Road", 48.8566, 2.3522)  # Paris
    places.add("Junction Road", 40.7128, -74.0060)  # New York

    with pytest.raises(GeocodeError) as exc:
        await _cache(places).geocode("Junction Road")
    assert exc.value.reason_code == "geocode_no_candidate"

    places.add("Junction Road", 52.5, -1.2)
    anchor = await _cache(places).geocode("Junction Road")
    assert (anchor.lat, anchor.lng) == (52.5, -1.2)


@pytest.mark.anyio
async def test_hint_prefers_nearby_candidate(places) -> None:  # noqa: ANN001
    hint = places.point("Newmarket CB8 7NR")
    far = (hint.lat + 1.8, hint.lng)  # ~200 km north
    near = (hint.lat + 0.045, hint.lng)  # ~5 km north
    places.add("Market Street", *far)
    places.add("Market Street", *near)

    anchor = await _cache(places).geocode("Market Street", hint)

    assert (anchor.lat, anchor.lng) == near
    assert haversine_km(hint, anchor) < 10


@pytest.mark.anyio
async def test_hint_rejects_only_far_candidate(places) -> None:  # noqa: ANN001
    hint = places.point("Newmarket CB8 7NR")
    places.add("Market Street", hint.lat + 1.8, hint.lng)

    geocodes = _cache(places)
    with pytest.raises(GeocodeError) as exc:
        await geocodes.geocode("Market Street", hint)

    assert exc.value.reason_code == "geocode_hint_too_far"
    assert exc.value.details["nearest_km"] > 120
    assert geocodes.lookup("Market Street") is None


@pytest.mark.anyio
async def test_same_named_junction_resolves_near_newmarket(places) -> None:  # noqa: ANN001
    # A same-named match in Scotland listed first must lose to the one near the hint.
    places.places[normalize_query("A1/A14 Junction").lower()].insert(
        0,
        {"geometry": {"coordinates": [-3.19, 55.95]}, "properties": {"name": "A1/A14 Junction (Edinburgh)"}},
    )
    hint = places.point("Newmarket CB8 7NR")

    anchor = await _cache(places).geocode("A1/A14 Junction", hint)

    assert haversine_km(hint, anchor) <= 120
    assert (anchor.lat, anchor.lng) == (52.3330, -0.2390)


@pytest.mark.anyio
async def test_bad_cached_entry_is_purged(places) -> None:  # noqa: ANN001
    doc = JsonDocument(None)
    doc.write({"__v": GEOCODE_CACHE_VERSION, "huntingdon": {"lat": 48.85, "lng": 2.35, "displayName": "Paris"}})
    geocodes = _cache(places, doc)

    assert geocodes.lookup("Huntingdon") is None
    assert "huntingdon" not in doc.read()

    anchor = await geocodes.geocode("Huntingdon")
    assert in_uk_bounds(anchor.lat, anchor.lng)
    assert geocodes.network_calls == 1


@pytest.mark.anyio
async def test_provider_failure_becomes_geocode_error() -> None:
    class _Down:
        async def search(self, query: str, *, limit: int, bbox: str) -> list[dict[str, Any]]:
            raise PhotonError("Photon HTTP 500", status_code=500)

    with pytest.raises(GeocodeError) as exc:
        await _cache(_Down()).geocode("Newmarket CB8 7NR")
    assert exc.value.reason_code == "geocode_no_candidate"


@pytest.mark.anyio
async def test_empty_label_is_missing(places) -> None:  # noqa: ANN001
    with pytest.raises(MissingLabel):
        await _cache(places).geocode("  ", LatLng(lat=52.0, lng=0.0))
    assert places.queries == []


def test_clear_keeps_version_marker(places) -> None:  # noqa: ANN001
    doc = JsonDocument(None)
    doc.write({"__v": GEOCODE_CACHE_VERSION, "a": {"lat": 52.0, "lng": 0.1}, "b": {"lat": 52.1, "lng": 0.2}})
    geocodes = _cache(places, doc)

    assert geocodes.clear() == 2
    assert doc.read() == {"__v": GEOCODE_CACHE_VERSION}


@pytest.mark.anyio
async def test_throttle_runs_once_per_network_query(places) -> None:  # noqa: ANN001
    slept: list[float] = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)

    geocodes = GeocodeCache(places, document=JsonDocument(None), throttle_s=0.2, sleep=sleep)

    await geocodes.geocode("Huntingdon")
    await geocodes.geocode(" huntingdon ")
    assert slept == [0.2]

    # No match: the UK-biased query and the raw label are both throttled.
    with pytest.raises(GeocodeError):
        await geocodes.geocode("Nowhere Farm")
    assert slept == [0.2, 0.2, 0.2]
    assert geocodes.network_calls == 3


@pytest.mark.anyio
async def test_cache_hit_ignores_hint_distance(places) -> None:  # noqa: ANN001
    geocodes = _cache(places)
    first = await geocodes.geocode("Huntingdon")

    inverness = LatLng(lat=57.48, lng=-4.22)
    again = await geocodes.geocode("Huntingdon", inverness)

    # Keys are label-only; the segment jump guard catches a far-off reuse.
    assert again == first
    assert haversine_km(inverness, again) > 120
    assert geocodes.network_calls == 1
