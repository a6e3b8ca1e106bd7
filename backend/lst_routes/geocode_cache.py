from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from typing import Any, Final, Protocol

from .errors import GeocodeError, MissingLabel
from .geo import UK_BBOX_PARAM, haversine_km, in_uk_bounds
from .geocoding_photon import PhotonError
from .json_store import JsonDocument
from .logging_utils import log_event
from .models import Anchor, LatLng
from .settings import settings

# Bump this when geocoding logic changes so old cached points stop producing bad routes.
GEOCODE_CACHE_VERSION: Final[int] = 2

_VERSION_KEY: Final[str] = "__v"


class PlaceSearch(Protocol):
    async def search(self, query: str, *, limit: int, bbox: str) -> list[dict[str, Any]]: ...


def cache_key(label: str) -> str:
    return str(label or "").strip().lower()


def normalize_query(label: str) -> str:
    """Expand route-sheet shorthand so the place search has a fair chance."""
    s = str(label or "").strip()
    if not s:
        return s
    s = re.sub(r"\bR\s*[/-]\s*A\b", "Roundabout", s, flags=re.IGNORECASE)
    s = s.replace("/", " ")
    s = re.sub(r"\bnear\b", " ", s, flags=re.IGNORECASE)
    s = re.sub(r"\bJnc?\b", "Junction", s, flags=re.IGNORECASE)
    s = re.sub(r"\bRdbt\b", "Roundabout", s, flags=re.IGNORECASE)
    return re.sub(r"\s{2,}", " ", s).strip()


def _feature_point(feature: dict[str, Any]) -> LatLng | None:
    geom = feature.get("geometry")
    coords = geom.get("coordinates") if isinstance(geom, dict) else None
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None
    try:
        lng, lat = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        return None
    if not in_uk_bounds(lat, lng):
        return None
    return LatLng(lat=lat, lng=lng)


def _feature_name(feature: dict[str, Any], fallback: str) -> str:
    props = feature.get("properties")
    if isinstance(props, dict):
        for key in ("name", "label"):
            value = props.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


class GeocodeCache:
    """Versioned, envelope-validating cache in front of the place-search API."""

    def __init__(
        self,
        client: PlaceSearch,
        *,
        document: JsonDocument | None = None,
        version: int = GEOCODE_CACHE_VERSION,
        throttle_s: float | None = None,
        candidate_limit: int | None = None,
        max_hint_distance_km: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._doc = document or JsonDocument(settings.geocode_cache_path or None)
        self.version = int(version)
        self._throttle_s = settings.geocode_throttle_ms / 1000.0 if throttle_s is None else max(0.0, throttle_s)
        self._limit = candidate_limit or settings.geocode_candidate_limit
        self._max_hint_km = (
            settings.geocode_max_hint_distance_km if max_hint_distance_km is None else float(max_hint_distance_km)
        )
        self._sleep = sleep

        self.hits = 0
        self.misses = 0
        self.network_calls = 0

    def _entries(self) -> dict[str, Any]:
        raw = self._doc.read()
        if isinstance(raw, dict) and raw.get(_VERSION_KEY) == self.version:
            return raw
        if raw is not None:
            # Old format: drop everything now rather than trusting stale points.
            found = raw.get(_VERSION_KEY) if isinstance(raw, dict) else None
            log_event("geocode_cache_version_reset", found=found, version=self.version)
        fresh: dict[str, Any] = {_VERSION_KEY: self.version}
        self._doc.write(fresh)
        return fresh

    def lookup(self, label: str) -> Anchor | None:
        key = cache_key(label)
        if not key:
            return None
        with self._doc.lock:
            entries = self._entries()
            cached = entries.get(key)
            if cached is None:
                return None
            if isinstance(cached, dict) and in_uk_bounds(cached.get("lat"), cached.get("lng")):
                return Anchor(
                    lat=float(cached["lat"]),
                    lng=float(cached["lng"]),
                    display_name=str(cached.get("displayName") or label),
                )
            # purge bad cached entries from older versions
            entries.pop(key, None)
            self._doc.write(entries)
            log_event("geocode_cache_purged", key=key)
            return None

    def _store(self, label: str, anchor: Anchor) -> None:
        with self._doc.lock:
            entries = self._entries()
            entries[cache_key(label)] = {"lat": anchor.lat, "lng": anchor.lng, "displayName": anchor.display_name}
            self._doc.write(entries)

    def clear(self) -> int:
        with self._doc.lock:
            raw = self._doc.read()
            count = len([k for k in raw if k != _VERSION_KEY]) if isinstance(raw, dict) else 0
            self._doc.write({_VERSION_KEY: self.version})
            return count

    def stats(self) -> dict[str, int]:
        with self._doc.lock:
            raw = self._doc.read()
        size = len([k for k in raw if k != _VERSION_KEY]) if isinstance(raw, dict) else 0
        return {
            "size": size,
            "hits": self.hits,
            "misses": self.misses,
            "network_calls": self.network_calls,
            "version": self.version,
        }

    async def _candidates(self, query: str) -> list[tuple[LatLng, dict[str, Any]]]:
        q = normalize_query(query)
        if not q:
            return []
        await self._sleep(self._throttle_s)
        self.network_calls += 1
        try:
            features = await self._client.search(q, limit=self._limit, bbox=UK_BBOX_PARAM)
        except PhotonError as e:
            log_event("geocode_request_failed", query=q, error=str(e))
            return []
        out: list[tuple[LatLng, dict[str, Any]]] = []
        for feature in features:
            point = _feature_point(feature)
            if point is not None:
                out.append((point, feature))
        return out

    def _choose(
        self, candidates: list[tuple[LatLng, dict[str, Any]]], hint: LatLng | None
    ) -> tuple[tuple[LatLng, dict[str, Any]] | None, float | None]:
        if not candidates:
            return None, None
        if hint is None:
            return candidates[0], None
        best = min(candidates, key=lambda c: haversine_km(hint, c[0]))
        best_km = haversine_km(hint, best[0])
        # A same-named place in another region must not hijack the chain.
        if best_km > self._max_hint_km:
            return None, best_km
        return best, best_km

    async def geocode(self, label: str, hint: LatLng | None = None) -> Anchor:
        raw = str(label or "").strip()
        if not raw:
            raise MissingLabel(reason_code="label_missing", message="Missing geocode label")

        # Entries are keyed by label alone, so a hit skips the hint check;
        # a far-off reuse is left to the segment jump guard.
        cached = self.lookup(raw)
        if cached is not None:
            self.hits += 1
            log_event("geocode_cache_hit", label=raw)
            return cached
        self.misses += 1

        rejected_km: float | None = None
        chosen: tuple[LatLng, dict[str, Any]] | None = None
        # UK-biased query first, then the label as written.
        for query in (f"{raw}, UK", raw):
            chosen, distance_km = self._choose(await self._candidates(query), hint)
            if chosen is not None:
                break
            if distance_km is not None:
                rejected_km = distance_km

        if chosen is None:
            if rejected_km is not None:
                log_event("geocode_failed", label=raw, reason="hint_too_far", nearest_km=round(rejected_km, 1))
                raise GeocodeError(
                    reason_code="geocode_hint_too_far",
                    message=f"Nearest match for '{raw}' is {rejected_km:.0f}km from the previous point",
                    details={"label": raw, "nearest_km": round(rejected_km, 1)},
                )
            log_event("geocode_failed", label=raw, reason="no_candidate")
            raise GeocodeError(
                reason_code="geocode_no_candidate",
                message=f"No match for: {raw}",
                details={"label": raw},
            )

        point, feature = chosen
        if not in_uk_bounds(point.lat, point.lng):
            raise GeocodeError(
                reason_code="geocode_out_of_bounds",
                message=f"Geocode out of UK bounds for: {raw}",
                details={"label": raw, "lat": point.lat, "lng": point.lng},
            )

        anchor = Anchor(lat=point.lat, lng=point.lng, display_name=_feature_name(feature, raw))
        self._store(raw, anchor)
        log_event("geocode_lookup", label=raw, lat=anchor.lat, lng=anchor.lng, display_name=anchor.display_name)
        return anchor
