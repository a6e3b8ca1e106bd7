from __future__ import annotations

import math
from typing import Any, Final, Iterable, Sequence

from .errors import BoundsViolation
from .models import Bounds, LatLng

# Hard envelope: no coordinate outside this box is ever handed back to a caller.
UK_MIN_LAT: Final[float] = 49.8
UK_MAX_LAT: Final[float] = 60.95
UK_MIN_LNG: Final[float] = -8.65
UK_MAX_LNG: Final[float] = 1.8

# Looser box used to sanity-check routed polylines (they may hug the coast or cross water).
ROUTE_SANITY_MIN_LAT: Final[float] = 45.0
ROUTE_SANITY_MAX_LAT: Final[float] = 62.0
ROUTE_SANITY_MIN_LNG: Final[float] = -12.0
ROUTE_SANITY_MAX_LNG: Final[float] = 5.0

# west,south,east,north as the place-search API expects it
UK_BBOX_PARAM: Final[str] = f"{UK_MIN_LNG:.4f},{UK_MIN_LAT:.4f},{UK_MAX_LNG:.4f},{UK_MAX_LAT:.4f}"

EARTH_RADIUS_M: Final[float] = 6_371_000.0


def _finite(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(float(value))


def in_uk_bounds(lat: Any, lng: Any) -> bool:
    if not _finite(lat) or not _finite(lng):
        return False
    return UK_MIN_LAT <= float(lat) <= UK_MAX_LAT and UK_MIN_LNG <= float(lng) <= UK_MAX_LNG


def coerce_uk_coordinate(value: Any) -> LatLng | None:
    """Return a LatLng when ``value`` looks like ``{lat, lng}`` inside the envelope."""
    if value is None:
        return None
    if isinstance(value, LatLng):
        lat, lng = value.lat, value.lng
    elif isinstance(value, dict):
        lat, lng = value.get("lat"), value.get("lng")
    else:
        lat, lng = getattr(value, "lat", None), getattr(value, "lng", None)
    try:
        lat_f = float(lat)  # type: ignore[arg-type]
        lng_f = float(lng)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not in_uk_bounds(lat_f, lng_f):
        return None
    return LatLng(lat=lat_f, lng=lng_f)


def require_uk_coordinate(lat: float, lng: float, *, context: str) -> LatLng:
    if not in_uk_bounds(lat, lng):
        raise BoundsViolation(
            reason_code="coordinate_out_of_bounds",
            message=f"Coordinate out of UK bounds for: {context}",
            details={"lat": lat, "lng": lng},
        )
    return LatLng(lat=float(lat), lng=float(lng))


def haversine_m(a: LatLng, b: LatLng) -> float:
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlmb = math.radians(b.lng - a.lng)

    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(s))


def haversine_km(a: LatLng, b: LatLng) -> float:
    return haversine_m(a, b) / 1000.0


def is_well_formed_path(coords: Any) -> bool:
    if not isinstance(coords, list) or len(coords) < 2:
        return False
    for pt in coords:
        if not isinstance(pt, (list, tuple)) or len(pt) < 2:
            return False
        if not _finite(pt[0]) or not _finite(pt[1]):
            return False
    return True


def path_within_sanity_box(coords: Sequence[Sequence[float]]) -> bool:
    lats = [float(pt[1]) for pt in coords]
    lngs = [float(pt[0]) for pt in coords]
    return (
        min(lats) > ROUTE_SANITY_MIN_LAT
        and max(lats) < ROUTE_SANITY_MAX_LAT
        and min(lngs) > ROUTE_SANITY_MIN_LNG
        and max(lngs) < ROUTE_SANITY_MAX_LNG
    )


def is_sane_path(coords: Any) -> bool:
    return is_well_formed_path(coords) and path_within_sanity_box(coords)


def normalize_path(coords: Sequence[Sequence[float]]) -> list[list[float]]:
    return [[float(pt[0]), float(pt[1])] for pt in coords]


def bounds_of(points_lnglat: Iterable[Sequence[float]]) -> Bounds | None:
    lngs: list[float] = []
    lats: list[float] = []
    for pt in points_lnglat:
        lngs.append(float(pt[0]))
        lats.append(float(pt[1]))
    if not lats:
        return None
    return Bounds(min_lat=min(lats), min_lng=min(lngs), max_lat=max(lats), max_lng=max(lngs))


def merge_bounds(a: Bounds | None, b: Bounds | None) -> Bounds | None:
    if a is None:
        return b
    if b is None:
        return a
    return Bounds(
        min_lat=min(a.min_lat, b.min_lat),
        min_lng=min(a.min_lng, b.min_lng),
        max_lat=max(a.max_lat, b.max_lat),
        max_lng=max(a.max_lng, b.max_lng),
    )
