from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Final, Protocol

from .anchors import AnchorResolver
from .errors import RouteEngineError, UnrealisticJump, normalize_reason_code
from .geo import bounds_of, haversine_km, in_uk_bounds, is_sane_path, merge_bounds
from .labels import effective_label, next_anchor_label
from .logging_utils import log_event
from .models import (
    Anchor,
    BuildResult,
    LatLng,
    Polyline,
    PolylinePopup,
    PolylineStyle,
    ProbeResponse,
    RiskRating,
    Route,
    Segment,
    SegmentFailure,
)
from .settings import settings

StatusCallback = Callable[[str], None]

RISK_COLORS: Final[dict[str, str]] = {"H": "#ef4444", "M": "#f59e0b", "L": "#22c55e"}
RISK_LABELS: Final[dict[str, str]] = {"H": "High", "M": "Medium", "L": "Low"}
FALLBACK_COLOR: Final[str] = "#9aa0a6"

STATUS_READY: Final[str] = "Ready."
STATUS_NOTHING_SELECTED: Final[str] = "Select a route to display."


class PathSource(Protocol):
    async def path(self, origin: LatLng, destination: LatLng) -> list[list[float]] | None: ...


def risk_color(risk: str | None) -> str:
    return RISK_COLORS.get(str(risk or "L"), RISK_COLORS["L"])


def risk_label(risk: str | None) -> str:
    return RISK_LABELS.get(str(risk or "L"), RISK_LABELS["L"])


def segment_style(risk: RiskRating, *, routed: bool) -> PolylineStyle:
    # Dashed lines mark a straight-line stand-in for a failed routing call.
    return PolylineStyle(color=risk_color(risk), weight=6, opacity=0.9, dash_array=None if routed else "10 10")


def route_fallback_style(*, routed: bool) -> PolylineStyle:
    return PolylineStyle(color=FALLBACK_COLOR, weight=5, opacity=0.6, dash_array="10 10" if routed else "6 10")


def summarize_status(polyline_count: int, failed_segments: int) -> str:
    if polyline_count == 0:
        if failed_segments:
            return (
                f"No segments could be drawn ({failed_segments} unresolved). "
                "Check internet access for geocoding/routing, or pin ambiguous points."
            )
        return "No segments could be drawn (check internet access for geocoding/routing)."
    if failed_segments:
        noun = "segment" if failed_segments == 1 else "segments"
        return f"Ready. {failed_segments} {noun} could not be resolved; showing start to end fallback."
    return STATUS_READY


@dataclass(frozen=True)
class ChainState:
    """Accumulator threaded through the segment fold."""

    last_good_anchor: Anchor | None = None
    failure_count: int = 0


@dataclass(frozen=True)
class SegmentOutcome:
    polyline: Polyline | None = None
    end_anchor: Anchor | None = None
    failure: SegmentFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def advance_chain(state: ChainState, outcome: SegmentOutcome) -> ChainState:
    """A failed segment never moves the anchor: the next segment continues from the last good point."""
    if not outcome.ok:
        return replace(state, failure_count=state.failure_count + 1)
    if outcome.end_anchor is None:
        return state
    return replace(state, last_good_anchor=outcome.end_anchor)


def _straight(a: LatLng, b: LatLng) -> list[list[float]]:
    return [[a.lng, a.lat], [b.lng, b.lat]]


class PathBuilder:
    def __init__(
        self,
        resolver: AnchorResolver,
        route_cache: PathSource,
        *,
        max_jump_km: float | None = None,
    ) -> None:
        self._resolver = resolver
        self._routes = route_cache
        self._max_jump_km = settings.segment_max_jump_km if max_jump_km is None else float(max_jump_km)

    async def _start_anchor(self, route: Route) -> Anchor | None:
        if not route.start_anchor_label() and route.start_coords is None:
            return None
        try:
            return await self._resolver.resolve_endpoint(route, "start")
        except RouteEngineError as e:
            log_event("route_start_unresolved", route_id=route.id, reason_code=e.reason_code, error=str(e))
            return None

    def _segment_polyline(
        self,
        route: Route,
        index: int,
        segment: Segment,
        coords: list[list[float]],
        *,
        source: str,
    ) -> Polyline:
        routed = source != "straight_line"
        return Polyline(
            kind="segment",
            source=source,  # type: ignore[arg-type]
            route_id=route.id,
            segment_index=index,
            coordinates=coords,
            style=segment_style(segment.risk, routed=routed),
            popup=PolylinePopup(
                title=route.title,
                road=segment.road,
                risk=segment.risk,
                risk_label=risk_label(segment.risk),
                from_text=segment.from_label,
                to_text=segment.to_label,
                comment=segment.comment,
                note="" if routed else "Offline / routing unavailable - straight-line fallback",
            ),
        )

    async def _segment_step(
        self,
        route: Route,
        segments: Sequence[Segment],
        index: int,
        state: ChainState,
        status: StatusCallback,
    ) -> SegmentOutcome:
        segment = segments[index]

        # Operator-confirmed geometry bypasses resolution entirely.
        if segment.geometry is not None and is_sane_path(segment.geometry):
            coords = [list(pt) for pt in segment.geometry]
            last_lng, last_lat = coords[-1][0], coords[-1][1]
            end_anchor = (
                Anchor(lat=last_lat, lng=last_lng, display_name="Stored geometry")
                if in_uk_bounds(last_lat, last_lng)
                else None
            )
            polyline = self._segment_polyline(route, index, segment, coords, source="stored_geometry")
            return SegmentOutcome(polyline=polyline, end_anchor=end_anchor)

        from_label = effective_label(route, segments, index, "from")
        to_label = effective_label(route, segments, index, "to") or next_anchor_label(route, segments, index)
        status(f"Geocoding: {from_label or '(chain)'} → {to_label or '(next)'}")

        try:
            origin = state.last_good_anchor
            if origin is None:
                origin = await self._resolver.resolve_endpoint(segment, "from", label_override=from_label)
            destination = await self._resolver.resolve_endpoint(
                segment, "to", hint=origin, label_override=to_label
            )

            jump_km = haversine_km(origin, destination)
            if jump_km > self._max_jump_km:
                raise UnrealisticJump(
                    reason_code="segment_jump_unrealistic",
                    message=f"Unrealistic segment jump ({jump_km:.0f}km)",
                    details={"distance_km": round(jump_km, 1)},
                )
        except RouteEngineError as e:
            log_event(
                "segment_failed",
                route_id=route.id,
                segment_index=index,
                road=segment.road,
                reason_code=e.reason_code,
                error=str(e),
            )
            return SegmentOutcome(
                failure=SegmentFailure(
                    route_id=route.id,
                    segment_index=index,
                    road=segment.road,
                    reason_code=normalize_reason_code(e.reason_code),
                    message=str(e),
                )
            )

        status(f"Routing: {segment.road or route.title}")
        path = await self._routes.path(origin, destination)
        if path is None:
            polyline = self._segment_polyline(
                route, index, segment, _straight(origin, destination), source="straight_line"
            )
        else:
            polyline = self._segment_polyline(route, index, segment, path, source="routed")
        return SegmentOutcome(polyline=polyline, end_anchor=destination)

    async def _route_fallback(self, route: Route, status: StatusCallback) -> Polyline | None:
        try:
            start = await self._resolver.resolve_endpoint(route, "start")
            if route.end_coords is None and not route.end_anchor_label():
                return None
            end = await self._resolver.resolve_endpoint(route, "end", hint=start)
        except RouteEngineError as e:
            log_event("route_fallback_failed", route_id=route.id, reason_code=e.reason_code, error=str(e))
            return None

        status(f"Fallback routing: {route.title}")
        path = await self._routes.path(start, end)
        log_event("route_fallback_drawn", route_id=route.id, routed=path is not None)
        return Polyline(
            kind="route_fallback",
            source="routed" if path is not None else "straight_line",
            route_id=route.id,
            coordinates=path if path is not None else _straight(start, end),
            style=route_fallback_style(routed=path is not None),
            popup=PolylinePopup(
                title=route.title,
                note="Fallback start to end (some segments need review). Pin ambiguous FROM/TO points on the map.",
            ),
        )

    async def build_route(self, route: Route, *, on_status: StatusCallback | None = None) -> BuildResult:
        status = on_status or (lambda _text: None)
        t0 = time.perf_counter()

        state = ChainState(last_good_anchor=await self._start_anchor(route))
        polylines: list[Polyline] = []
        failures: list[SegmentFailure] = []

        segments = route.segments
        for index in range(len(segments)):
            outcome = await self._segment_step(route, segments, index, state, status)
            state = advance_chain(state, outcome)
            if outcome.polyline is not None:
                polylines.append(outcome.polyline)
            if outcome.failure is not None:
                failures.append(outcome.failure)

        if state.failure_count > 0:
            fallback = await self._route_fallback(route, status)
            if fallback is not None:
                polylines.append(fallback)

        bounds = bounds_of(pt for line in polylines for pt in line.coordinates)
        result = BuildResult(
            polylines=polylines,
            bounds=bounds,
            failed_segments=state.failure_count,
            failures=failures,
            status=summarize_status(len(polylines), state.failure_count),
        )
        log_event(
            "route_build_complete",
            route_id=route.id,
            segment_count=len(segments),
            polyline_count=len(polylines),
            failed_segments=state.failure_count,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return result

    async def build_routes(
        self, routes: Sequence[Route], *, on_status: StatusCallback | None = None
    ) -> BuildResult:
        """Build several routes; each route's own segments stay strictly sequential."""
        if not routes:
            return BuildResult(status=STATUS_NOTHING_SELECTED)

        status = on_status or (lambda _text: None)
        status("Building routes... (first load can take a moment)")
        results = await asyncio.gather(*(self.build_route(r, on_status=status) for r in routes))

        merged = BuildResult()
        for result in results:
            merged.polylines.extend(result.polylines)
            merged.failures.extend(result.failures)
            merged.failed_segments += result.failed_segments
            merged.bounds = merge_bounds(merged.bounds, result.bounds)
        merged.status = summarize_status(len(merged.polylines), merged.failed_segments)
        status(merged.status)
        return merged

    async def probe_segment(self, route: Route, index: int) -> ProbeResponse:
        """Resolve both ends of one segment without routing, for operator checks."""
        segment = route.segments[index]
        try:
            origin = await self._resolver.resolve_endpoint(
                segment, "from", label_override=effective_label(route, route.segments, index, "from")
            )
            destination = await self._resolver.resolve_endpoint(
                segment,
                "to",
                hint=origin,
                label_override=effective_label(route, route.segments, index, "to")
                or next_anchor_label(route, route.segments, index),
            )
        except RouteEngineError as e:
            return ProbeResponse(
                ok=False,
                message=(
                    "Test failed: could not geocode one end. Try making labels more specific "
                    f"(town/county), or pin exact coordinates. ({e})"
                ),
            )
        return ProbeResponse(
            ok=True,
            message=(
                f"OK: {segment.road} - From ({origin.lat:.5f}, {origin.lng:.5f}) "
                f"→ To ({destination.lat:.5f}, {destination.lng:.5f})"
            ),
            from_anchor=origin,
            to_anchor=destination,
        )
