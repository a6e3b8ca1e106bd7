from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from .errors import NotFoundError
from .geo import require_uk_coordinate
from .logging_utils import log_event
from .models import (
    CaptureStatus,
    LatLng,
    Polyline,
    PolylinePopup,
    RiskRating,
    Route,
    Segment,
)
from .path_builder import PathSource, segment_style
from .route_store import RouteStore
from .settings import settings

PickKey = Literal["start", "end", "from", "to"]


def pinned_label(point: LatLng) -> str:
    return f"Pinned ({point.lat:.5f}, {point.lng:.5f})"


def preview_key(a: LatLng, b: LatLng) -> str:
    # 4 decimals (~10 m): small pointer jitter reuses the in-flight preview.
    return f"{a.lat:.4f},{a.lng:.4f}|{b.lat:.4f},{b.lng:.4f}"


@dataclass(frozen=True)
class PickTarget:
    route_id: str
    key: PickKey
    segment_index: int | None = None


@dataclass
class DrawState:
    route_id: str
    risk: RiskRating = "L"
    chain: bool = True
    snap: bool = True
    start: LatLng | None = None


class OverrideCapture:
    """Pick-on-map and draw-with-snap authoring.

    Only one capture is active at a time; starting a pick or draw silently
    supersedes whatever was pending.
    """

    def __init__(
        self,
        store: RouteStore,
        route_cache: PathSource,
        *,
        debounce_s: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._routes = route_cache
        self._debounce_s = (
            settings.draw_preview_debounce_ms / 1000.0 if debounce_s is None else max(0.0, debounce_s)
        )
        self._sleep = sleep
        self._pick: PickTarget | None = None
        self._draw: DrawState | None = None
        self._move_seq = 0
        self._preview_key: str | None = None
        self._preview: Polyline | None = None

    def status(self, message: str = "") -> CaptureStatus:
        if self._pick is not None:
            return CaptureStatus(
                mode="pick",
                route_id=self._pick.route_id,
                key=self._pick.key,
                segment_index=self._pick.segment_index,
                message=message,
            )
        if self._draw is not None:
            return CaptureStatus(
                mode="draw",
                route_id=self._draw.route_id,
                pending_start=self._draw.start,
                message=message,
            )
        return CaptureStatus(message=message)

    def _reset_preview(self) -> None:
        self._move_seq += 1
        self._preview_key = None
        self._preview = None

    def cancel(self) -> CaptureStatus:
        self._pick = None
        self._draw = None
        self._reset_preview()
        return self.status("Capture cancelled.")

    def start_pick(self, route_id: str, key: PickKey, segment_index: int | None = None) -> CaptureStatus:
        route = self._store.find(route_id)
        if key in ("from", "to"):
            if segment_index is None or not 0 <= segment_index < len(route.segments):
                raise NotFoundError(
                    reason_code="segment_not_found",
                    message=f"Route {route_id} has no segment {segment_index}",
                    details={"route_id": route_id, "segment_index": segment_index},
                )
        else:
            segment_index = None

        self._draw = None
        self._reset_preview()
        self._pick = PickTarget(route_id=route_id, key=key, segment_index=segment_index)
        return self.status(f"Click the map to pin {key.upper()}.")

    def start_draw(
        self,
        route_id: str,
        *,
        enabled: bool = True,
        risk: RiskRating = "L",
        chain: bool = True,
        snap: bool = True,
    ) -> CaptureStatus:
        if not enabled:
            self._draw = None
            self._reset_preview()
            return self.status("Draw mode off.")

        self._store.find(route_id)
        self._pick = None
        self._reset_preview()
        self._draw = DrawState(route_id=route_id, risk=risk, chain=chain, snap=snap)
        return self.status("Draw mode: click a start point...")

    def _apply_pick(self, target: PickTarget, point: LatLng) -> None:
        def _pin(route: Route) -> None:
            if target.key in ("start", "end"):
                if target.key == "start":
                    route.start_coords = point
                    if not route.start_label.strip():
                        route.start_label = pinned_label(point)
                else:
                    route.end_coords = point
                    if not route.end_label.strip():
                        route.end_label = pinned_label(point)
                return

            index = target.segment_index if target.segment_index is not None else -1
            if not 0 <= index < len(route.segments):
                raise NotFoundError(
                    reason_code="segment_not_found",
                    message=f"Route {route.id} has no segment {index}",
                    details={"route_id": route.id, "segment_index": index},
                )
            seg = route.segments[index]
            if target.key == "from":
                seg.from_coords = point
                if not seg.from_label.strip():
                    seg.from_label = pinned_label(point)
            else:
                seg.to_coords = point
                if not seg.to_label.strip():
                    seg.to_label = pinned_label(point)

        self._store.update_route(target.route_id, _pin)

    async def click(self, lat: float, lng: float) -> CaptureStatus:
        point = require_uk_coordinate(lat, lng, context="map click")

        if self._pick is not None:
            target = self._pick
            self._pick = None
            try:
                self._apply_pick(target, point)
            except NotFoundError:
                # Route or segment vanished while picking; leave pick mode.
                log_event("override_pick_dropped", route_id=target.route_id, key=target.key)
                raise
            log_event(
                "override_pinned",
                route_id=target.route_id,
                key=target.key,
                segment_index=target.segment_index,
                lat=point.lat,
                lng=point.lng,
            )
            return self.status(f"Pinned {target.key.upper()} coordinates.")

        draw = self._draw
        if draw is None:
            return self.status()

        if draw.start is None:
            draw.start = point
            return self.status("Draw mode: click an end point...")

        start = draw.start
        self._reset_preview()
        segment = Segment(
            road="",
            from_label=pinned_label(start),
            to_label=pinned_label(point),
            risk=draw.risk,
            from_coords=start,
            to_coords=point,
        )
        if draw.snap:
            path = await self._routes.path(start, point)
            if path is not None:
                segment.geometry = path

        if self._draw is not draw:
            # Superseded by another capture request while routing.
            return self.status()

        try:
            index = self._store.add_segment(draw.route_id, segment)
        except NotFoundError:
            self._draw = None
            raise
        log_event(
            "segment_drawn",
            route_id=draw.route_id,
            segment_index=index,
            snapped=segment.geometry is not None,
            chain=draw.chain,
        )

        if draw.chain:
            draw.start = point
            return self.status("Segment added. Click the next point to continue...")
        draw.start = None
        return self.status("Segment added. Click to set a new start point...")

    async def move(self, lat: float, lng: float) -> Polyline | None:
        """Preview line from the pending start to the pointer.

        With snap on, the routed preview waits out the debounce window; a later
        move supersedes it and the earlier call returns ``None``.
        """
        draw = self._draw
        if draw is None or draw.start is None:
            return None
        pointer = require_uk_coordinate(lat, lng, context="map move")
        start = draw.start

        straight = self._preview_line(draw, [[start.lng, start.lat], [pointer.lng, pointer.lat]], routed=False)
        if not draw.snap:
            return straight

        key = preview_key(start, pointer)
        if key == self._preview_key and self._preview is not None:
            return self._preview

        self._move_seq += 1
        seq = self._move_seq
        self._preview_key = key
        await self._sleep(self._debounce_s)
        if seq != self._move_seq or self._draw is not draw:
            return None

        path = await self._routes.path(start, pointer)
        if seq != self._move_seq:
            return None
        self._preview = (
            self._preview_line(draw, path, routed=True) if path is not None else straight
        )
        return self._preview

    def _preview_line(self, draw: DrawState, coords: list[list[float]], *, routed: bool) -> Polyline:
        return Polyline(
            kind="segment",
            source="routed" if routed else "straight_line",
            route_id=draw.route_id,
            coordinates=coords,
            style=segment_style(draw.risk, routed=routed),
            popup=PolylinePopup(title="Draw preview"),
        )
