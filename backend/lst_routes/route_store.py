from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from .errors import NotFoundError
from .json_store import JsonDocument
from .logging_utils import log_event
from .models import Route, Segment
from .settings import settings

RoutesListener = Callable[[list[Route]], None]

SEED_ROUTES: list[dict[str, Any]] = [
    {
        "id": "turners-newmarket-bickers-yard",
        "title": "Turners Newmarket → Bickers Yard",
        "notes": "High risk: trailer swing oncoming traffic when turning left into yard.",
        "segments": [
            {"road": "Turners Newmarket", "from": "Landwade Rd, Newmarket", "to": "A142, Newmarket", "risk": "L"},
            {"road": "A142", "from": "A142, Newmarket", "to": "A142/A10, Ely", "risk": "L"},
            {"road": "A10", "from": "A142/A10, Ely", "to": "A10/A17, King's Lynn", "risk": "L"},
            {"road": "A17", "from": "A10/A17, King's Lynn", "to": "A17/A52, near Grantham", "risk": "L"},
            {"road": "A52", "from": "A17/A52, near Grantham", "to": "Bickers Yard", "risk": "H"},
        ],
    },
    {
        "id": "turners-newmarket-rdc-via-m6",
        "title": "Turners Newmarket → RDC (via A14/M6/M1)",
        "notes": (
            "High risk: turning right onto A14 slip road (vehicles from behind). "
            "Medium: trailer position swing on M6 roundabout (4th exit). "
            "Medium: trailer swing when turning right into RDC."
        ),
        "segments": [
            {
                "road": "Turners Newmarket",
                "from": "Landwade Rd, Newmarket",
                "to": "A14 slip road from A142, Newmarket",
                "risk": "H",
            },
            {"road": "A14", "from": "A14 slip road from A142, Newmarket", "to": "A14/A1 junction", "risk": "L"},
            {"road": "A14", "from": "A14/A1 junction", "to": "M6", "risk": "L"},
            {"road": "M6", "from": "M6", "to": "M6 Junction 1 (A426)", "risk": "L"},
            {"road": "M6 Roundabout", "from": "M6 Junction 1 (A426)", "to": "M6 (4th exit)", "risk": "M"},
            {"road": "M6", "from": "M6 (4th exit)", "to": "M6/M1", "risk": "L"},
            {"road": "M1", "from": "M6/M1", "to": "M1 Junction 14 (A4428)", "risk": "L"},
            {"road": "A4428", "from": "M1 Junction 14 (A4428)", "to": "Dockham Way roundabout", "risk": "L"},
            {"road": "Dockham Way", "from": "Dockham Way roundabout", "to": "RDC", "risk": "M"},
        ],
    },
]


def seed_routes() -> list[Route]:
    return [Route.model_validate(item) for item in SEED_ROUTES]


def parse_routes(raw: Any) -> list[Route]:
    """Validate a loosely-typed routes document, defaulting missing fields and skipping unusable entries."""
    if not isinstance(raw, list):
        return []
    out: list[Route] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or not str(item.get("id") or "").strip():
            log_event("route_store_entry_skipped", index=index, reason="missing id")
            continue
        try:
            out.append(Route.model_validate(item))
        except ValidationError as e:
            log_event("route_store_entry_skipped", index=index, reason=str(e.errors()[0].get("msg", "invalid")))
    return out


def _matches(route: Route, needle: str) -> bool:
    parts = [
        route.title,
        route.notes,
        route.start_label,
        route.start_postcode,
        route.end_label,
        route.end_postcode,
    ]
    for seg in route.segments:
        parts.extend([seg.road, seg.from_label, seg.to_label, seg.comment])
    return needle in " ".join(parts).lower()


class RouteStore:
    """Persisted list of routes; the only writer of route documents.

    Every ``save`` notifies subscribers so a render session can redraw.
    """

    def __init__(self, document: JsonDocument | None = None, *, seed: list[Route] | None = None) -> None:
        self._doc = document or JsonDocument(settings.resolved_route_store_path())
        self._seed = [r.model_copy(deep=True) for r in (seed if seed is not None else seed_routes())]
        self._listeners: list[RoutesListener] = []

    def subscribe(self, listener: RoutesListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def get(self) -> list[Route]:
        with self._doc.lock:
            raw = self._doc.read()
        if isinstance(raw, list) and raw:
            return parse_routes(raw)
        # First run (or an emptied/corrupt file): start from the seed set.
        routes = [r.model_copy(deep=True) for r in self._seed]
        with self._doc.lock:
            self._doc.write([r.to_document() for r in routes])
        return routes

    def save(self, routes: list[Route]) -> None:
        with self._doc.lock:
            self._doc.write([r.to_document() for r in routes])
        log_event("route_store_saved", route_count=len(routes))
        for listener in list(self._listeners):
            listener([r.model_copy(deep=True) for r in routes])

    def reset(self) -> list[Route]:
        routes = [r.model_copy(deep=True) for r in self._seed]
        self.save(routes)
        return routes

    def export_seed(self) -> str:
        return json.dumps([r.to_document() for r in self.get()], indent=2, ensure_ascii=False)

    def find(self, route_id: str) -> Route:
        for route in self.get():
            if route.id == route_id:
                return route
        raise NotFoundError(
            reason_code="route_not_found",
            message=f"Unknown route: {route_id}",
            details={"route_id": route_id},
        )

    def search_routes(self, query: str = "") -> list[Route]:
        needle = str(query or "").strip().lower()
        routes = self.get()
        if not needle:
            return routes
        return [r for r in routes if _matches(r, needle)]

    def update_route(self, route_id: str, mutate: Callable[[Route], None]) -> Route:
        routes = self.get()
        for route in routes:
            if route.id == route_id:
                mutate(route)
                self.save(routes)
                return route
        raise NotFoundError(
            reason_code="route_not_found",
            message=f"Unknown route: {route_id}",
            details={"route_id": route_id},
        )

    def replace_route(self, route: Route) -> Route:
        def _apply(existing: Route) -> None:
            for name in Route.model_fields:
                setattr(existing, name, getattr(route, name))

        return self.update_route(route.id, _apply)

    def add_route(self, route: Route | None = None) -> Route:
        routes = self.get()
        taken = {r.id for r in routes}
        if route is None:
            n = len(routes) + 1
            while f"route-{n}" in taken:
                n += 1
            route = Route(id=f"route-{n}", title="New route")
        elif route.id in taken:
            suffix = 2
            while f"{route.id}-{suffix}" in taken:
                suffix += 1
            route = route.model_copy(update={"id": f"{route.id}-{suffix}"})
        routes.insert(0, route)
        self.save(routes)
        return route

    def delete_route(self, route_id: str) -> None:
        routes = self.get()
        kept = [r for r in routes if r.id != route_id]
        if len(kept) == len(routes):
            raise NotFoundError(
                reason_code="route_not_found",
                message=f"Unknown route: {route_id}",
                details={"route_id": route_id},
            )
        self.save(kept)

    def add_segment(self, route_id: str, segment: Segment) -> int:
        index = -1

        def _append(route: Route) -> None:
            nonlocal index
            route.segments.append(segment)
            index = len(route.segments) - 1

        self.update_route(route_id, _append)
        return index

    def move_segment(self, route_id: str, index: int, delta: int) -> int:
        """Move one segment up (negative delta) or down; the result index is clamped to the list."""
        new_index = index

        def _move(route: Route) -> None:
            nonlocal new_index
            _check_index(route, index)
            new_index = max(0, min(len(route.segments) - 1, index + delta))
            seg = route.segments.pop(index)
            route.segments.insert(new_index, seg)

        self.update_route(route_id, _move)
        return new_index

    def remove_segment(self, route_id: str, index: int) -> Segment:
        removed: list[Segment] = []

        def _remove(route: Route) -> None:
            _check_index(route, index)
            removed.append(route.segments.pop(index))

        self.update_route(route_id, _remove)
        return removed[0]


def _check_index(route: Route, index: int) -> None:
    if not 0 <= index < len(route.segments):
        raise NotFoundError(
            reason_code="segment_not_found",
            message=f"Route {route.id} has no segment {index}",
            details={"route_id": route.id, "segment_index": index},
        )
