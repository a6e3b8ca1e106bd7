from __future__ import annotations

from collections.abc import Sequence

from .logging_utils import log_event
from .models import BuildResult, Route
from .path_builder import STATUS_NOTHING_SELECTED, PathBuilder
from .route_store import RouteStore


class SessionClosed(RuntimeError):
    pass


class MapSession:
    """One render surface owned by the caller.

    ``open``/``close`` bracket its life. A build that finishes after the
    surface closed (or was reopened) is dropped instead of applied.
    """

    def __init__(self, builder: PathBuilder, store: RouteStore) -> None:
        self._builder = builder
        self._store = store
        self._generation = 0
        self._alive = False
        self._busy = False
        self.status = ""
        self.last_result: BuildResult | None = None
        self._unsubscribe = None

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def busy(self) -> bool:
        return self._busy

    def open(self) -> None:
        if self._alive:
            return
        self._generation += 1
        self._alive = True
        self.status = STATUS_NOTHING_SELECTED
        self.last_result = None
        self._unsubscribe = self._store.subscribe(self._on_routes_changed)
        log_event("map_session_opened", generation=self._generation)

    def close(self) -> None:
        if not self._alive:
            return
        self._alive = False
        self._generation += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        log_event("map_session_closed", generation=self._generation)

    def _on_routes_changed(self, routes: list[Route]) -> None:
        # Stored edits invalidate whatever is drawn; the next render picks them up.
        self.last_result = None

    def _set_status(self, text: str) -> None:
        if self._alive:
            self.status = text

    def _selected(self, route_ids: Sequence[str]) -> list[Route]:
        wanted = [rid for rid in route_ids if str(rid).strip()]
        by_id = {r.id: r for r in self._store.get()}
        return [by_id[rid] for rid in wanted if rid in by_id]

    async def render(self, route_ids: Sequence[str]) -> BuildResult | None:
        """Build the selected routes; ``None`` when busy or the surface went away meanwhile."""
        if not self._alive:
            raise SessionClosed("map session is not open")
        if self._busy:
            log_event("render_skipped_busy", route_ids=list(route_ids))
            return None

        routes = self._selected(route_ids)
        if not routes:
            self.status = STATUS_NOTHING_SELECTED
            self.last_result = BuildResult(status=STATUS_NOTHING_SELECTED)
            return self.last_result

        generation = self._generation
        self._busy = True
        try:
            result = await self._builder.build_routes(routes, on_status=self._set_status)
        finally:
            self._busy = False

        if not self._alive or generation != self._generation:
            log_event("render_discarded", route_ids=[r.id for r in routes])
            return None
        self.status = result.status
        self.last_result = result
        return result
