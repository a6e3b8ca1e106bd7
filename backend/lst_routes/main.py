from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .anchors import AnchorResolver
from .capture import OverrideCapture
from .errors import NotFoundError, RouteEngineError, error_payload
from .geocode_cache import GeocodeCache
from .geocoding_photon import PhotonClient
from .json_store import JsonDocument
from .logging_utils import log_event
from .map_session import MapSession, SessionClosed
from .models import (
    BuildResult,
    BuildRoutesRequest,
    CaptureStatus,
    DrawRequest,
    PickRequest,
    PointerEvent,
    ProbeResponse,
)
from .path_builder import PathBuilder
from .retry import RetryPolicy
from .route_cache import RouteCache, RouteCacheStore
from .route_import import route_from_extraction
from .route_store import RouteStore
from .routing_osrm import OSRMClient
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    retry = RetryPolicy.from_settings()
    app.state.photon = PhotonClient(
        base_url=settings.photon_base_url,
        timeout_s=settings.http_timeout_s,
        retry=retry,
    )
    app.state.osrm = OSRMClient(
        base_url=settings.osrm_base_url,
        profile=settings.osrm_profile,
        timeout_s=settings.http_timeout_s,
        retry=retry,
    )
    app.state.geocode_cache = GeocodeCache(
        app.state.photon,
        document=JsonDocument(settings.geocode_cache_path or None),
    )
    app.state.route_cache = RouteCache(
        app.state.osrm,
        store=RouteCacheStore(
            max_entries=settings.route_cache_max_entries,
            evict_batch=settings.route_cache_evict_batch,
            document=JsonDocument(settings.route_cache_path or None),
        ),
    )
    app.state.store = RouteStore(JsonDocument(settings.resolved_route_store_path()))
    app.state.builder = PathBuilder(AnchorResolver(app.state.geocode_cache), app.state.route_cache)
    app.state.capture = OverrideCapture(app.state.store, app.state.route_cache)
    app.state.session = MapSession(app.state.builder, app.state.store)
    app.state.session.open()
    yield
    app.state.session.close()
    await app.state.photon.aclose()
    await app.state.osrm.aclose()


app = FastAPI(title="LST Route Anchor Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RouteEngineError)
async def route_engine_error_handler(request: Request, exc: RouteEngineError) -> JSONResponse:
    status_code = 404 if isinstance(exc, NotFoundError) else 422
    return JSONResponse(status_code=status_code, content={"detail": error_payload(exc)})


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)  # type: ignore[attr-defined]
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialised")
    return value


def route_store(request: Request) -> RouteStore:
    return _state(request, "store")


def path_builder(request: Request) -> PathBuilder:
    return _state(request, "builder")


def map_session(request: Request) -> MapSession:
    return _state(request, "session")


def override_capture(request: Request) -> OverrideCapture:
    return _state(request, "capture")


def geocode_cache(request: Request) -> GeocodeCache:
    return _state(request, "geocode_cache")


def route_cache(request: Request) -> RouteCache:
    return _state(request, "route_cache")


StoreDep = Annotated[RouteStore, Depends(route_store)]
BuilderDep = Annotated[PathBuilder, Depends(path_builder)]
SessionDep = Annotated[MapSession, Depends(map_session)]
CaptureDep = Annotated[OverrideCapture, Depends(override_capture)]
GeocodeCacheDep = Annotated[GeocodeCache, Depends(geocode_cache)]
RouteCacheDep = Annotated[RouteCache, Depends(route_cache)]


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/routes")
async def list_routes(store: StoreDep, q: str = "") -> list[dict[str, Any]]:
    return [r.to_document() for r in store.search_routes(q)]


@app.get("/routes/export", response_class=PlainTextResponse)
async def export_routes(store: StoreDep) -> str:
    return store.export_seed()


@app.post("/routes/reset")
async def reset_routes(store: StoreDep) -> list[dict[str, Any]]:
    return [r.to_document() for r in store.reset()]


@app.post("/routes/import")
async def import_route(payload: dict[str, Any], store: StoreDep) -> dict[str, Any]:
    route = route_from_extraction(payload)
    if not route.segments:
        raise HTTPException(status_code=422, detail="extracted route has no segments")
    saved = store.add_route(route)
    log_event("route_imported", route_id=saved.id, segment_count=len(saved.segments))
    return saved.to_document()


@app.delete("/routes/{route_id}")
async def delete_route(route_id: str, store: StoreDep) -> dict[str, str]:
    store.delete_route(route_id)
    return {"deleted": route_id}


@app.post("/routes/build", response_model=BuildResult)
async def build_routes(req: BuildRoutesRequest, session: SessionDep) -> BuildResult:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    was_busy = session.busy
    try:
        result = await session.render(req.route_ids)
    except SessionClosed as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    if result is None:
        if was_busy:
            raise HTTPException(status_code=409, detail="a render is already in progress")
        raise HTTPException(status_code=409, detail="render discarded: the map session was closed or reopened")

    log_event(
        "build_request",
        request_id=request_id,
        route_ids=req.route_ids,
        polyline_count=len(result.polylines),
        failed_segments=result.failed_segments,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return result


@app.post("/routes/{route_id}/segments/{index}/probe", response_model=ProbeResponse)
async def probe_segment(route_id: str, index: int, store: StoreDep, builder: BuilderDep) -> ProbeResponse:
    route = store.find(route_id)
    if not 0 <= index < len(route.segments):
        raise NotFoundError(
            reason_code="segment_not_found",
            message=f"Route {route_id} has no segment {index}",
            details={"route_id": route_id, "segment_index": index},
        )
    return await builder.probe_segment(route, index)


@app.get("/cache/stats")
async def cache_stats(geocodes: GeocodeCacheDep, paths: RouteCacheDep) -> dict[str, Any]:
    return {
        "geocode": geocodes.stats(),
        "route": {**paths.store.snapshot(), "network_calls": paths.network_calls},
    }


@app.delete("/cache")
async def clear_caches(geocodes: GeocodeCacheDep, paths: RouteCacheDep) -> dict[str, int]:
    cleared = {"geocode": geocodes.clear(), "route": paths.store.clear()}
    log_event("caches_cleared", **cleared)
    return cleared


@app.post("/capture/pick", response_model=CaptureStatus)
async def capture_pick(req: PickRequest, capture: CaptureDep) -> CaptureStatus:
    return capture.start_pick(req.route_id, req.key, req.segment_index)


@app.post("/capture/draw", response_model=CaptureStatus)
async def capture_draw(req: DrawRequest, capture: CaptureDep) -> CaptureStatus:
    return capture.start_draw(req.route_id, enabled=req.enabled, risk=req.risk, chain=req.chain, snap=req.snap)


@app.post("/capture/click", response_model=CaptureStatus)
async def capture_click(event: PointerEvent, capture: CaptureDep) -> CaptureStatus:
    return await capture.click(event.lat, event.lng)


@app.post("/capture/move")
async def capture_move(event: PointerEvent, capture: CaptureDep) -> dict[str, Any]:
    preview = await capture.move(event.lat, event.lng)
    return {"preview": preview.model_dump() if preview is not None else None}


@app.delete("/capture", response_model=CaptureStatus)
async def capture_cancel(capture: CaptureDep) -> CaptureStatus:
    return capture.cancel()
