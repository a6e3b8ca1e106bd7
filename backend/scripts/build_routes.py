from __future__ import annotations

import argparse
import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

from lst_routes.anchors import AnchorResolver
from lst_routes.geocode_cache import GeocodeCache
from lst_routes.geocoding_photon import PhotonClient
from lst_routes.json_store import JsonDocument
from lst_routes.models import BuildResult, Route
from lst_routes.path_builder import PathBuilder
from lst_routes.retry import RetryPolicy
from lst_routes.route_cache import RouteCache
from lst_routes.route_store import RouteStore, parse_routes
from lst_routes.routing_osrm import OSRMClient
from lst_routes.settings import settings


def _utc_now_compact() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve stored LST routes to road-following polylines headlessly."
    )
    parser.add_argument("--routes-json", default=None, help="Route list JSON (defaults to the configured store).")
    parser.add_argument("--route-id", action="append", default=[], help="Route to build; repeatable. Default: all.")
    parser.add_argument("--photon-url", default=settings.photon_base_url)
    parser.add_argument("--osrm-url", default=settings.osrm_base_url)
    parser.add_argument("--out", default=None, help="Result JSON path.")
    return parser


def load_routes(path: str | None) -> list[Route]:
    if path is None:
        return RouteStore().get()
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("routes")
    if not isinstance(payload, list):
        raise ValueError("routes JSON must be a list or an object with 'routes'")
    return parse_routes(payload)


def select_routes(routes: list[Route], route_ids: Sequence[str]) -> list[Route]:
    if not route_ids:
        return routes
    by_id = {r.id: r for r in routes}
    missing = [rid for rid in route_ids if rid not in by_id]
    if missing:
        raise ValueError(f"unknown route id(s): {', '.join(missing)}")
    return [by_id[rid] for rid in route_ids]


async def build_headless(
    routes: list[Route],
    *,
    photon_url: str,
    osrm_url: str,
    photon: PhotonClient | None = None,
    osrm: OSRMClient | None = None,
) -> BuildResult:
    retry = RetryPolicy.from_settings()
    own_photon = photon is None
    own_osrm = osrm is None
    photon = photon or PhotonClient(base_url=photon_url, timeout_s=settings.http_timeout_s, retry=retry)
    osrm = osrm or OSRMClient(
        base_url=osrm_url,
        profile=settings.osrm_profile,
        timeout_s=settings.http_timeout_s,
        retry=retry,
    )
    try:
        geocodes = GeocodeCache(photon, document=JsonDocument(settings.geocode_cache_path or None))
        builder = PathBuilder(AnchorResolver(geocodes), RouteCache(osrm))
        return await builder.build_routes(routes, on_status=lambda text: print(text, flush=True))
    finally:
        if own_photon:
            await photon.aclose()
        if own_osrm:
            await osrm.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    routes = select_routes(load_routes(args.routes_json), args.route_id)
    result = asyncio.run(build_headless(routes, photon_url=args.photon_url, osrm_url=args.osrm_url))

    out_path = (
        Path(args.out)
        if args.out
        else Path(settings.out_dir) / "builds" / f"routes_{_utc_now_compact()}.json"
    )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "route_ids": [r.id for r in routes],
        **result.model_dump(mode="json"),
    }
    out_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    print(json.dumps({"out": str(out_path), "status": result.status, "failed_segments": result.failed_segments}))
    return 0 if result.polylines else 1


if __name__ == "__main__":
    raise SystemExit(main())
