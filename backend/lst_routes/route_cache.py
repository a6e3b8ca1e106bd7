from __future__ import annotations

import asyncio
import copy
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from threading import Lock
from typing import Protocol

from .errors import RouteError
from .geo import is_sane_path, normalize_path
from .json_store import JsonDocument
from .logging_utils import log_event
from .models import LatLng
from .routing_osrm import OSRMError
from .settings import settings


class PathProvider(Protocol):
    async def fetch_path(self, origin: LatLng, destination: LatLng) -> list[list[float]]: ...


def route_key(origin: LatLng, destination: LatLng) -> str:
    return f"{origin.lng:.6f},{origin.lat:.6f}|{destination.lng:.6f},{destination.lat:.6f}"


class RouteCacheStore:
    """Bounded ``key -> [[lng, lat], ...]`` map; entries are re-validated on every read."""

    def __init__(
        self,
        *,
        max_entries: int,
        evict_batch: int,
        document: JsonDocument | None = None,
    ) -> None:
        self._max_entries = max(1, int(max_entries))
        self._evict_batch = max(1, min(int(evict_batch), self._max_entries))
        self._doc = document or JsonDocument(None)
        self._lock = Lock()
        self._items: OrderedDict[str, list[list[float]]] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._rejected = 0

        raw = self._doc.read()
        if isinstance(raw, dict):
            for key, value in raw.items():
                if isinstance(key, str) and isinstance(value, list):
                    self._items[key] = value

    def _persist(self) -> None:
        if self._doc.path is not None:
            self._doc.write(dict(self._items))

    def get(self, key: str) -> list[list[float]] | None:
        with self._lock:
            coords = self._items.get(key)
            if coords is None:
                self._misses += 1
                return None

            if not is_sane_path(coords):
                # Corrupt or wildly out-of-area entry: drop it and refetch.
                self._items.pop(key, None)
                self._rejected += 1
                self._misses += 1
                self._persist()
                log_event("route_cache_rejected", key=key)
                return None

            self._hits += 1
            return copy.deepcopy(coords)

    def set(self, key: str, coords: list[list[float]]) -> None:
        payload = normalize_path(coords)
        with self._lock:
            self._items.pop(key, None)
            self._items[key] = payload

            if len(self._items) > self._max_entries:
                evicted = 0
                while self._items and evicted < self._evict_batch:
                    self._items.popitem(last=False)
                    evicted += 1
                self._evictions += evicted
                log_event("route_cache_evicted", evicted=evicted, size=len(self._items))
            self._persist()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            self._persist()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "rejected": self._rejected,
                "max_entries": self._max_entries,
            }


class RouteCache:
    """Road-following paths between two anchors; ``None`` means "draw a straight line"."""

    def __init__(
        self,
        client: PathProvider,
        *,
        store: RouteCacheStore | None = None,
        throttle_s: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.store = store or RouteCacheStore(
            max_entries=settings.route_cache_max_entries,
            evict_batch=settings.route_cache_evict_batch,
            document=JsonDocument(settings.route_cache_path or None),
        )
        self._throttle_s = settings.route_throttle_ms / 1000.0 if throttle_s is None else max(0.0, throttle_s)
        self._sleep = sleep
        self.network_calls = 0

    async def path(self, origin: LatLng, destination: LatLng) -> list[list[float]] | None:
        key = route_key(origin, destination)
        cached = self.store.get(key)
        if cached is not None:
            log_event("route_cache_hit", key=key)
            return cached

        try:
            coords = await self._fetch(origin, destination)
        except RouteError as e:
            log_event("osrm_route_failed", key=key, reason_code=e.reason_code, error=e.message)
            return None

        self.store.set(key, coords)
        return normalize_path(coords)

    async def _fetch(self, origin: LatLng, destination: LatLng) -> list[list[float]]:
        await self._sleep(self._throttle_s)
        self.network_calls += 1
        try:
            coords = await self._client.fetch_path(origin, destination)
        except OSRMError as e:
            raise RouteError(
                reason_code="route_provider_failed",
                message=str(e),
                details={"status_code": e.status_code},
            ) from e
        if not is_sane_path(coords):
            raise RouteError(reason_code="route_geometry_invalid", message="malformed geometry")
        return coords
