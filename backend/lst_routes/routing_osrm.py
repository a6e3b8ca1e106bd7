from __future__ import annotations

from typing import Any

import httpx

from .models import LatLng
from .retry import RetryPolicy, retry_async


class OSRMError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OSRMRetryableError(OSRMError):
    """An OSRM error that is likely transient and safe to retry."""

    pass


def _format_osrm_error(resp: httpx.Response) -> str:
    """Best-effort decode of OSRM JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            code = data.get("code")
            message = data.get("message")
            if code and message:
                return f"OSRM {resp.status_code} {code}: {message}"
            if code:
                return f"OSRM {resp.status_code} {code}"
            if message:
                return f"OSRM {resp.status_code}: {message}"
    except ValueError:
        # fall through to text
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"OSRM {resp.status_code}: {body}"
    return f"OSRM HTTP {resp.status_code}"


def extract_path(payload: Any) -> list[list[float]]:
    """Pull ``routes[0].geometry.coordinates`` out of an OSRM response."""
    if not isinstance(payload, dict):
        raise OSRMError("OSRM returned a non-object payload")
    if payload.get("code") != "Ok":
        raise OSRMError(f"OSRM error code={payload.get('code')} message={payload.get('message')}")

    routes = payload.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        raise OSRMError("OSRM returned no routes")

    geom = routes[0].get("geometry")
    if not isinstance(geom, dict):
        raise OSRMError("OSRM route missing geometry")
    coords = geom.get("coordinates")
    if not isinstance(coords, list) or len(coords) < 2:
        raise OSRMError("OSRM geometry missing coordinates")
    return coords


class OSRMClient:
    def __init__(
        self,
        *,
        base_url: str,
        profile: str = "driving",
        timeout_s: float = 30.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self._retry = retry or RetryPolicy.from_settings()

        # IMPORTANT: trust_env=False prevents corporate proxy env vars (HTTP_PROXY/HTTPS_PROXY)
        # from hijacking requests to a self-hosted OSRM on localhost.
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=min(5.0, timeout_s)),
            trust_env=False,
            headers={"accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_path(self, origin: LatLng, destination: LatLng) -> list[list[float]]:
        """Return the full road-following geometry as ``[[lng, lat], ...]``."""
        coords = f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        url = f"{self.base_url}/route/v1/{self.profile}/{coords}"
        params = {"overview": "full", "geometries": "geojson"}

        async def _call() -> list[list[float]]:
            try:
                resp = await self._client.get(url, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
                raise OSRMRetryableError(f"{type(e).__name__}: {e!s}") from e

            if resp.status_code in self._retry.retryable_status:
                raise OSRMRetryableError(_format_osrm_error(resp), status_code=resp.status_code)
            if resp.status_code >= 400:
                raise OSRMError(_format_osrm_error(resp), status_code=resp.status_code)

            try:
                data = resp.json()
            except ValueError as e:
                raise OSRMError("OSRM returned invalid JSON") from e
            return extract_path(data)

        return await retry_async(_call, policy=self._retry)
