from __future__ import annotations

from typing import Any

import httpx

from .retry import RetryPolicy, retry_async


class PhotonError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PhotonRetryableError(PhotonError):
    """Rate limiting or a transient transport failure."""

    pass


class PhotonClient:
    """Thin async client for a Photon place-search endpoint (GeoJSON features)."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 30.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._retry = retry or RetryPolicy.from_settings()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=min(5.0, timeout_s)),
            trust_env=False,
            headers={"accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def search(self, query: str, *, limit: int, bbox: str) -> list[dict[str, Any]]:
        params = {"q": query, "limit": str(int(limit)), "bbox": bbox}
        url = f"{self.base_url}/api/"

        async def _call() -> list[dict[str, Any]]:
            try:
                resp = await self._client.get(url, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                raise PhotonRetryableError(f"{type(e).__name__}: {e!s}") from e

            if resp.status_code in self._retry.retryable_status:
                raise PhotonRetryableError(f"Photon HTTP {resp.status_code}", status_code=resp.status_code)
            if resp.status_code >= 400:
                raise PhotonError(f"Photon HTTP {resp.status_code}", status_code=resp.status_code)

            try:
                data = resp.json()
            except ValueError as e:
                raise PhotonError("Photon returned invalid JSON") from e

            features = data.get("features") if isinstance(data, dict) else None
            if not isinstance(features, list):
                return []
            return [f for f in features if isinstance(f, dict)]

        return await retry_async(_call, policy=self._retry)
