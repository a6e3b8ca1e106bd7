from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from .settings import settings

T = TypeVar("T")


def parse_status_codes(raw: str | None) -> frozenset[int]:
    parsed: set[int] = set()
    for token in str(raw or "").split(","):
        part = token.strip()
        if not part:
            continue
        try:
            code = int(part)
        except ValueError:
            continue
        if 100 <= code <= 599:
            parsed.add(code)
    return frozenset(parsed or {429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.25
    max_delay_s: float = 2.0
    jitter_s: float = 0.1
    retryable_status: frozenset[int] = frozenset({429, 500, 502, 503, 504})

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_base_delay_ms / 1000.0,
            max_delay_s=settings.retry_max_delay_ms / 1000.0,
            jitter_s=settings.retry_jitter_ms / 1000.0,
            retryable_status=parse_status_codes(settings.retry_status_codes),
        )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, base_delay_s=0.0, max_delay_s=0.0, jitter_s=0.0)

    def backoff_s(self, attempt: int) -> float:
        attempt = max(1, int(attempt))
        bounded = min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))
        if self.jitter_s > 0:
            bounded += random.uniform(0.0, self.jitter_s)
        return max(0.0, min(self.max_delay_s, bounded))

    def is_retryable(self, exc: BaseException) -> bool:
        status = getattr(exc, "status_code", None)
        if isinstance(status, int):
            return status in self.retryable_status
        if isinstance(exc, httpx.HTTPStatusError):
            return int(exc.response.status_code) in self.retryable_status
        transient = (httpx.TimeoutException, httpx.TransportError)
        # Clients wrap transport failures in their own error types.
        return isinstance(exc, transient) or isinstance(exc.__cause__, transient)


async def retry_async(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``call`` until it succeeds, a non-retryable error occurs or attempts run out.

    The last exception is re-raised unchanged so callers keep their own error types.
    """
    should_retry = retryable or policy.is_retryable
    max_attempts = max(1, int(policy.max_attempts))

    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except Exception as exc:
            if attempt >= max_attempts or not should_retry(exc):
                raise
            await sleep(policy.backoff_s(attempt))

    # Should be unreachable, but keep type-checkers happy.
    raise RuntimeError("retry loop exhausted")
