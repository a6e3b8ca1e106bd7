from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "label_unresolvable",
        "label_missing",
        "geocode_no_candidate",
        "geocode_hint_too_far",
        "geocode_out_of_bounds",
        "route_provider_failed",
        "route_geometry_invalid",
        "coordinate_out_of_bounds",
        "segment_jump_unrealistic",
        "route_not_found",
        "segment_not_found",
        "engine_error",
    }
)


@dataclass
class RouteEngineError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class LabelError(RouteEngineError):
    """Label text is ambiguous, instruction-only or otherwise unusable as an anchor."""


class MissingLabel(LabelError):
    pass


class GeocodeError(RouteEngineError):
    """No place-search candidate survived the envelope and hint checks."""


class RouteError(RouteEngineError):
    """Routing provider failed or returned malformed geometry.

    RouteCache downgrades this to ``None`` so callers draw a straight line instead.
    """


class BoundsViolation(RouteEngineError):
    pass


class UnrealisticJump(RouteEngineError):
    pass


class NotFoundError(RouteEngineError):
    """Unknown route id or segment index in the store."""


def normalize_reason_code(reason_code: str, *, default: str = "engine_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def error_payload(exc: RouteEngineError) -> dict[str, Any]:
    return {
        "reason_code": normalize_reason_code(exc.reason_code),
        "message": exc.message,
        "details": exc.details or {},
    }
