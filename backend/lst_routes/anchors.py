from __future__ import annotations

from typing import Literal, Protocol

from .errors import BoundsViolation, LabelError, MissingLabel
from .geo import coerce_uk_coordinate, in_uk_bounds
from .labels import is_road_only_label
from .models import Anchor, LatLng, Route, Segment

AnchorKey = Literal["from", "to", "start", "end"]


class Geocoder(Protocol):
    async def geocode(self, label: str, hint: LatLng | None = None) -> Anchor: ...


def override_for(endpoint: Segment | Route, key: AnchorKey) -> Anchor | None:
    """An operator-pinned coordinate wins over any text, but only inside the envelope."""
    if isinstance(endpoint, Route):
        raw = endpoint.start_coords if key == "start" else endpoint.end_coords
    else:
        raw = endpoint.from_coords if key == "from" else endpoint.to_coords
    point = coerce_uk_coordinate(raw)
    if point is None:
        return None
    return Anchor(lat=point.lat, lng=point.lng, display_name="Override")


def _label_for(endpoint: Segment | Route, key: AnchorKey) -> str:
    if isinstance(endpoint, Route):
        return endpoint.start_anchor_label() if key == "start" else endpoint.end_anchor_label()
    return endpoint.from_label if key == "from" else endpoint.to_label


class AnchorResolver:
    def __init__(self, geocoder: Geocoder) -> None:
        self._geocoder = geocoder

    async def resolve_endpoint(
        self,
        endpoint: Segment | Route,
        key: AnchorKey,
        hint: LatLng | None = None,
        label_override: str | None = None,
    ) -> Anchor:
        override = override_for(endpoint, key)
        if override is not None:
            return override

        if hint is not None and not in_uk_bounds(hint.lat, hint.lng):
            hint = None

        raw = str(label_override if label_override is not None else _label_for(endpoint, key)).strip()
        if not raw:
            # Nothing to look up: carry on from the previous point so the chain doesn't break.
            if hint is not None:
                name = getattr(hint, "display_name", "") or "Continued"
                return Anchor(lat=hint.lat, lng=hint.lng, display_name=name)
            raise MissingLabel(
                reason_code="label_missing",
                message=f"Missing geocode label for {key}",
                details={"key": key},
            )

        if hint is None and is_road_only_label(raw):
            raise LabelError(
                reason_code="label_unresolvable",
                message=f"Road-only label '{raw}' cannot be geocoded without a nearby anchor",
                details={"key": key, "label": raw},
            )

        anchor = await self._geocoder.geocode(raw, hint)
        if not in_uk_bounds(anchor.lat, anchor.lng):
            raise BoundsViolation(
                reason_code="coordinate_out_of_bounds",
                message=f"Resolved {key} for '{raw}' lies outside the UK envelope",
                details={"lat": anchor.lat, "lng": anchor.lng},
            )
        return anchor
