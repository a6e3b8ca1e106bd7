from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

RiskRating = Literal["L", "M", "H"]
EndpointKey = Literal["from", "to"]
RouteEndKey = Literal["start", "end"]
PolylineKind = Literal["segment", "route_fallback"]
PolylineSource = Literal["stored_geometry", "routed", "straight_line"]


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    @field_validator("lat", "lng")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("coordinate must be finite")
        return v


class Anchor(LatLng):
    """A resolved endpoint; ``display_name`` records where it came from."""

    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(default="", alias="displayName")


class Bounds(BaseModel):
    min_lat: float
    min_lng: float
    max_lat: float
    max_lng: float


def _coerce_coords(value: object) -> object:
    # Loosely-typed documents carry {} / strings / half-filled pairs; drop them instead of failing the load.
    if value is None or isinstance(value, LatLng):
        return value
    if not isinstance(value, dict):
        return None
    try:
        lat = float(value.get("lat"))  # type: ignore[arg-type]
        lng = float(value.get("lng"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return {"lat": lat, "lng": lng}


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


class Segment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    road: str = ""
    from_label: str = Field(default="", alias="from")
    to_label: str = Field(default="", alias="to")
    risk: RiskRating = "L"
    from_coords: LatLng | None = Field(default=None, alias="fromCoords")
    to_coords: LatLng | None = Field(default=None, alias="toCoords")
    geometry: list[list[float]] | None = None
    comment: str = ""

    @field_validator("road", "from_label", "to_label", "comment", mode="before")
    @classmethod
    def default_text(cls, v: object) -> str:
        return _text(v)

    @field_validator("risk", mode="before")
    @classmethod
    def coerce_risk(cls, v: object) -> str:
        risk = _text(v).upper()
        return risk if risk in {"L", "M", "H"} else "L"

    @field_validator("from_coords", "to_coords", mode="before")
    @classmethod
    def coerce_coords(cls, v: object) -> object:
        return _coerce_coords(v)

    @field_validator("geometry", mode="before")
    @classmethod
    def coerce_geometry(cls, v: object) -> object:
        if not isinstance(v, list) or len(v) < 2:
            return None
        out: list[list[float]] = []
        for pt in v:
            if not isinstance(pt, (list, tuple)) or len(pt) < 2:
                return None
            try:
                lng, lat = float(pt[0]), float(pt[1])
            except (TypeError, ValueError):
                return None
            if not (math.isfinite(lng) and math.isfinite(lat)):
                return None
            out.append([lng, lat])
        return out

    def label(self, key: EndpointKey) -> str:
        return self.from_label if key == "from" else self.to_label

    def coords(self, key: EndpointKey) -> LatLng | None:
        return self.from_coords if key == "from" else self.to_coords


class Route(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    notes: str = ""
    start_label: str = Field(default="", alias="startLabel")
    start_postcode: str = Field(default="", alias="startPostcode")
    start_coords: LatLng | None = Field(default=None, alias="startCoords")
    end_label: str = Field(default="", alias="endLabel")
    end_postcode: str = Field(default="", alias="endPostcode")
    end_coords: LatLng | None = Field(default=None, alias="endCoords")
    segments: list[Segment] = Field(default_factory=list)

    @field_validator(
        "title", "notes", "start_label", "start_postcode", "end_label", "end_postcode", mode="before"
    )
    @classmethod
    def default_text(cls, v: object) -> str:
        return _text(v)

    @field_validator("start_coords", "end_coords", mode="before")
    @classmethod
    def coerce_coords(cls, v: object) -> object:
        return _coerce_coords(v)

    @field_validator("segments", mode="before")
    @classmethod
    def default_segments(cls, v: object) -> object:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, (dict, Segment))]

    def start_anchor_label(self) -> str:
        return (self.start_postcode or self.start_label).strip()

    def end_anchor_label(self) -> str:
        return (self.end_postcode or self.end_label).strip()

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PolylineStyle(BaseModel):
    color: str
    weight: int
    opacity: float
    dash_array: str | None = None


class PolylinePopup(BaseModel):
    title: str
    road: str = ""
    risk: RiskRating | None = None
    risk_label: str | None = None
    from_text: str = ""
    to_text: str = ""
    comment: str = ""
    note: str = ""


class Polyline(BaseModel):
    kind: PolylineKind
    source: PolylineSource
    route_id: str
    segment_index: int | None = None
    coordinates: list[list[float]]
    style: PolylineStyle
    popup: PolylinePopup

    @property
    def routing_fallback(self) -> bool:
        return self.source == "straight_line"


class SegmentFailure(BaseModel):
    route_id: str
    segment_index: int
    road: str = ""
    reason_code: str
    message: str


class BuildResult(BaseModel):
    polylines: list[Polyline] = Field(default_factory=list)
    bounds: Bounds | None = None
    failed_segments: int = 0
    failures: list[SegmentFailure] = Field(default_factory=list)
    status: str = ""


class BuildRoutesRequest(BaseModel):
    route_ids: list[str] = Field(default_factory=list)


class ProbeResponse(BaseModel):
    ok: bool
    message: str
    from_anchor: Anchor | None = None
    to_anchor: Anchor | None = None


class PickRequest(BaseModel):
    route_id: str
    key: Literal["start", "end", "from", "to"]
    segment_index: int | None = Field(default=None, ge=0)


class DrawRequest(BaseModel):
    route_id: str
    enabled: bool = True
    risk: RiskRating = "L"
    chain: bool = True
    snap: bool = True


class PointerEvent(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class CaptureStatus(BaseModel):
    mode: Literal["idle", "pick", "draw"] = "idle"
    route_id: str | None = None
    key: str | None = None
    segment_index: int | None = None
    pending_start: LatLng | None = None
    message: str = ""
