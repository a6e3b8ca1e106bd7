"""Route-sheet label classification.

Route sheets mix real place references ("Landwade Rd, Newmarket", "Leicester LE1")
with turn-by-turn notes ("At roundabout take 3rd exit onto A17") and bare road
numbers ("M6"). Only the first kind is a reliable geocoding target; the helpers
here decide which text the resolver should look up for each segment endpoint.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Final

from .models import EndpointKey, Route, Segment

UK_POSTCODE_RE: Final[re.Pattern[str]] = re.compile(r"\b[A-Z]{1,2}\d{1,2}[A-Z]?\s*\d[A-Z]{2}\b", re.IGNORECASE)
_MOTION_VERB_RE: Final[re.Pattern[str]] = re.compile(
    r"^(at|take|then|turn|continue|bear|keep|follow|exit|slip)\b", re.IGNORECASE
)
_JUNCTION_WORD_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(roundabout|flyover|1st|2nd|3rd|4th|5th)\b", re.IGNORECASE
)
_ACTION_WORD_RE: Final[re.Pattern[str]] = re.compile(r"\b(exit|take|onto|into)\b", re.IGNORECASE)
_ROAD_TOKEN_RE: Final[re.Pattern[str]] = re.compile(
    r"\b([AM]\d{1,3})(?:\s*/\s*([AM]?\d{1,3}))?\b", re.IGNORECASE
)
_ROAD_ONLY_RE: Final[re.Pattern[str]] = re.compile(r"^[AM]\d{1,3}(?:\s*/\s*[AM]?\d{1,3})?$", re.IGNORECASE)


def has_postcode(label: str | None) -> bool:
    return bool(UK_POSTCODE_RE.search(str(label or "")))


def is_instruction_like(label: str | None) -> bool:
    s = str(label or "").strip()
    if not s:
        return True
    # A postcode makes it a real anchor, whatever else the cell says.
    if has_postcode(s):
        return False
    if _MOTION_VERB_RE.search(s):
        return True
    if _JUNCTION_WORD_RE.search(s) and _ACTION_WORD_RE.search(s):
        return True
    return False


def extract_road_token(label: str | None) -> str:
    m = _ROAD_TOKEN_RE.search(str(label or ""))
    if not m:
        return ""
    if m.group(2):
        return f"{m.group(1).upper()}/{m.group(2).upper()}"
    return m.group(1).upper()


def is_road_only_label(label: str | None) -> bool:
    s = str(label or "").strip()
    if not s:
        return False
    return bool(_ROAD_ONLY_RE.match(s))


def _neighbour_label(neighbour: Segment, key: EndpointKey, fallback: str) -> str:
    text = neighbour.label(key).strip()
    if text and not is_instruction_like(text):
        return text
    token = extract_road_token(text) or extract_road_token(neighbour.road)
    return token or neighbour.road.strip() or fallback


def effective_label(route: Route, segments: Sequence[Segment], index: int, key: EndpointKey) -> str:
    """Pick the text to geocode for ``segments[index]``'s ``key`` endpoint.

    An empty result means "no usable anchor text": the resolver then continues
    from the previous point instead of geocoding.
    """
    raw = segments[index].label(key).strip()
    # "A17", "M6", "A17/A47" on their own could be anywhere along the road.
    if is_road_only_label(raw):
        return ""
    if not is_instruction_like(raw):
        return raw

    token = extract_road_token(raw)
    if token:
        return token

    if key == "to" and index == len(segments) - 1:
        return route.end_anchor_label() or raw
    if key == "from" and index == 0:
        return route.start_anchor_label() or raw

    if key == "to" and index + 1 < len(segments):
        return _neighbour_label(segments[index + 1], "from", raw)
    if key == "from" and index - 1 >= 0:
        return _neighbour_label(segments[index - 1], "to", raw)

    return raw


def next_anchor_label(route: Route, segments: Sequence[Segment], index: int) -> str:
    """Look ahead for the first later label that can stand on its own as a place."""

    def pick(value: str) -> str:
        v = value.strip()
        if not v or is_road_only_label(v):
            return ""
        if not is_instruction_like(v) or has_postcode(v):
            return v
        return ""

    for later in segments[index + 1 :]:
        found = pick(later.from_label) or pick(later.to_label)
        if found:
            return found
    return route.end_anchor_label()
