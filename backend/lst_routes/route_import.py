"""Turn an extracted route-sheet payload into a stored ``Route``.

The payload mirrors what a sheet reader produces::

    {"journeyStart": {"name": ..., "postcode": ...},
     "journeyFinish": {"name": ..., "postcode": ...},
     "segments": [{"road": ..., "from": ..., "to": ..., "risk": "L|M|H"}],
     "notes": ...}

Cells that read as turn-by-turn instructions are moved into the segment
comment so only mappable text stays in ``from``/``to``.
"""

from __future__ import annotations

import re
import time
from typing import Any

from .labels import extract_road_token, has_postcode, is_instruction_like
from .models import Route, Segment

_POSTCODE_PARTS_RE = re.compile(r"\b([A-Z]{1,2}\d{1,2}[A-Z]?)\s*(\d[A-Z]{2})\b")
_NOTE_LINE_LIMIT = 25


def normalize_postcode(value: Any) -> str:
    if not value:
        return ""
    s = re.sub(r"\s+", " ", str(value).upper().strip())
    m = _POSTCODE_PARTS_RE.search(s)
    return f"{m.group(1)} {m.group(2)}" if m else s


def make_route_id(start: str = "", end: str = "") -> str:
    base = re.sub(r"[^a-z0-9]+", "-", f"{start} {end}".lower()).strip("-")[:60]
    return base or f"lst-{int(time.time() * 1000)}"


def _text(value: Any) -> str:
    return str(value or "").strip()


def _join_comment(existing: str, extra: str) -> str:
    return " • ".join(part for part in (existing, extra) if part)


def route_from_extraction(payload: dict[str, Any], *, route_id: str | None = None) -> Route:
    start = payload.get("journeyStart") or {}
    finish = payload.get("journeyFinish") or {}
    start_name = _text(start.get("name") if isinstance(start, dict) else "")
    end_name = _text(finish.get("name") if isinstance(finish, dict) else "")
    start_pc = normalize_postcode(start.get("postcode") if isinstance(start, dict) else "")
    end_pc = normalize_postcode(finish.get("postcode") if isinstance(finish, dict) else "")

    segments: list[Segment] = []
    note_lines: list[str] = []
    raw_segments = payload.get("segments")
    for raw in raw_segments if isinstance(raw_segments, list) else []:
        if not isinstance(raw, dict):
            continue
        seg = Segment(
            road=_text(raw.get("road")),
            from_label=_text(raw.get("from")),
            to_label=_text(raw.get("to")),
            risk=raw.get("risk"),
            comment=_text(raw.get("comment")),
        )
        if not (seg.road or seg.from_label or seg.to_label or seg.comment):
            continue

        if seg.to_label and is_instruction_like(seg.to_label):
            instruction = seg.to_label
            seg.comment = _join_comment(seg.comment, instruction)
            if seg.road:
                note_lines.append(f"{seg.road}: {instruction}")
            seg.to_label = extract_road_token(instruction)
        if seg.from_label and is_instruction_like(seg.from_label):
            instruction = seg.from_label
            seg.comment = _join_comment(seg.comment, instruction)
            if seg.road:
                note_lines.append(f"{seg.road} (from): {instruction}")
            seg.from_label = extract_road_token(instruction)
        segments.append(seg)

    # Keep the first and last segment near the journey ends.
    if segments:
        first, last = segments[0], segments[-1]
        if start_pc and start_name and not has_postcode(first.from_label):
            first.from_label = f"{start_name} {start_pc}".strip()
        if end_pc and end_name and not has_postcode(last.to_label):
            last.to_label = f"{end_name} {end_pc}".strip()

    notes = _text(payload.get("notes"))
    if note_lines:
        notes = "\n".join(part for part in (notes, "\n".join(note_lines[:_NOTE_LINE_LIMIT])) if part)

    return Route(
        id=route_id or make_route_id(start_name, end_name),
        title=f"{start_name or 'Route'} → {end_name or 'Destination'}",
        notes=notes,
        start_label=start_name,
        start_postcode=start_pc,
        end_label=end_name,
        end_postcode=end_pc,
        segments=segments,
    )
