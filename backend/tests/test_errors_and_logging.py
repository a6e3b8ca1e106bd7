from __future__ import annotations

import logging

import pytest

from lst_routes import logging_utils
from lst_routes.errors import (
    FROZEN_REASON_CODES,
    GeocodeError,
    NotFoundError,
    RouteEngineError,
    error_payload,
    normalize_reason_code,
)
from lst_routes.settings import Settings


def test_reason_codes_are_frozen() -> None:
    assert normalize_reason_code("geocode_hint_too_far") == "geocode_hint_too_far"
    assert normalize_reason_code("  segment_jump_unrealistic ") == "segment_jump_unrealistic"
    assert normalize_reason_code("something_new") == "engine_error"
    assert normalize_reason_code("") == "engine_error"
    assert normalize_reason_code("bogus", default="label_missing") == "label_missing"
    assert "engine_error" in FROZEN_REASON_CODES


def test_error_payload_shape() -> None:
    exc = GeocodeError(reason_code="geocode_no_candidate", message="No match for Ely", details={"label": "Ely"})
    assert str(exc) == "No match for Ely"
    assert isinstance(exc, RouteEngineError)
    assert error_payload(exc) == {
        "reason_code": "geocode_no_candidate",
        "message": "No match for Ely",
        "details": {"label": "Ely"},
    }
    assert error_payload(NotFoundError(reason_code="made_up", message="x"))["reason_code"] == "engine_error"


def test_log_event_emits_structured_fields(monkeypatch) -> None:  # noqa: ANN001
    records: list[logging.LogRecord] = []

    class _Capture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging.getLogger("lst_routes.test")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = _Capture()
    logger.addHandler(handler)
    monkeypatch.setattr(logging_utils, "LOGGER", logger)
    try:
        logging_utils.log_event("segment_failed", level=logging.WARNING, route_id="r", segment_index=2)
        logging_utils.log_event("route_store_saved", name="clash", message="clash")
    finally:
        logger.removeHandler(handler)

    assert len(records) == 2
    assert records[1].field_name == "clash"  # type: ignore[attr-defined]
    assert records[1].field_message == "clash"  # type: ignore[attr-defined]
    rec = records[0]
    assert rec.getMessage() == "segment_failed"
    assert rec.levelno == logging.WARNING
    assert rec.event == "segment_failed"  # type: ignore[attr-defined]
    assert rec.segment_index == 2  # type: ignore[attr-defined]


def test_get_logger_configures_once() -> None:
    first = logging_utils.get_logger()
    handlers = list(first.handlers)
    assert logging_utils.get_logger() is first
    assert first.handlers == handlers


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        ({"GEOCODE_THROTTLE_MS": "-5"}, 0),
        ({"GEOCODE_THROTTLE_MS": "350"}, 350),
    ],
)
def test_settings_clamp_timing(monkeypatch, env, expected) -> None:  # noqa: ANN001
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    assert Settings().geocode_throttle_ms == expected


def test_settings_defaults(monkeypatch, tmp_path) -> None:  # noqa: ANN001
    monkeypatch.setenv("OUT_DIR", str(tmp_path))
    monkeypatch.setenv("ROUTE_CACHE_MAX_ENTRIES", "20")
    monkeypatch.setenv("ROUTE_CACHE_EVICT_BATCH", "50")
    cfg = Settings()

    assert cfg.route_throttle_ms == 180
    assert cfg.draw_preview_debounce_ms == 280
    assert cfg.geocode_max_hint_distance_km == 120.0
    assert cfg.segment_max_jump_km == 180.0
    assert cfg.route_cache_evict_batch == 20
    assert cfg.resolved_route_store_path() == tmp_path / "routes.json"
