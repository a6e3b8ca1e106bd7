from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from tempfile import gettempdir
from typing import Any, Final

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME: Final[str] = "lst_routes"
LOG_FILE_NAME: Final[str] = "engine.log.jsonl"

# LogRecord attributes that ``extra`` may not overwrite.
_RESERVED: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime"}
)


def _level_from_name(name: str) -> int:
    level = logging.getLevelName(str(name or "").upper())
    return level if isinstance(level, int) else logging.INFO


def _log_dir_candidates(out_dir: str) -> Iterator[Path]:
    if out_dir:
        yield Path(out_dir) / "logs"
    yield Path.cwd() / "out" / "logs"
    yield Path(gettempdir()) / "lst-routes" / "logs"


def _writable_log_dir(out_dir: str) -> Path | None:
    for log_dir in _log_dir_candidates(out_dir):
        probe = log_dir / ".writetest"
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "asctime": "ts"},
    )


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_level_from_name(settings.log_level))
    logger.propagate = False
    formatter = _formatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    # File logging is best-effort: a read-only checkout still gets stderr logs.
    log_dir = _writable_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured record; ``event`` is both the message and a top-level key."""
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    extra = {(f"field_{k}" if k in _RESERVED else k): v for k, v in fields.items()}
    extra["event"] = event
    LOGGER.log(level, event, extra=extra)
