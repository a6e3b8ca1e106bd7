from __future__ import annotations

import copy
import json
from pathlib import Path
from threading import Lock
from typing import Any


class JsonDocument:
    """One JSON document, kept on disk when ``path`` is set and in memory otherwise.

    Unreadable or corrupt files read back as ``None`` so callers can fall back to defaults.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._memory: Any = None
        self.lock = Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def read(self) -> Any:
        if self._path is None:
            return copy.deepcopy(self._memory)
        if not self._path.exists():
            return None
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def write(self, payload: Any) -> None:
        if self._path is None:
            self._memory = copy.deepcopy(payload)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def clear(self) -> None:
        if self._path is None:
            self._memory = None
            return
        self._path.unlink(missing_ok=True)
