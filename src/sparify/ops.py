"""Operational utilities for Sparify."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .models import utcnow

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class StructuredLogger:
    """Write JSON lines log entries and mirror them to the ``sparify`` logger."""

    def __init__(self, *, path: Path | str | None = None, name: str = "sparify") -> None:
        self.path = Path(path) if path else None
        self._entries: list[dict] = []
        self._logger = logging.getLogger(name)

    def log(self, event_type: str, *, level: str = "info", **fields: Any) -> dict:
        entry = {"timestamp": utcnow().isoformat(), "event": event_type, "level": level, **fields}
        self._entries.append(entry)
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        self._logger.log(_LEVELS.get(level, logging.INFO), "%s %s", event_type, json.dumps(fields, default=str))
        return entry

    def warning(self, event_type: str, **fields: Any) -> dict:
        return self.log(event_type, level="warning", **fields)

    def error(self, event_type: str, **fields: Any) -> dict:
        return self.log(event_type, level="error", **fields)

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        return tuple(entry for entry in self._entries if entry["event"] == event_type)


__all__ = ["StructuredLogger"]
