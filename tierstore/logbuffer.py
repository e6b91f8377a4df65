"""In-memory ring buffer of recent log records."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}


@dataclass(frozen=True)
class LogEntry:
    """One captured log line."""

    time: datetime
    level: str
    logger: str
    message: str
    fields: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "ts": self.time.isoformat(),
            "level": self.level,
            "logger": self.logger,
            "msg": self.message,
        }
        if self.fields:
            out["fields"] = dict(self.fields)
        return out


class LogBuffer(logging.Handler):
    """Logging handler that keeps the last ``capacity`` records.

    Attributes passed through ``extra`` are kept as string fields.
    """

    def __init__(self, capacity: int, level: int = logging.DEBUG) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        super().__init__(level)
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._guard = threading.Lock()

    def entries(self, level: str = "", tail: int = 0) -> list[LogEntry]:
        """Buffered entries, oldest first, optionally of one level and only the last ``tail``."""
        with self._guard:
            out = [e for e in self._entries if not level or e.level == level]
        if tail > 0 and len(out) > tail:
            out = out[-tail:]
        return out

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                time=datetime.fromtimestamp(record.created, tz=timezone.utc),
                level=_LEVEL_NAMES.get(record.levelno, record.levelname.lower()),
                logger=record.name,
                message=record.getMessage(),
                fields={
                    key: str(value)
                    for key, value in vars(record).items()
                    if key not in _STANDARD_ATTRS
                },
            )
        except Exception:
            self.handleError(record)
            return
        with self._guard:
            self._entries.append(entry)