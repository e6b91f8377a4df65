"""Tracking of open and recently closed write handles per path."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone

OPEN_HANDLE = "open write handle"
QUIESCENCE_WINDOW = "quiescence window"


@dataclass(frozen=True)
class WriteGuardEntry:
    """Snapshot of one path's write-guard state."""

    open_count: int
    last_close: datetime | None
    quiescent_soon: bool


@dataclass
class _Entry:
    open_count: int = 0
    closed_at: float | None = None
    closed_wall: datetime | None = None


class WriteGuard:
    """Decides whether a file is still being written and must not be copied.

    A path is write-active while any write handle is open, or while less than
    ``quiescence`` seconds have passed since its last handle closed. Safe for
    concurrent use.
    """

    def __init__(self, quiescence: float = 0.0) -> None:
        self._quiescence = quiescence
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def open(self, rel_path: str) -> None:
        with self._lock:
            self._entries.setdefault(rel_path, _Entry()).open_count += 1

    def close(self, rel_path: str) -> None:
        with self._lock:
            entry = self._entries.setdefault(rel_path, _Entry())
            if entry.open_count > 0:
                entry.open_count -= 1
            if entry.open_count == 0:
                entry.closed_at = time.monotonic()
                entry.closed_wall = datetime.now(timezone.utc)

    def is_write_active(self, rel_path: str) -> tuple[bool, str]:
        """Return ``(True, reason)`` if a copy must wait, else ``(False, "")``."""
        with self._lock:
            entry = self._entries.get(rel_path)
            if entry is None:
                return False, ""
            if entry.open_count > 0:
                return True, OPEN_HANDLE
            if self._quiescence > 0 and entry.closed_at is not None:
                if time.monotonic() - entry.closed_at < self._quiescence:
                    return True, QUIESCENCE_WINDOW
            return False, ""

    def forget(self, rel_path: str) -> None:
        with self._lock:
            self._entries.pop(rel_path, None)

    def snapshot(self) -> dict[str, WriteGuardEntry]:
        """Entries with open handles or a close within twice the quiescence window."""
        now = time.monotonic()
        out: dict[str, WriteGuardEntry] = {}
        with self._lock:
            for path, entry in self._entries.items():
                elapsed = None if entry.closed_at is None else now - entry.closed_at
                if entry.open_count == 0 and (elapsed is None or elapsed > 2 * self._quiescence):
                    continue
                quiescent_soon = (
                    entry.open_count == 0
                    and self._quiescence > 0
                    and elapsed is not None
                    and elapsed < self._quiescence
                )
                out[path] = WriteGuardEntry(
                    open_count=entry.open_count,
                    last_close=entry.closed_wall,
                    quiescent_soon=quiescent_soon,
                )
        return out