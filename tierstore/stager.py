"""Scratch-space copies of remote-tier files served to local readers."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import posixpath
import time
from dataclasses import dataclass
from datetime import datetime

META_SUFFIX = ".meta"


@dataclass
class StageMeta:
    """Sidecar record used to decide whether a staged copy is still current."""

    digest: str = ""
    mod_time: datetime | None = None
    size: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "digest": self.digest,
                "mtime": self.mod_time.isoformat() if self.mod_time is not None else None,
                "size": self.size,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> StageMeta:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("stage metadata must be a JSON object")
        mtime = data.get("mtime")
        return cls(
            digest=str(data.get("digest") or ""),
            mod_time=datetime.fromisoformat(mtime) if mtime else None,
            size=int(data.get("size") or 0),
        )


def _base_name(rel_path: str) -> str:
    stripped = rel_path.rstrip("/")
    if not stripped:
        return "/" if rel_path else "."
    return posixpath.basename(stripped)


class Stager:
    """Manages temporary local copies of remote files in ``stage_dir``."""

    def __init__(self, stage_dir: str, logger: logging.Logger | None = None) -> None:
        self.stage_dir = stage_dir
        self._log = (logger or logging.getLogger("tierstore")).getChild("stager")

    def stage_path(self, rel_path: str) -> str:
        """Collision-free path in the stage directory that keeps the file's base name."""
        prefix = hashlib.sha256(rel_path.encode("utf-8")).digest()[:8].hex()
        return os.path.join(self.stage_dir, f"{prefix}_{_base_name(rel_path)}")

    def meta_path(self, stage_path: str) -> str:
        return stage_path + META_SUFFIX

    def write_meta(self, stage_path: str, meta: StageMeta) -> None:
        with open(self.meta_path(stage_path), "w", encoding="utf-8") as out:
            out.write(meta.to_json())

    def read_meta(self, stage_path: str) -> StageMeta:
        """Read the sidecar; raises OSError when missing and ValueError when malformed."""
        with open(self.meta_path(stage_path), encoding="utf-8") as src:
            return StageMeta.from_json(src.read())

    def is_stale(
        self, stage_path: str, digest: str, mod_time: datetime | None, size: int
    ) -> bool:
        """Whether the staged copy differs from the given authoritative values."""
        try:
            meta = self.read_meta(stage_path)
        except (OSError, ValueError):
            return True
        if size > 0 and meta.size != size:
            return True
        if digest and meta.digest != digest:
            return True
        if mod_time is not None and meta.mod_time != mod_time:
            return True
        return False

    def clean_stale(self, stage_path: str) -> None:
        """Remove a staged file and its sidecar, ignoring what is already gone."""
        for path in (stage_path, self.meta_path(stage_path)):
            with contextlib.suppress(OSError):
                os.remove(path)

    def sweep_staging_dir(self, ttl: float) -> int:
        """Remove staged files (with sidecars) older than ``ttl`` seconds; return how many."""
        try:
            entries = list(os.scandir(self.stage_dir))
        except OSError as exc:
            self._log.warning("sweep staging dir: read dir: %s", exc)
            return 0
        cutoff = time.time() - ttl
        removed = 0
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                continue
            if os.path.splitext(entry.name)[1] == META_SUFFIX:
                continue
            try:
                mtime = entry.stat(follow_symlinks=False).st_mtime
            except OSError:
                continue
            if mtime < cutoff:
                self._log.debug("sweep: removing stale staged file", extra={"path": entry.path})
                self.clean_stale(entry.path)
                removed += 1
        if removed:
            self._log.info("swept stale staged files", extra={"removed": removed})
        return removed