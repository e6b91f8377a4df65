"""Background copying of files between tiers, with verification of each copy."""

from __future__ import annotations

import abc
import contextlib
import dataclasses
import enum
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, BinaryIO

from tierstore.model import (
    Backend,
    DigestHasher,
    DigestMismatchError,
    File,
    FileState,
    FileTier,
    MetadataStore,
    TierFSError,
    compute_file_digest,
)
from tierstore.throttle import ThrottledReader, TokenBucket
from tierstore.write_guard import WriteGuard

QUEUE_CAPACITY = 4096
_POLL_INTERVAL = 0.05


@dataclass
class CopyJob:
    """One file to copy from one tier to another."""

    rel_path: str
    from_tier: str
    to_tier: str
    retries: int = 0
    enqueued_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "relPath": self.rel_path,
            "fromTier": self.from_tier,
            "toTier": self.to_tier,
            "retries": self.retries,
            "enqueuedAt": self.enqueued_at.isoformat() if self.enqueued_at else None,
        }


@dataclass
class ReplicatorConfig:
    """Settings of the replication worker pool.

    ``verify`` is ``"none"``, ``"size"`` or ``"digest"``; ``retry_interval`` and
    ``backend_timeout`` are in seconds; ``bandwidth_limit`` is bytes per second
    shared by all workers, 0 meaning unlimited.
    """

    workers: int = 1
    max_retries: int = 0
    retry_interval: float = 1.0
    verify: str = "none"
    backend_timeout: float | None = None
    write_guard: WriteGuard | None = None
    bandwidth_limit: int = 0


class TierLookup(abc.ABC):
    """Resolves a tier name to its backend."""

    @abc.abstractmethod
    def backend_for(self, tier_name: str) -> Backend:
        """Return the backend of ``tier_name``; raises TierNotFoundError when unknown."""


class _Outcome(enum.Enum):
    COPIED = "copied"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


class _HashingReader:
    """Passes reads through while feeding every byte to a hasher."""

    def __init__(self, stream: Any, hasher: DigestHasher) -> None:
        self._stream = stream
        self._hasher = hasher

    def readable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        data = self._stream.read(-1 if size is None else size)
        if data:
            self._hasher.update(data)
        return data


class Replicator:
    """Pool of worker threads that copy files between tiers and verify them.

    Jobs wait in a bounded queue of 4096; when it is full a job is dropped
    with a warning. A failed job is retried up to ``max_retries`` times.
    Files that are still being written, or whose destination is unhealthy,
    are put back on the queue without using up a retry.
    """

    def __init__(
        self,
        config: ReplicatorConfig,
        meta: MetadataStore,
        tiers: TierLookup,
        logger: logging.Logger | None = None,
    ) -> None:
        self._cfg = config
        self._meta = meta
        self._tiers = tiers
        self._log = logger or logging.getLogger(__name__)
        self._queue: queue.Queue[CopyJob] = queue.Queue(maxsize=QUEUE_CAPACITY)
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []
        self._counter_lock = threading.Lock()
        self._copied = 0
        self._failed = 0
        self._depth = 0
        self._pending_lock = threading.Lock()
        self._pending: dict[str, CopyJob] = {}
        self._limiter = TokenBucket(config.bandwidth_limit) if config.bandwidth_limit > 0 else None
        self._health: Any = None

    def set_health(self, health: Any) -> None:
        """Consult ``health.is_healthy(tier)`` before each copy. Set before start()."""
        self._health = health

    def start(self) -> None:
        for worker_id in range(self._cfg.workers):
            thread = threading.Thread(
                target=self._work, args=(worker_id,), name=f"replicator-{worker_id}", daemon=True
            )
            self._workers.append(thread)
            thread.start()

    def stop(self) -> None:
        """Stop all workers and wait for them; jobs still queued are left there."""
        self._stop.set()
        for thread in self._workers:
            thread.join()
        self._workers.clear()

    def enqueue(self, job: CopyJob) -> None:
        """Queue ``job`` without blocking; drops it with a warning if the queue is full."""
        if job.enqueued_at is None:
            job = dataclasses.replace(job, enqueued_at=datetime.now(timezone.utc))
        with self._pending_lock:
            with self._counter_lock:
                try:
                    self._queue.put_nowait(job)
                except queue.Full:
                    self._log.warning(
                        "replication queue full, dropping job",
                        extra={"rel_path": job.rel_path, "from_tier": job.from_tier, "to_tier": job.to_tier},
                    )
                    return
                self._depth += 1
            self._pending[job.rel_path] = dataclasses.replace(job)

    def metrics(self) -> tuple[int, int, int]:
        """Return ``(copied, failed, queue_depth)``."""
        with self._counter_lock:
            return self._copied, self._failed, self._depth

    def pending_jobs(self) -> list[CopyJob]:
        """Jobs queued or being processed."""
        with self._pending_lock:
            return [dataclasses.replace(job) for job in self._pending.values()]

    def _forget(self, rel_path: str) -> None:
        with self._pending_lock:
            self._pending.pop(rel_path, None)

    def _work(self, worker_id: int) -> None:
        while not self._stop.is_set():
            try:
                job = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            with self._counter_lock:
                self._depth -= 1
            try:
                outcome = self._process(job)
            except Exception as exc:
                with self._counter_lock:
                    self._failed += 1
                if job.retries < self._cfg.max_retries:
                    job = dataclasses.replace(job, retries=job.retries + 1)
                    self._log.warning(
                        "copy failed, scheduling retry: %s",
                        exc,
                        extra={"rel_path": job.rel_path, "retry": job.retries, "worker": worker_id},
                    )
                    if self._stop.wait(self._cfg.retry_interval):
                        return
                    self.enqueue(job)
                else:
                    self._log.error(
                        "copy permanently failed after max retries: %s",
                        exc,
                        extra={"rel_path": job.rel_path, "worker": worker_id},
                    )
                    self._forget(job.rel_path)
                continue
            if outcome is _Outcome.COPIED:
                with self._counter_lock:
                    self._copied += 1
                self._forget(job.rel_path)
            elif outcome is _Outcome.SKIPPED:
                self._forget(job.rel_path)

    def _defer(self, job: CopyJob) -> _Outcome:
        if not self._stop.wait(self._cfg.retry_interval):
            self.enqueue(job)
        return _Outcome.DEFERRED

    def _process(self, job: CopyJob) -> _Outcome:
        guard = self._cfg.write_guard
        if guard is not None:
            active, reason = guard.is_write_active(job.rel_path)
            if active:
                self._log.info(
                    "delaying replication: file is write-active",
                    extra={"rel_path": job.rel_path, "reason": reason},
                )
                return self._defer(job)

        src = self._tiers.backend_for(job.from_tier)
        dst = self._tiers.backend_for(job.to_tier)

        if self._health is not None and not self._health.is_healthy(job.to_tier):
            self._log.warning(
                "skipping replication: destination backend unhealthy",
                extra={"rel_path": job.rel_path, "to_tier": job.to_tier},
            )
            return self._defer(job)

        file = self._meta.get_file(job.rel_path)

        if self._is_stale(src, file):
            self._log.warning(
                "aborting replication: source file changed since enqueue",
                extra={"rel_path": job.rel_path},
            )
            return _Outcome.SKIPPED

        if self._cfg.verify == "digest":
            self._refresh_digest(src, file)

        self._log.info(
            "copying file",
            extra={"rel_path": job.rel_path, "from_tier": src.uri(job.rel_path), "to_tier": dst.uri(job.rel_path)},
        )
        self._meta.add_file_tier(
            FileTier(
                rel_path=job.rel_path,
                tier_name=job.to_tier,
                arrived_at=datetime.now(timezone.utc),
                verified=False,
            )
        )

        hasher = self._copy(src, dst, job.rel_path, file)
        self._verify(dst, job.rel_path, file, hasher)

        self._meta.mark_tier_verified(job.rel_path, job.to_tier)
        file.state = FileState.SYNCED
        self._meta.upsert_file(file)
        self._log.info("copy complete", extra={"rel_path": job.rel_path, "to_tier": dst.uri(job.rel_path)})
        return _Outcome.COPIED

    @staticmethod
    def _is_stale(src: Backend, file: File) -> bool:
        try:
            live = src.stat(file.rel_path)
        except Exception:
            return False
        size_changed = live.size != file.size
        mtime_changed = (
            live.mod_time is not None and file.mod_time is not None and live.mod_time != file.mod_time
        )
        return size_changed or mtime_changed

    def _refresh_digest(self, src: Backend, file: File) -> None:
        local = src.local_path(file.rel_path)
        if local is None:
            return
        fresh = compute_file_digest(local)
        if fresh != file.digest:
            self._log.info(
                "updating stale digest",
                extra={"rel_path": file.rel_path, "old_digest": file.digest, "new_digest": fresh},
            )
            file.digest = fresh
            self._meta.upsert_file(file)

    def _copy(self, src: Backend, dst: Backend, rel_path: str, file: File) -> DigestHasher | None:
        stream, size = src.get(rel_path)
        hasher: DigestHasher | None = None
        try:
            reader: Any = stream
            if self._limiter is not None:
                reader = ThrottledReader(
                    reader, self._limiter, timeout=self._cfg.backend_timeout, cancel=self._stop
                )
            if self._cfg.verify == "digest" and file.digest:
                hasher = DigestHasher()
                reader = _HashingReader(reader, hasher)
            dst.put(rel_path, reader, size)
        finally:
            _close(stream)
        return hasher

    def _verify(self, dst: Backend, rel_path: str, file: File, hasher: DigestHasher | None) -> None:
        if self._cfg.verify == "digest":
            if not file.digest:
                return
            local = dst.local_path(rel_path)
            if local is not None:
                got = compute_file_digest(local)
            elif hasher is not None:
                got = hasher.hexdigest()
            else:
                return
            if got != file.digest:
                _discard(dst, rel_path)
                raise DigestMismatchError(file.digest, got)
        elif self._cfg.verify == "size":
            info = dst.stat(rel_path)
            if info.size != file.size:
                _discard(dst, rel_path)
                raise TierFSError(f"size mismatch: want {file.size} got {info.size}")


def _close(stream: BinaryIO) -> None:
    close = getattr(stream, "close", None)
    if callable(close):
        close()


def _discard(backend: Backend, rel_path: str) -> None:
    with contextlib.suppress(Exception):
        backend.delete(rel_path)