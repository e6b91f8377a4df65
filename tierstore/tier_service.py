"""The central service that places, moves, renames and deletes files across tiers."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Mapping
from urllib.parse import urlsplit

from tierstore.evictor import Evictor, EvictorConfig, TierCapacity
from tierstore.health import BackendHealth
from tierstore.model import (
    Backend,
    File,
    FileState,
    FileTier,
    MetadataStore,
    NoRuleMatchError,
    NotExistError,
    Policy,
    TierFSError,
    TierNotFoundError,
    compute_file_digest,
)
from tierstore.replicator import CopyJob, Replicator, ReplicatorConfig, TierLookup
from tierstore.stager import Stager
from tierstore.write_guard import WriteGuard


@dataclass
class BackendSpec:
    """A named storage location given by URI, with its optional transforms."""

    name: str
    uri: str
    transform: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class TierSpec:
    """One tier: its backend, its priority (0 is hottest) and its capacity in bytes.

    ``capacity`` of ``None`` means unlimited.
    """

    name: str
    backend: BackendSpec
    priority: int = 0
    capacity: int | None = None

    @property
    def unlimited(self) -> bool:
        return self.capacity is None


@dataclass
class ReplicationSettings:
    """Replication settings; durations are in seconds, bandwidth in bytes per second."""

    workers: int = 4
    max_retries: int = 5
    retry_interval: float = 30.0
    verify: str = "digest"
    backend_timeout: float | None = 300.0
    bandwidth_limit: int = 0
    write_quiescence: float = 0.0
    health_check_interval: float = 30.0
    health_check_timeout: float = 5.0
    sweep_interval: float = 60.0


@dataclass
class EvictionSettings:
    """Eviction settings; ``check_interval`` is in seconds."""

    check_interval: float = 300.0
    capacity_threshold: float = 0.9
    capacity_headroom: float = 0.7


@dataclass
class TierServiceConfig:
    """Resolved configuration of tiers, backends, placement rules and workers."""

    tiers: list[TierSpec]
    policy: Policy
    replication: ReplicationSettings = field(default_factory=ReplicationSettings)
    eviction: EvictionSettings = field(default_factory=EvictionSettings)
    backends: list[BackendSpec] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.backends:
            seen: dict[str, BackendSpec] = {}
            for tier in self.tiers:
                seen.setdefault(tier.backend.name, tier.backend)
            self.backends = list(seen.values())

    def hottest_tier(self) -> TierSpec:
        """The tier with the lowest priority number."""
        if not self.tiers:
            raise TierNotFoundError("no tiers configured")
        return min(self.tiers, key=lambda tier: tier.priority)

    def tier_by_name(self, name: str) -> TierSpec:
        for tier in self.tiers:
            if tier.name == name:
                return tier
        raise TierNotFoundError(f"tier not found: {name!r}")


def _close(stream: BinaryIO) -> None:
    close = getattr(stream, "close", None)
    if callable(close):
        close()


def _promote_error(step: str, exc: BaseException) -> TierFSError:
    message = f"promote: {step}: {exc}"
    if isinstance(exc, NotExistError):
        return NotExistError(message)
    if isinstance(exc, TierNotFoundError):
        return TierNotFoundError(message)
    return TierFSError(message)


class TierService(TierLookup, TierCapacity):
    """Owns the tier registry and the background workers, and performs file operations.

    It resolves tier names to backends for the replicator and evictor, reports
    tier capacity, and carries out writes, reads, promotions, deletes and renames.
    """

    def __init__(
        self,
        config: TierServiceConfig,
        meta: MetadataStore,
        backends: Mapping[str, Backend],
        stager: Stager | None = None,
        stage_ttl: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        base = logger or logging.getLogger("tierstore")
        self._cfg = config
        self._meta = meta
        self._backends = dict(backends)
        self._log = base.getChild("tier-service")
        self._stager = stager
        self._stage_ttl = stage_ttl

        repl = config.replication
        self._guard = WriteGuard(repl.write_quiescence)
        self._replicator = Replicator(
            ReplicatorConfig(
                workers=repl.workers,
                max_retries=repl.max_retries,
                retry_interval=repl.retry_interval,
                verify=repl.verify,
                backend_timeout=repl.backend_timeout,
                write_guard=self._guard,
                bandwidth_limit=repl.bandwidth_limit,
            ),
            meta,
            self,
            base.getChild("replicator"),
        )
        names = [tier.name for tier in config.tiers]
        self._evictor = Evictor(
            EvictorConfig(
                check_interval=config.eviction.check_interval,
                capacity_threshold=config.eviction.capacity_threshold,
                capacity_headroom=config.eviction.capacity_headroom,
                tier_names=list(names),
            ),
            meta,
            config.policy,
            self._replicator,
            self,
            self,
            base,
        )
        self._health = BackendHealth(
            names,
            self,
            repl.health_check_interval,
            repl.health_check_timeout,
            base.getChild("health"),
        )
        self._replicator.set_health(self._health)

        self._sweep_stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._promote_lock = threading.Lock()
        self._promotions: dict[str, Future] = {}

    # ── accessors ────────────────────────────────────────────────────────────

    @property
    def config(self) -> TierServiceConfig:
        return self._cfg

    @property
    def meta(self) -> MetadataStore:
        return self._meta

    @property
    def guard(self) -> WriteGuard:
        return self._guard

    @property
    def replicator(self) -> Replicator:
        return self._replicator

    @property
    def evictor(self) -> Evictor:
        return self._evictor

    @property
    def health(self) -> BackendHealth:
        return self._health

    # ── lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start replication, eviction, health probes and the periodic sweep."""
        self._replicator.start()
        self._evictor.start()
        self._health.start()
        self._log.info(
            "tier service started",
            extra={"tiers": len(self._cfg.tiers), "replication_workers": self._cfg.replication.workers},
        )
        for target, name in ((self.requeue_pending, "requeue"), (self._sweep_loop, "sweep")):
            thread = threading.Thread(target=target, name=f"tier-service-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Stop every background worker and wait for them."""
        self._sweep_stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self._health.stop()
        self._evictor.stop()
        self._replicator.stop()
        self._log.info("tier service stopped")

    # ── tier lookup and capacity ─────────────────────────────────────────────

    def backend_for(self, tier_name: str) -> Backend:
        try:
            return self._backends[tier_name]
        except KeyError:
            raise TierNotFoundError(f"tier not found: {tier_name!r}") from None

    def tier_names(self) -> list[str]:
        return [tier.name for tier in self._cfg.tiers]

    def used_bytes(self, tier_name: str) -> int:
        """Sum of the sizes recorded for files currently on ``tier_name``."""
        return sum(file.size for file in self._meta.files_on_tier(tier_name))

    def capacity_bytes(self, tier_name: str) -> tuple[int, bool]:
        try:
            tier = self._cfg.tier_by_name(tier_name)
        except TierNotFoundError:
            return 0, False
        if tier.capacity is None:
            return 0, True
        return tier.capacity, False

    def hottest_tier_name(self) -> str:
        return self._cfg.hottest_tier().name

    # ── file operations ──────────────────────────────────────────────────────

    def write_target(self, rel_path: str) -> tuple[Backend, str]:
        """Backend and tier name for a new write: the rule's pinned tier, else the hottest."""
        tier_name = self._cfg.hottest_tier().name
        try:
            rule = self._cfg.policy.match(rel_path)
        except NoRuleMatchError:
            return self.backend_for(tier_name), tier_name
        if rule.pin_tier:
            tier_name = rule.pin_tier
        return self.backend_for(tier_name), tier_name

    def read_target(self, rel_path: str) -> tuple[Backend, str | None, File]:
        """Backend, local path (if any) and record of ``rel_path`` for reading.

        Queues a promotion when the matching rule asks for promote-on-read.
        """
        file = self._meta.get_file(rel_path)
        backend = self.backend_for(file.current_tier)
        local = backend.local_path(rel_path)

        try:
            rule = self._cfg.policy.match(rel_path)
        except NoRuleMatchError:
            rule = None
        if rule is not None and rule.promote_on_read.enabled:
            target = rule.promote_on_read.target_tier or self._cfg.hottest_tier().name
            if target != file.current_tier:
                self._evictor.promote_for_read(file, target)
        return backend, local, file

    def promote_to_hot(self, rel_path: str) -> tuple[Backend, str | None]:
        """Copy a file back to the hottest tier before it is opened for writing.

        The cold copy is left in place. Concurrent calls for one path share one copy.
        Returns the hot backend and the local path of the promoted file.
        """
        try:
            file = self._meta.get_file(rel_path)
        except Exception as exc:
            raise _promote_error("get metadata", exc) from exc

        hot = self._cfg.hottest_tier().name
        if file.current_tier == hot:
            backend = self.backend_for(hot)
            return backend, backend.local_path(rel_path)

        with self._promote_lock:
            future = self._promotions.get(rel_path)
            leader = future is None
            if leader:
                future = Future()
                self._promotions[rel_path] = future
        if not leader:
            return future.result()

        try:
            result = self._promote(rel_path, hot)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._promote_lock:
                self._promotions.pop(rel_path, None)

    def _promote(self, rel_path: str, hot: str) -> tuple[Backend, str | None]:
        try:
            file = self._meta.get_file(rel_path)
        except Exception as exc:
            raise _promote_error("re-check metadata", exc) from exc
        if file.current_tier == hot:
            backend = self.backend_for(hot)
            return backend, backend.local_path(rel_path)

        try:
            src = self.backend_for(file.current_tier)
        except TierFSError as exc:
            raise _promote_error(f"resolve source backend {file.current_tier!r}", exc) from exc
        try:
            dst = self.backend_for(hot)
        except TierFSError as exc:
            raise _promote_error(f"resolve hot backend {hot!r}", exc) from exc

        self._log.info(
            "promoting file for write",
            extra={"path": rel_path, "from_tier": file.current_tier, "to_tier": hot},
        )

        try:
            stream, size = src.get(rel_path)
        except Exception as exc:
            raise _promote_error(f"read from {file.current_tier!r}", exc) from exc
        try:
            dst.put(rel_path, stream, size)
        except Exception as exc:
            raise _promote_error(f"write to {hot!r}", exc) from exc
        finally:
            _close(stream)

        try:
            self._meta.upsert_file(dataclasses.replace(file, current_tier=hot, state=FileState.WRITING))
        except Exception as exc:
            raise _promote_error("update metadata", exc) from exc

        try:
            self._meta.add_file_tier(
                FileTier(rel_path=rel_path, tier_name=hot, arrived_at=datetime.now(timezone.utc), verified=False)
            )
        except Exception as exc:
            self._log.warning("promote: add file tier record: %s", exc, extra={"path": rel_path})

        return dst, dst.local_path(rel_path)

    def on_write_complete(
        self, rel_path: str, tier_name: str, size: int, mod_time: datetime | None
    ) -> None:
        """Record a finished write and queue its replication when the rule asks for it.

        For local files the digest, size and modification time are read from disk.
        """
        backend = self.backend_for(tier_name)
        digest = ""
        local = backend.local_path(rel_path)
        if local is not None:
            try:
                digest = compute_file_digest(local)
            except OSError as exc:
                self._log.warning("digest computation failed: %s", exc, extra={"path": rel_path})
            with contextlib.suppress(OSError):
                info = os.stat(local)
                mod_time = datetime.fromtimestamp(info.st_mtime, tz=timezone.utc)
                size = info.st_size

        self._meta.upsert_file(
            File(
                rel_path=rel_path,
                current_tier=tier_name,
                state=FileState.LOCAL,
                size=size,
                mod_time=mod_time,
                digest=digest,
            )
        )
        self._meta.add_file_tier(
            FileTier(rel_path=rel_path, tier_name=tier_name, arrived_at=datetime.now(timezone.utc), verified=True)
        )

        try:
            rule = self._cfg.policy.match(rel_path)
        except NoRuleMatchError:
            return
        if not rule.replicate:
            return
        for step in rule.evict_schedule:
            if step.to_tier != tier_name:
                self._replicator.enqueue(CopyJob(rel_path=rel_path, from_tier=tier_name, to_tier=step.to_tier))
                break

    def on_delete(self, rel_path: str) -> None:
        """Remove a file from every tier it is on and from the metadata."""
        self._guard.forget(rel_path)
        for file_tier in self._meta.get_file_tiers(rel_path):
            try:
                backend = self.backend_for(file_tier.tier_name)
            except TierNotFoundError:
                continue
            try:
                backend.delete(rel_path)
            except NotExistError:
                pass
            except Exception as exc:
                self._log.warning(
                    "delete from tier failed: %s", exc, extra={"path": rel_path, "tier": file_tier.tier_name}
                )
        self._meta.delete_file(rel_path)

    def on_rename(self, old_path: str, new_path: str) -> None:
        """Rename a file on every tier, then in the metadata.

        If any tier fails, the tiers already renamed are put back and the
        metadata is left untouched.
        """
        file = self._meta.get_file(old_path)
        tiers = self._meta.get_file_tiers(old_path)

        completed: list[FileTier] = []
        failure: TierFSError | None = None
        for file_tier in tiers:
            try:
                backend = self.backend_for(file_tier.tier_name)
            except TierNotFoundError as exc:
                failure = TierNotFoundError(f"rename: backend {file_tier.tier_name!r} not found: {exc}")
                failure.__cause__ = exc
                break
            try:
                self._move(backend, old_path, new_path, file_tier.tier_name)
            except TierFSError as exc:
                failure = exc
                break
            completed.append(file_tier)

        if failure is not None:
            for file_tier in reversed(completed):
                try:
                    backend = self.backend_for(file_tier.tier_name)
                    self._move(backend, new_path, old_path, file_tier.tier_name)
                except TierFSError as exc:
                    self._log.error(
                        "rename rollback failed: %s", exc, extra={"tier": file_tier.tier_name}
                    )
            raise failure

        self._meta.delete_file(old_path)
        self._meta.upsert_file(dataclasses.replace(file, rel_path=new_path))
        for file_tier in tiers:
            try:
                self._meta.add_file_tier(dataclasses.replace(file_tier, rel_path=new_path))
            except Exception as exc:
                self._log.warning("update file_tier on rename: %s", exc, extra={"path": new_path})

    def _move(self, backend: Backend, src: str, dst: str, tier_name: str) -> None:
        rename = getattr(backend, "rename", None)
        if callable(rename):
            try:
                rename(src, dst)
                return
            except Exception as exc:
                self._log.debug(
                    "native rename failed, trying copy+delete: %s", exc, extra={"tier": tier_name}
                )
        try:
            stream, size = backend.get(src)
        except Exception as exc:
            raise TierFSError(f"rename: copy from {tier_name!r} failed: {exc}") from exc
        try:
            backend.put(dst, stream, size)
        except Exception as exc:
            raise TierFSError(f"rename: put to {tier_name!r} failed: {exc}") from exc
        finally:
            _close(stream)
        try:
            backend.delete(src)
        except NotExistError:
            pass
        except Exception as exc:
            self._log.warning("rename copy+delete: delete old failed: %s", exc, extra={"tier": tier_name})

    # ── background sweep ─────────────────────────────────────────────────────

    def requeue_pending(self) -> int:
        """Queue replication for files left awaiting it; return how many were queued.

        Files that already have a pending job are skipped.
        """
        try:
            files = self._meta.files_awaiting_replication()
        except Exception as exc:
            self._log.error("requeue pending: list files: %s", exc)
            return 0

        pending = {job.rel_path for job in self._replicator.pending_jobs()}
        enqueued = 0
        for file in files:
            if file.rel_path in pending:
                continue
            try:
                rule = self._cfg.policy.match(file.rel_path)
            except NoRuleMatchError:
                continue
            if not rule.replicate:
                continue
            target = next(
                (step.to_tier for step in rule.evict_schedule if step.to_tier != file.current_tier), ""
            )
            if target:
                self._replicator.enqueue(
                    CopyJob(rel_path=file.rel_path, from_tier=file.current_tier, to_tier=target)
                )
                enqueued += 1

        self._log.info(
            "requeued pending replication jobs",
            extra={"awaiting": len(files), "enqueued": enqueued, "skipped_already_pending": len(files) - enqueued},
        )
        return enqueued

    def _sweep_loop(self) -> None:
        while not self._sweep_stop.wait(self._cfg.replication.sweep_interval):
            self.requeue_pending()
            if self._stager is not None and self._stage_ttl > 0:
                self._stager.sweep_staging_dir(self._stage_ttl)


def build_backend(spec: BackendSpec) -> Backend:
    """Check a backend URI; concrete backends are built by their own adapters.

    Always raises: ``file`` and ``s3`` URIs name adapters that must be built
    directly, and any other scheme is unsupported.
    """
    try:
        scheme = urlsplit(spec.uri).scheme
    except ValueError as exc:
        raise TierFSError(f"backend {spec.name!r}: parse URI: {exc}") from exc
    if scheme == "file":
        raise TierFSError("file:// backends must be built by the file storage adapter directly")
    if scheme == "s3":
        raise TierFSError("s3:// backends must be built by the s3 storage adapter directly")
    raise TierFSError(f"backend {spec.name!r}: unsupported scheme {scheme!r}")