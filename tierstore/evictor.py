"""Age- and capacity-driven movement of files to colder tiers."""

from __future__ import annotations

import abc
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tierstore.model import (
    File,
    FileState,
    MetadataStore,
    NoRuleMatchError,
    NotExistError,
    Policy,
    Rule,
    is_final,
)
from tierstore.replicator import CopyJob, Replicator, TierLookup


@dataclass
class EvictorConfig:
    """Settings of the eviction loop.

    ``check_interval`` is in seconds. A tier is relieved once its usage ratio
    exceeds ``capacity_threshold``, evicting down to ``capacity_headroom``.
    """

    check_interval: float = 60.0
    capacity_threshold: float = 0.9
    capacity_headroom: float = 0.7
    tier_names: list[str] = field(default_factory=list)


class TierCapacity(abc.ABC):
    """Reports used and total bytes of each tier."""

    @abc.abstractmethod
    def used_bytes(self, tier_name: str) -> int:
        """Bytes currently used on ``tier_name``."""

    @abc.abstractmethod
    def capacity_bytes(self, tier_name: str) -> tuple[int, bool]:
        """Return ``(capacity, unlimited)`` for ``tier_name``."""

    @abc.abstractmethod
    def tier_names(self) -> list[str]:
        """Names of all tiers to check."""


def next_tier_from_schedule(rule: Rule, current_tier: str) -> str:
    """First tier in the rule's schedule other than ``current_tier``, ignoring age; "" if none."""
    for step in rule.evict_schedule:
        if step.to_tier != current_tier:
            return step.to_tier
    return ""


def _age_seconds(moment: datetime) -> float:
    now = datetime.now(moment.tzinfo) if moment.tzinfo is not None else datetime.now()
    return (now - moment).total_seconds()


@dataclass
class _Candidate:
    file: File
    arrived_at: datetime
    target_tier: str


class Evictor:
    """Moves files down the tiers according to each rule's eviction schedule.

    On every tick it also checks tier capacity and, when a tier is too full,
    evicts its oldest synced files first until usage falls to the headroom.
    """

    def __init__(
        self,
        config: EvictorConfig,
        meta: MetadataStore,
        policy: Policy,
        replicator: Replicator,
        tiers: TierLookup,
        capacity: TierCapacity,
        logger: logging.Logger | None = None,
    ) -> None:
        self._cfg = config
        self._meta = meta
        self._policy = policy
        self._replicator = replicator
        self._tiers = tiers
        self._capacity = capacity
        self._log = (logger or logging.getLogger("tierstore")).getChild("evictor")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Run ticks every ``check_interval`` seconds in a background thread."""
        self._thread = threading.Thread(target=self._loop, name="evictor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def tick(self) -> None:
        """One pass: schedule-based eviction on every tier, then the capacity check."""
        for tier_name in self._cfg.tier_names:
            self._tick_tier(tier_name)
        self._capacity_pass()

    def promote_for_read(self, file: File, target_tier: str) -> None:
        """Queue a copy of ``file`` to a hotter tier; the cold copy goes on a later tick."""
        self._replicator.enqueue(
            CopyJob(rel_path=file.rel_path, from_tier=file.current_tier, to_tier=target_tier)
        )

    def _loop(self) -> None:
        while not self._stop.wait(self._cfg.check_interval):
            self.tick()

    def _tick_tier(self, tier_name: str) -> None:
        try:
            files = self._meta.eviction_candidates(tier_name, datetime.now(timezone.utc))
        except Exception as exc:
            self._log.error("eviction candidates: %s", exc, extra={"tier": tier_name})
            return
        for file in files:
            try:
                rule = self._policy.match(file.rel_path)
            except NoRuleMatchError:
                continue
            if rule.pin_tier == file.current_tier:
                continue
            self._evaluate_schedule(file, rule)

    def _evaluate_schedule(self, file: File, rule: Rule) -> None:
        if not rule.evict_schedule:
            return
        try:
            arrived_at = self._meta.tier_arrived_at(file.rel_path, file.current_tier)
        except Exception:
            self._log.debug("tier arrived_at missing", extra={"path": file.rel_path})
            return
        if arrived_at is None:
            return
        age = _age_seconds(arrived_at)

        target = ""
        for step in rule.evict_schedule:
            if step.never or age < step.after:
                break
            if step.to_tier == file.current_tier:
                continue
            target = step.to_tier
        if not target:
            return

        try:
            verified = self._meta.is_tier_verified(file.rel_path, target)
        except Exception as exc:
            self._log.error("check tier verified: %s", exc, extra={"path": file.rel_path})
            return
        if not verified:
            self._replicator.enqueue(
                CopyJob(rel_path=file.rel_path, from_tier=file.current_tier, to_tier=target)
            )
            return
        self._evict(file, target)

    def _evict(self, file: File, target_tier: str) -> None:
        context = {"path": file.rel_path, "from_tier": file.current_tier, "to_tier": target_tier}
        try:
            backend = self._tiers.backend_for(file.current_tier)
        except Exception as exc:
            self._log.error("resolve backend for eviction: %s", exc, extra=context)
            return

        try:
            backend.delete(file.rel_path)
        except NotExistError:
            pass
        except Exception as exc:
            self._log.error("delete from source tier: %s", exc, extra=context)
            return

        try:
            self._meta.remove_file_tier(file.rel_path, file.current_tier)
        except Exception as exc:
            self._log.error("remove file tier record: %s", exc, extra=context)

        try:
            destination = self._tiers.backend_for(target_tier)
        except Exception:
            destination = None
        if destination is not None and is_final(destination):
            try:
                self._meta.delete_file(file.rel_path)
            except Exception as exc:
                self._log.error("purge finalised file from metadata: %s", exc, extra=context)
            self._log.info("file finalised and purged", extra=context)
            return

        try:
            self._meta.upsert_file(dataclasses.replace(file, current_tier=target_tier))
        except Exception as exc:
            self._log.error("update current tier in meta: %s", exc, extra=context)
            return
        self._log.info("evicted file to next tier", extra=context)

    def _capacity_pass(self) -> None:
        for tier_name in self._capacity.tier_names():
            capacity, unlimited = self._capacity.capacity_bytes(tier_name)
            if unlimited or capacity <= 0:
                continue
            try:
                used = self._capacity.used_bytes(tier_name)
            except Exception as exc:
                self._log.error("capacity check: used bytes: %s", exc, extra={"tier": tier_name})
                continue
            ratio = used / capacity
            if ratio <= self._cfg.capacity_threshold:
                continue
            self._log.info(
                "capacity threshold exceeded",
                extra={"tier": tier_name, "ratio": ratio, "threshold": self._cfg.capacity_threshold},
            )
            target = int(self._cfg.capacity_headroom * capacity)
            self._evict_for_capacity(tier_name, used, target)

    def _evict_for_capacity(self, tier_name: str, used: int, target: int) -> None:
        try:
            files = self._meta.files_on_tier(tier_name)
        except Exception as exc:
            self._log.error("capacity eviction: list files: %s", exc, extra={"tier": tier_name})
            return

        candidates: list[_Candidate] = []
        for file in files:
            if file.state != FileState.SYNCED:
                continue
            try:
                rule = self._policy.match(file.rel_path)
            except NoRuleMatchError:
                continue
            if rule.pin_tier == file.current_tier:
                continue
            next_tier = next_tier_from_schedule(rule, file.current_tier)
            if not next_tier:
                continue
            try:
                verified = self._meta.is_tier_verified(file.rel_path, next_tier)
            except Exception:
                continue
            if not verified:
                self._replicator.enqueue(
                    CopyJob(rel_path=file.rel_path, from_tier=file.current_tier, to_tier=next_tier)
                )
                continue
            try:
                arrived_at = self._meta.tier_arrived_at(file.rel_path, tier_name)
            except Exception:
                continue
            if arrived_at is None:
                continue
            candidates.append(_Candidate(file, arrived_at, next_tier))

        candidates.sort(key=lambda c: c.arrived_at)
        remaining = used
        for candidate in candidates:
            if remaining <= target:
                break
            self._evict(candidate.file, candidate.target_tier)
            remaining -= candidate.file.size