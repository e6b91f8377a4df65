"""JSON admin API over a running tier service, usable as a WSGI application."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import parse_qs, urlsplit, urlunsplit

from tierstore.model import Rule

_ZERO_TIME = "0001-01-01T00:00:00Z"
_INT_RE = re.compile(r"[+-]?\d+")
_NS_PER_SECOND = 1_000_000_000
_NS_PER_MINUTE = 60 * _NS_PER_SECOND
_NS_PER_HOUR = 60 * _NS_PER_MINUTE


def resolve_transforms(transform: Mapping[str, Any] | None) -> list[str]:
    """Names of the transforms a backend applies, in the order they are applied."""
    transform = transform or {}
    out: list[str] = []
    compression = transform.get("compression")
    if compression is not None:
        algorithm = ""
        if isinstance(compression, Mapping):
            algorithm = compression.get("algorithm") or ""
        out.append(algorithm or "zstd")
    encryption = transform.get("encryption")
    if transform.get("checksum") is not None and encryption is None:
        out.append("xxh3-128")
    if encryption is not None:
        out.append("aes-256-gcm")
    return out


def sanitize_uri(raw: str) -> str:
    """``raw`` without any user name or password; unchanged if it cannot be parsed."""
    try:
        parts = urlsplit(raw)
    except ValueError:
        return raw
    netloc = parts.netloc.rpartition("@")[2]
    return urlunsplit(parts._replace(netloc=netloc))


def int_param(query: Mapping[str, str], key: str, default: int) -> int:
    """Non-negative integer from ``query[key]``, or ``default`` when absent or invalid."""
    text = query.get(key, "")
    if not text or not _INT_RE.fullmatch(text):
        return default
    value = int(text)
    return default if value < 0 else value


def _rfc3339(moment: Any) -> str:
    if moment is None:
        return _ZERO_TIME
    if isinstance(moment, (int, float)):
        moment = datetime.fromtimestamp(moment, timezone.utc)
    if moment.tzinfo is None:
        moment = moment.astimezone()
    offset = moment.utcoffset()
    stamp = moment.replace(microsecond=0, tzinfo=None).isoformat()
    if not offset:
        return stamp + "Z"
    total = int(offset.total_seconds())
    sign = "-" if total < 0 else "+"
    hours, minutes = divmod(abs(total) // 60, 60)
    return f"{stamp}{sign}{hours:02d}:{minutes:02d}"


def _decimal(value: int, unit: int) -> str:
    whole, frac = divmod(value, unit)
    if frac == 0:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{str(frac).zfill(digits).rstrip('0')}"


def _format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "never"
    ns = round(seconds * _NS_PER_SECOND)
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < _NS_PER_SECOND:
        if ns < 1_000:
            return f"{sign}{ns}ns"
        if ns < 1_000_000:
            return f"{sign}{_decimal(ns, 1_000)}µs"
        return f"{sign}{_decimal(ns, 1_000_000)}ms"
    hours, rest = divmod(ns, _NS_PER_HOUR)
    minutes, rest = divmod(rest, _NS_PER_MINUTE)
    secs = _decimal(rest, _NS_PER_SECOND)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _state_name(state: Any) -> str:
    return str(getattr(state, "value", state))


def _promote_value(rule: Rule) -> bool | str:
    promote = rule.promote_on_read
    if not promote.enabled:
        return False
    return promote.target_tier or True


def _parse_query(raw: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(raw, keep_blank_values=True).items()}


class AdminAPI:
    """Read-only views of configuration, tiers, files, replication, write guard and logs."""

    def __init__(self, service: Any, log_buffer: Any = None) -> None:
        self._service = service
        self._log_buffer = log_buffer
        self._routes: dict[str, Callable[[Mapping[str, str]], Any]] = {
            "/api/v1/config": lambda _query: self.config_view(),
            "/api/v1/tiers": lambda _query: self.tiers_view(),
            "/api/v1/files": self.files_view,
            "/api/v1/replication/queue": lambda _query: self.replication_view(),
            "/api/v1/writeguard": lambda _query: self.write_guard_view(),
            "/api/v1/logs": self.logs_view,
        }

    def config_view(self) -> dict[str, Any]:
        cfg = self._service.config
        tiers = [
            {
                "name": tier.name,
                "backend": tier.backend.name,
                "scheme": urlsplit(tier.backend.uri).scheme + "://",
                "capacity": tier.capacity,
                "priority": tier.priority,
                "transforms": resolve_transforms(tier.backend.transform),
            }
            for tier in cfg.tiers
        ]
        backends = [
            {"name": b.name, "uri": sanitize_uri(b.uri), "type": urlsplit(b.uri).scheme}
            for b in cfg.backends
        ]
        rules = [
            {
                "name": rule.name,
                "match": rule.match,
                "pinTier": rule.pin_tier,
                "evictSchedule": [
                    {"after": _format_duration(step.after), "to": step.to_tier}
                    for step in rule.evict_schedule
                ],
                "promoteOnRead": _promote_value(rule),
                "replicate": rule.replicate,
            }
            for rule in cfg.policy.rules()
        ]
        return {"tiers": tiers, "backends": backends, "rules": rules}

    def tiers_view(self) -> dict[str, Any]:
        cfg = self._service.config
        files = self._service.meta.list_files("")
        per_tier: dict[str, dict[str, Any]] = {
            tier.name: {"name": tier.name, "fileCount": 0, "bytesUsed": 0, "states": {}}
            for tier in cfg.tiers
        }
        global_states: dict[str, int] = {}
        for file in files:
            state = _state_name(file.state)
            global_states[state] = global_states.get(state, 0) + 1
            status = per_tier.get(file.current_tier)
            if status is not None:
                status["fileCount"] += 1
                status["bytesUsed"] += file.size
                status["states"][state] = status["states"].get(state, 0) + 1

        health = getattr(self._service, "health", None)
        if health is not None:
            for name, healthy in health.statuses().items():
                if name in per_tier:
                    per_tier[name]["healthy"] = bool(healthy)

        return {
            "tiers": [per_tier[tier.name] for tier in cfg.tiers],
            "totalFiles": len(files),
            "states": global_states,
        }

    def files_view(self, query: Mapping[str, str] | None = None) -> dict[str, Any]:
        query = query or {}
        tier_filter = query.get("tier", "")
        state_filter = query.get("state", "")
        limit = int_param(query, "limit", 50)
        offset = int_param(query, "offset", 0)

        entries = [
            {
                "relPath": file.rel_path,
                "currentTier": file.current_tier,
                "state": _state_name(file.state),
                "size": file.size,
                "modTime": _rfc3339(file.mod_time),
                "digest": file.digest,
            }
            for file in self._service.meta.list_files(query.get("prefix", ""))
            if (not tier_filter or file.current_tier == tier_filter)
            and (not state_filter or _state_name(file.state) == state_filter)
        ]
        total = len(entries)
        offset = min(offset, total)
        end = min(offset + limit, total)
        return {"files": entries[offset:end], "total": total, "offset": offset, "limit": limit}

    def replication_view(self) -> dict[str, Any]:
        replicator = self._service.replicator
        copied, failed, depth = replicator.metrics()
        return {
            "jobs": [job.to_dict() for job in replicator.pending_jobs()],
            "totalCopied": copied,
            "totalFailed": failed,
            "queueDepth": depth,
        }

    def write_guard_view(self) -> dict[str, Any]:
        entries = []
        for path, entry in sorted(self._service.guard.snapshot().items()):
            item: dict[str, Any] = {
                "relPath": path,
                "openCount": entry.open_count,
                "quiescentSoon": bool(entry.quiescent_soon),
            }
            if entry.last_close:
                item["lastClose"] = _rfc3339(entry.last_close)
            entries.append(item)
        return {"entries": entries}

    def logs_view(self, query: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
        query = query or {}
        if self._log_buffer is None:
            return []
        tail = int_param(query, "tail", 200)
        level = query.get("level", "")
        return [entry.to_dict() for entry in self._log_buffer.entries(level, tail)]

    def __call__(self, environ: Mapping[str, Any], start_response: Callable) -> Iterable[bytes]:
        view = self._routes.get(environ.get("PATH_INFO") or "/")
        if view is None:
            return _plain(start_response, "404 Not Found", "404 page not found\n")
        try:
            payload = view(_parse_query(environ.get("QUERY_STRING", "")))
        except Exception as exc:
            return _plain(start_response, "500 Internal Server Error", f"{exc}\n")
        body = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        start_response(
            "200 OK",
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]


def _plain(start_response: Callable, status: str, text: str) -> list[bytes]:
    body = text.encode("utf-8")
    start_response(
        status,
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]