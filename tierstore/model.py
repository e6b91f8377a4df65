"""Core data types, storage interfaces, placement policy and content digests."""

from __future__ import annotations

import abc
import enum
import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Iterable

_READ_CHUNK = 1 << 20
_DIGEST_BYTES = 16


class FileState(str, enum.Enum):
    """Replication state of a file."""

    LOCAL = "local"
    SYNCED = "synced"
    WRITING = "writing"


@dataclass
class File:
    """Metadata record of one file."""

    rel_path: str
    current_tier: str = ""
    state: FileState = FileState.LOCAL
    size: int = 0
    mod_time: datetime | None = None
    digest: str = ""


@dataclass
class FileTier:
    """Presence of a file on one tier."""

    rel_path: str
    tier_name: str
    arrived_at: datetime | None = None
    verified: bool = False


@dataclass
class FileInfo:
    """What a backend reports about a stored object."""

    rel_path: str
    size: int = 0
    mod_time: datetime | None = None


@dataclass(frozen=True)
class EvictStep:
    """Move a file to ``to_tier`` once it is ``after`` seconds old; ``None`` means never."""

    after: float | None
    to_tier: str

    @property
    def never(self) -> bool:
        return self.after is None


@dataclass(frozen=True)
class PromoteOnRead:
    """Whether reads pull a file back to a hotter tier, and to which one."""

    enabled: bool = False
    target_tier: str = ""


@dataclass(frozen=True)
class Rule:
    """A placement rule selected by a glob over the relative path."""

    name: str
    match: str
    pin_tier: str = ""
    evict_schedule: tuple[EvictStep, ...] = ()
    promote_on_read: PromoteOnRead = field(default_factory=PromoteOnRead)
    replicate: bool = False


class TierFSError(Exception):
    """Base class of the package's errors."""


class NotExistError(TierFSError):
    """The file does not exist."""

    def __init__(self, message: str = "file does not exist") -> None:
        super().__init__(message)


class TierNotFoundError(TierFSError):
    """No tier with that name is configured."""

    def __init__(self, message: str = "tier not found") -> None:
        super().__init__(message)


class BackendFailureError(TierFSError):
    """A storage backend failed."""

    def __init__(self, message: str = "backend failure") -> None:
        super().__init__(message)


class DigestMismatchError(TierFSError):
    """A copied file does not have the expected digest."""

    def __init__(self, want: str, got: str) -> None:
        super().__init__(f"digest mismatch: want {want} got {got}")
        self.want = want
        self.got = got


class NoRuleMatchError(TierFSError):
    """No policy rule matches the path."""

    def __init__(self, rel_path: str) -> None:
        super().__init__(f"no rule matches {rel_path!r}")
        self.rel_path = rel_path


class Backend(abc.ABC):
    """A storage location that holds the files of one tier.

    A backend may also offer ``rename(old_path, new_path)`` and ``is_final()``.
    """

    @abc.abstractmethod
    def scheme(self) -> str:
        """URI scheme, such as ``file``."""

    @abc.abstractmethod
    def uri(self, rel_path: str) -> str:
        """Full URI of ``rel_path`` in this backend."""

    @abc.abstractmethod
    def local_path(self, rel_path: str) -> str | None:
        """Filesystem path of ``rel_path`` if it is stored locally, else ``None``."""

    @abc.abstractmethod
    def put(self, rel_path: str, stream: BinaryIO, size: int) -> None:
        """Store the whole of ``stream`` at ``rel_path``."""

    @abc.abstractmethod
    def get(self, rel_path: str) -> tuple[BinaryIO, int]:
        """Open ``rel_path`` for reading; returns the stream and its size."""

    @abc.abstractmethod
    def stat(self, rel_path: str) -> FileInfo:
        """Describe ``rel_path``; raises NotExistError when absent."""

    @abc.abstractmethod
    def delete(self, rel_path: str) -> None:
        """Remove ``rel_path``; raises NotExistError when absent."""

    @abc.abstractmethod
    def list(self, prefix: str) -> list[FileInfo]:
        """List the objects under ``prefix``."""


class MetadataStore(abc.ABC):
    """Persistent record of files and the tiers they are on."""

    @abc.abstractmethod
    def upsert_file(self, file: File) -> None:
        """Insert or replace a file record."""

    @abc.abstractmethod
    def get_file(self, rel_path: str) -> File:
        """Return the record of ``rel_path``; raises NotExistError when absent."""

    @abc.abstractmethod
    def delete_file(self, rel_path: str) -> None:
        """Remove a file and its tier records."""

    @abc.abstractmethod
    def list_files(self, prefix: str) -> list[File]:
        """Return all files whose path starts with ``prefix``."""

    @abc.abstractmethod
    def add_file_tier(self, file_tier: FileTier) -> None:
        """Record that a file is present on a tier."""

    @abc.abstractmethod
    def get_file_tiers(self, rel_path: str) -> list[FileTier]:
        """Return the tier records of ``rel_path``."""

    @abc.abstractmethod
    def mark_tier_verified(self, rel_path: str, tier_name: str) -> None:
        """Mark the copy on ``tier_name`` as verified."""

    @abc.abstractmethod
    def remove_file_tier(self, rel_path: str, tier_name: str) -> None:
        """Forget the copy on ``tier_name``."""

    @abc.abstractmethod
    def tier_arrived_at(self, rel_path: str, tier_name: str) -> datetime:
        """When the file arrived on the tier; raises NotExistError when unknown."""

    @abc.abstractmethod
    def is_tier_verified(self, rel_path: str, tier_name: str) -> bool:
        """Whether a verified copy exists on the tier."""

    @abc.abstractmethod
    def files_on_tier(self, tier_name: str) -> list[File]:
        """Files whose current tier is ``tier_name``."""

    @abc.abstractmethod
    def files_awaiting_replication(self) -> list[File]:
        """Files still waiting to be replicated."""

    @abc.abstractmethod
    def eviction_candidates(self, tier_name: str, older_than: datetime) -> list[File]:
        """Synced files on the tier that arrived before ``older_than``."""

    @abc.abstractmethod
    def oldest_awaiting_replication(self) -> datetime | None:
        """Modification time of the oldest file awaiting replication, if any."""


def _split_alternatives(body: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    start = 0
    for pos, char in enumerate(body):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
        elif char == "," and depth == 0:
            parts.append(body[start:pos])
            start = pos + 1
    parts.append(body[start:])
    return parts


def _closing_brace(pattern: str, start: int) -> int:
    depth = 0
    for pos in range(start, len(pattern)):
        if pattern[pos] == "{":
            depth += 1
        elif pattern[pos] == "}":
            depth -= 1
            if depth == 0:
                return pos
    return -1


def _glob_to_regex(pattern: str) -> str:
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        char = pattern[i]
        if char == "*":
            j = i
            while j < n and pattern[j] == "*":
                j += 1
            at_start = i == 0 or pattern[i - 1] == "/"
            at_end = j == n or pattern[j] == "/"
            if j - i >= 2 and at_start and at_end:
                if j < n:
                    out.append("(?:.*/)?")
                    j += 1
                elif out and out[-1] == "/":
                    out[-1] = "(?:/.*)?"
                else:
                    out.append(".*")
            else:
                out.append("[^/]*")
            i = j
        elif char == "?":
            out.append("[^/]")
            i += 1
        elif char == "[":
            end = pattern.find("]", i + 2)
            if end == -1:
                out.append(re.escape(char))
                i += 1
                continue
            body = pattern[i + 1 : end]
            negate = body[:1] in ("!", "^")
            if negate:
                body = body[1:]
            body = body.replace("\\", "\\\\")
            out.append(f"[{'^' if negate else ''}{body}]")
            i = end + 1
        elif char == "{":
            end = _closing_brace(pattern, i)
            if end == -1:
                out.append(re.escape(char))
                i += 1
                continue
            alternatives = _split_alternatives(pattern[i + 1 : end])
            out.append("(?:" + "|".join(_glob_to_regex(a) for a in alternatives) + ")")
            i = end + 1
        elif char == "\\" and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 2
        else:
            out.append(re.escape(char))
            i += 1
    return "".join(out)


class Policy:
    """Ordered placement rules; the first rule whose glob matches wins."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        self._rules = list(rules)
        self._compiled = [(rule, re.compile(_glob_to_regex(rule.match))) for rule in self._rules]

    def match(self, rel_path: str) -> Rule:
        for rule, regex in self._compiled:
            if regex.fullmatch(rel_path):
                return rule
        raise NoRuleMatchError(rel_path)

    def rules(self) -> list[Rule]:
        return list(self._rules)


class DigestHasher:
    """Incremental 128-bit content digest."""

    def __init__(self) -> None:
        self._hash = hashlib.blake2b(digest_size=_DIGEST_BYTES)

    def update(self, data: bytes) -> None:
        self._hash.update(data)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def compute_digest(stream: BinaryIO) -> str:
    """Digest of everything left in ``stream``."""
    hasher = DigestHasher()
    for chunk in iter(lambda: stream.read(_READ_CHUNK), b""):
        hasher.update(chunk)
    return hasher.hexdigest()


def compute_file_digest(path: str) -> str:
    """Digest of the file at ``path``."""
    with open(path, "rb") as stream:
        return compute_digest(stream)


def is_final(backend: object) -> bool:
    """Whether ``backend`` discards what it is given, so files sent there are gone."""
    check = getattr(backend, "is_final", None)
    return bool(callable(check) and check())