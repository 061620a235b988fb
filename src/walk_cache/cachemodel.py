from __future__ import annotations

import dataclasses
import enum
import os
from collections.abc import Mapping
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from .cacheerrors import ConsistencyViolation

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MICROSECOND = timedelta(microseconds=1)


def utc_now() -> datetime:
    """Return the current time, timezone aware, in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return the datetime in UTC. Naive datetimes are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_text(value: datetime) -> str:
    """Serialize a datetime to the text stored in the database."""
    return as_utc(value).isoformat(timespec="microseconds")


def from_text(value: str) -> datetime:
    """Parse the text stored in the database back into a UTC datetime."""
    return as_utc(datetime.fromisoformat(value))


def from_timestamp_ns(value: int) -> datetime:
    """Convert a nanosecond timestamp (os.stat) to a UTC datetime."""
    # Truncated to microseconds, the resolution of the stored text.
    return EPOCH + timedelta(microseconds=value // 1000)


def to_timestamp_ns(value: datetime) -> int:
    """Convert a datetime to a nanosecond timestamp for os.utime."""
    return (as_utc(value) - EPOCH) // ONE_MICROSECOND * 1000


class ActionKind(enum.Enum):
    """Kinds of transitions recorded in the directory action log."""

    SCANNED = "scanned"
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    MISSING = "missing"
    DIRECTORY_REMOVED = "directory_removed"


DEFAULT_ACTION_CODES: dict[ActionKind, int] = {
    ActionKind.SCANNED: 0,
    ActionKind.ADDED: 1,
    ActionKind.REMOVED: 2,
    ActionKind.MODIFIED: 3,
    ActionKind.MISSING: 4,
    ActionKind.DIRECTORY_REMOVED: 5,
}


class ActionCodes:
    """Two-way mapping between ActionKind and the stored action_type integer."""

    def __init__(self, codes: Mapping[ActionKind, int] | None = None) -> None:
        """
        Build the mapping, validating that it is complete and unambiguous.

        Args:
            codes: Mapping of every ActionKind to a unique integer. Defaults
                to DEFAULT_ACTION_CODES.

        Raises:
            ValueError: If a kind is missing or two kinds share a code.
        """
        codes = dict(DEFAULT_ACTION_CODES if codes is None else codes)

        missing = [kind.value for kind in ActionKind if kind not in codes]
        if missing:
            raise ValueError(f"Missing action codes for: {', '.join(missing)}")

        if len(set(codes.values())) != len(codes):
            raise ValueError(f"Action codes must be unique: {codes}")

        self._codes = codes
        self._kinds = {code: kind for kind, code in codes.items()}

    @classmethod
    def from_names(cls, codes: Mapping[str, int]) -> ActionCodes:
        """Build from a mapping keyed by ActionKind value (e.g. "scanned")."""
        merged = dict(DEFAULT_ACTION_CODES)
        for name, code in codes.items():
            try:
                merged[ActionKind(name)] = code
            except ValueError:
                raise ValueError(f"Unknown action kind: {name}") from None

        return cls(merged)

    def encode(self, kind: ActionKind) -> int:
        """Return the integer stored for the kind."""
        return self._codes[kind]

    def decode(self, code: int) -> ActionKind:
        """Return the kind for a stored integer."""
        try:
            return self._kinds[code]
        except KeyError:
            raise ConsistencyViolation(f"Unknown action_type in log: {code}") from None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ActionCodes):
            return NotImplemented
        return self._codes == other._codes

    def __repr__(self) -> str:
        pairs = ", ".join(f"{kind.value}={code}" for kind, code in self._codes.items())
        return f"ActionCodes({pairs})"


class DirectoryState(enum.Enum):
    """Lifecycle of a tracked directory as derived from its action log."""

    UNKNOWN = "unknown"
    KNOWN = "known"
    REMOVED = "removed"


@dataclasses.dataclass(frozen=True)
class Directory:
    """A tracked directory row."""

    id: int
    path: str

    def __str__(self) -> str:
        """Return a string representation of the directory."""
        return f"{self.path} (id {self.id})"

    @staticmethod
    def normalize_path(path: str) -> str:
        """
        Normalize a directory path to the absolute form stored in the cache.

        Args:
            path: The directory path to normalize.

        Returns:
            The absolute, normalized directory path.
        """
        return os.path.normpath(os.path.abspath(path))


@dataclasses.dataclass(frozen=True, order=True)
class DirectoryAction:
    """An immutable entry of a directory's action log, ordered by id."""

    id: int
    directory_id: int
    kind: ActionKind = dataclasses.field(compare=False)
    cached_date: datetime = dataclasses.field(compare=False)

    def __str__(self) -> str:
        """Return a string representation of the action."""
        return f"#{self.id} {self.cached_date.isoformat()} {self.kind.value}"


@dataclasses.dataclass(frozen=True)
class FileRecord:
    """Cached metadata of one file within a tracked directory."""

    directory_id: int
    name: str
    cached_date: datetime
    created_date: datetime
    modified_date: datetime
    id: int = 0


@dataclasses.dataclass(frozen=True)
class ListingEntry:
    """One file as observed on the live filesystem."""

    name: str
    created_date: datetime
    modified_date: datetime


@dataclasses.dataclass(frozen=True)
class Diff:
    """Classification of observed entries against the cached records."""

    added: frozenset[ListingEntry] = frozenset()
    removed: frozenset[str] = frozenset()
    modified: frozenset[ListingEntry] = frozenset()
    unchanged: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        """True when nothing was added, removed or modified."""
        return not (self.added or self.removed or self.modified)

    def __str__(self) -> str:
        return (
            f"{len(self.added)} added, {len(self.removed)} removed, "
            f"{len(self.modified)} modified, {len(self.unchanged)} unchanged"
        )


@dataclasses.dataclass(frozen=True)
class ScanResult:
    """The committed outcome of scanning one directory."""

    directory: Directory
    diff: Diff
    action_ids: tuple[int, ...]
    cached_date: datetime

    @property
    def added(self) -> int:
        return len(self.diff.added)

    @property
    def removed(self) -> int:
        return len(self.diff.removed)

    @property
    def modified(self) -> int:
        return len(self.diff.modified)

    def __str__(self) -> str:
        return f"{self.directory.path}: {self.diff}"
