from __future__ import annotations


class CacheError(Exception):
    """Base class for all walk_cache errors."""


class TransientIOError(CacheError):
    """The listing or the store is temporarily unreachable. Safe to retry."""


class DirectoryUnavailable(TransientIOError):
    """The listing provider could not list a directory."""

    def __init__(
        self,
        path: str,
        reason: str = "",
        *,
        missed: int = 0,
        removed: bool = False,
    ) -> None:
        self.path = path
        self.reason = reason
        self.missed = missed
        self.removed = removed

        message = f"Directory unavailable: {path}"
        if reason:
            message += f" ({reason})"
        if removed and not missed:
            message += " - already marked removed"
        elif removed:
            message += f" - marked removed after {missed} consecutive misses"
        elif missed:
            message += f" - {missed} consecutive misses"

        super().__init__(message)


class StoreUnavailable(TransientIOError):
    """The persistence layer failed while handling a directory."""

    def __init__(self, subject: str | int, reason: str = "") -> None:
        self.subject = subject
        self.reason = reason
        message = f"Store unavailable for {subject!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ConsistencyViolation(CacheError):
    """A write would break (or has broken) the cache invariants. Fatal."""


class NotFoundError(CacheError, LookupError):
    """The requested directory has never been observed."""

    def __init__(self, subject: str | int) -> None:
        self.subject = subject
        super().__init__(f"Directory not found: {subject!r}")
