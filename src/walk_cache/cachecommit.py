from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .cacheerrors import ConsistencyViolation
from .cacheerrors import NotFoundError
from .cachemodel import ActionKind
from .cachemodel import Diff
from .cachemodel import DirectoryAction
from .cachemodel import as_utc
from .cachemodel import utc_now
from .cachestore import CacheStore


class LogCommitter:
    """Apply diffs to the store and append the matching action log entries."""

    logger = logging.getLogger(__name__)

    def __init__(
        self,
        store: CacheStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize a new LogCommitter.

        Args:
            store: The store the diffs are applied to.

        Keyword Args:
            clock: Returns the current time. Defaults to UTC now.
        """
        self._store = store
        self._clock = clock

    def commit(
        self,
        directory_id: int,
        diff: Diff,
    ) -> tuple[list[DirectoryAction], datetime]:
        """
        Apply the diff in one transaction: removed, then modified, then added.

        One action is appended per non-empty category, all sharing the
        commit time. An empty diff appends a single SCANNED action.

        Returns:
            The appended actions in order and the commit time.

        Raises:
            ConsistencyViolation: The directory does not exist or a write
                would break an invariant. Nothing is applied.
            StoreUnavailable: The store failed. Nothing is applied.
        """
        actions: list[DirectoryAction] = []

        with self._store.transaction(directory_id):
            commit_time = self._commit_time(directory_id)

            if diff.removed:
                for name in sorted(diff.removed):
                    self._store.delete_file(directory_id, name)
                actions.append(self._append(directory_id, ActionKind.REMOVED, commit_time))

            if diff.modified:
                for entry in sorted(diff.modified, key=lambda entry: entry.name):
                    self._store.upsert_file(
                        directory_id,
                        entry.name,
                        entry.created_date,
                        entry.modified_date,
                        commit_time,
                    )
                actions.append(self._append(directory_id, ActionKind.MODIFIED, commit_time))

            if diff.added:
                for entry in sorted(diff.added, key=lambda entry: entry.name):
                    self._store.upsert_file(
                        directory_id,
                        entry.name,
                        entry.created_date,
                        entry.modified_date,
                        commit_time,
                    )
                actions.append(self._append(directory_id, ActionKind.ADDED, commit_time))

            if not actions:
                actions.append(self._append(directory_id, ActionKind.SCANNED, commit_time))

        self.logger.debug(
            "Committed directory %s at %s: %s", directory_id, commit_time, diff
        )
        return actions, commit_time

    def record_miss(self, directory_id: int, threshold: int) -> tuple[int, bool]:
        """
        Log a failed listing of a known directory.

        After `threshold` consecutive misses every cached file is dropped
        (logged as REMOVED when there were any) and DIRECTORY_REMOVED is
        appended. A directory already removed records nothing more.

        Returns:
            The number of consecutive misses and whether the directory is
            now removed. (0, True) when it was removed by an earlier miss.
        """
        with self._store.transaction(directory_id):
            latest = self._store.latest_action(directory_id)
            if latest is not None and latest.kind is ActionKind.DIRECTORY_REMOVED:
                return 0, True

            commit_time = self._commit_time(directory_id)
            self._append(directory_id, ActionKind.MISSING, commit_time)
            missed = self._store.count_trailing_actions(directory_id, ActionKind.MISSING)

            if missed < threshold:
                return missed, False

            if self._store.delete_files(directory_id):
                self._append(directory_id, ActionKind.REMOVED, commit_time)
            self._append(directory_id, ActionKind.DIRECTORY_REMOVED, commit_time)

        self.logger.warning(
            "Directory %s marked removed after %s consecutive misses",
            directory_id,
            missed,
        )
        return missed, True

    def _commit_time(self, directory_id: int) -> datetime:
        """Return the clock time, never earlier than the directory's last action."""
        try:
            self._store.get_directory_by_id(directory_id)
        except NotFoundError:
            raise ConsistencyViolation(
                f"Cannot commit to unknown directory {directory_id}"
            ) from None

        now = as_utc(self._clock())
        latest = self._store.latest_action(directory_id)

        if latest is not None and latest.cached_date > now:
            self.logger.debug(
                "Clock behind last action of directory %s, using %s",
                directory_id,
                latest.cached_date,
            )
            return latest.cached_date

        return now

    def _append(
        self,
        directory_id: int,
        kind: ActionKind,
        commit_time: datetime,
    ) -> DirectoryAction:
        return self._store.append_action(directory_id, kind, commit_time)
