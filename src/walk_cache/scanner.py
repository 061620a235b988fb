from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
import time
from collections.abc import Callable
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING
from typing import TypeVar

from .cachecommit import LogCommitter
from .cachediff import detect_changes
from .cacheerrors import DirectoryUnavailable
from .cacheerrors import NotFoundError
from .cacheerrors import TransientIOError
from .cachelisting import LocalListing
from .cachemodel import ActionKind
from .cachemodel import Directory
from .cachemodel import DirectoryAction
from .cachemodel import DirectoryState
from .cachemodel import ListingEntry
from .cachemodel import ScanResult
from .cachemodel import to_timestamp_ns
from .cachemodel import utc_now
from .cachestore import CacheStore

if TYPE_CHECKING:
    from typing import Protocol

    from .cacheconfig import CacheConfig

    class _ListingProvider(Protocol):
        def list_directory(self, path: str) -> list[ListingEntry]:
            ...

        def list_subdirectories(self, path: str) -> list[str]:
            ...


_T = TypeVar("_T")


class Scanner:
    """Detect and record file changes of tracked directories."""

    logger = logging.getLogger(__name__)

    def __init__(
        self,
        store: CacheStore,
        listing: _ListingProvider,
        *,
        workers: int = 4,
        listing_timeout: float = 0,
        missing_threshold: int = 3,
        scan_interval: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize a new Scanner.

        Args:
            store: The store holding directories, cached files and action logs.
            listing: Provides the live listing of a directory.

        Keyword Args:
            workers: Directories scanned in parallel. Defaults to 4.
            listing_timeout: Seconds allowed to list one directory, 0 to wait
                forever. Defaults to 0.
            missing_threshold: Consecutive failed listings of a known
                directory before it is marked removed. Defaults to 3.
            scan_interval: Seconds between passes of `run_loop`.
            clock: Returns the current time, used as commit time.
        """
        self._store = store
        self._listing = listing
        self._committer = LogCommitter(store, clock=clock)

        self._workers = max(1, workers)
        self._listing_timeout = listing_timeout
        self._missing_threshold = max(1, missing_threshold)
        self._scan_interval = scan_interval

        self._listing_pool: ThreadPoolExecutor | None = None
        self._listing_pool_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CacheConfig) -> Scanner:
        """Build a Scanner, its store and its listing from the configuration."""
        listing = LocalListing(
            exclude_file_pattern=config.exclude_file_pattern,
            exclude_directory_pattern=config.exclude_directory_pattern,
        )
        return cls(
            CacheStore.from_config(config),
            listing,
            workers=config.workers,
            listing_timeout=config.listing_timeout,
            missing_threshold=config.missing_scan_threshold,
            scan_interval=config.scan_interval,
        )

    @property
    def store(self) -> CacheStore:
        return self._store

    def close(self, *, wait: bool = False) -> None:
        """
        Stop the listing workers.

        A listing that timed out keeps its worker thread until the
        filesystem call returns, since such a call cannot be interrupted.
        By default those threads are left to finish on their own; pass
        `wait=True` to join them.
        """
        with self._listing_pool_lock:
            if self._listing_pool is not None:
                self._listing_pool.shutdown(wait=wait, cancel_futures=True)
                self._listing_pool = None

    def scan_directory(self, path: str) -> ScanResult:
        """
        Detect the changes of one directory since its last scan and commit them.

        Args:
            path: The directory to scan.

        Returns:
            The committed diff and the ids of the appended actions.

        Raises:
            DirectoryUnavailable: The directory could not be listed. For a
                known directory the miss is logged first.
            StoreUnavailable: The store failed, nothing was committed.
            ConsistencyViolation: The commit was refused, nothing was committed.
        """
        path = Directory.normalize_path(path)

        try:
            listing = self._list_directory(path)

        except DirectoryUnavailable as error:
            miss = self._record_miss(path, error)
            if miss is None:
                raise
            raise miss from error

        # A new directory row is part of its first commit.
        with self._store.directory_scope(path), self._store.transaction(path):
            directory = self._get_or_create_directory(path)
            cached = self._store.list_files(directory.id)
            diff = detect_changes(cached, listing)
            actions, cached_date = self._committer.commit(directory.id, diff)

        result = ScanResult(
            directory=directory,
            diff=diff,
            action_ids=tuple(action.id for action in actions),
            cached_date=cached_date,
        )
        self.logger.info("Scanned %s", result)

        return result

    def scan_directories(self, paths: Sequence[str]) -> list[ScanResult]:
        """
        Scan distinct directories in parallel.

        Returns:
            One result per path, in the order given.

        Raises:
            The first error in path order, after every scan has finished.
        """
        return self._map(self.scan_directory, paths)

    def scan_tree(self, path: str) -> list[ScanResult]:
        """
        Scan the directory and all of its subdirectories, level by level.

        Tracked subdirectories the listing no longer returns are scanned
        too, so each pass records a miss until they are marked removed.
        Unavailable subdirectories are logged and skipped.

        Raises:
            DirectoryUnavailable: The top directory could not be listed.
        """
        root = self.scan_directory(path)
        results = [root]
        # Skipped paths stay parents so their tracked children are missed too.
        level = self._next_level([root.directory.path])

        while level:
            self.logger.debug("Scanning %s directories", len(level))
            scanned = self._map(self._scan_subdirectory, level)
            results.extend(result for result in scanned if result is not None)
            level = self._next_level(level)

        return results

    def restore_modified_dates(self, path: str) -> int:
        """
        Set the modified time of each cached file back to its cached value.

        Files no longer on disk are skipped. Access times are kept.

        Returns:
            The number of files restored.

        Raises:
            NotFoundError: The directory has never been scanned.
            DirectoryUnavailable: A file could not be updated.
        """
        directory = self._store.get_directory(path)
        restored = 0

        with self._store.directory_scope(directory.path):
            records = self._store.list_files(directory.id)

            for record in sorted(records, key=lambda record: record.name):
                filepath = os.path.join(directory.path, record.name)

                try:
                    if not os.path.isfile(filepath):
                        self.logger.debug("'%s' no longer exists, skipping", filepath)
                        continue

                    atime_ns = os.stat(filepath).st_atime_ns
                    os.utime(filepath, ns=(atime_ns, to_timestamp_ns(record.modified_date)))

                except FileNotFoundError:
                    self.logger.debug("'%s' removed during restore.", filepath)
                    continue

                except OSError as error:
                    raise DirectoryUnavailable(
                        directory.path, f"cannot restore {record.name}: {error}"
                    ) from error

                restored += 1

        self.logger.info("Restored %s files in %s", restored, directory.path)

        return restored

    def history(self, path: str) -> list[DirectoryAction]:
        """
        Return the action log of the directory, oldest first.

        Raises:
            NotFoundError: The directory has never been observed.
        """
        directory = self._store.get_directory(path)
        return self._store.list_actions(directory.id)

    def directory_state(self, path: str) -> DirectoryState:
        """Return whether the directory is unknown, known or removed."""
        try:
            directory = self._store.get_directory(path)
        except NotFoundError:
            return DirectoryState.UNKNOWN

        latest = self._store.latest_action(directory.id)

        if latest is None:
            return DirectoryState.UNKNOWN

        if latest.kind is ActionKind.DIRECTORY_REMOVED:
            return DirectoryState.REMOVED

        return DirectoryState.KNOWN

    def run(self, paths: Sequence[str], *, recursive: bool = False) -> list[ScanResult]:
        """Scan the given directories once while holding the store's run flag."""
        self.logger.info("Running scanner...")
        tic = time.perf_counter()

        results: list[ScanResult] = []
        with self._store:
            if recursive:
                for path in paths:
                    results.extend(self.scan_tree(path))
            else:
                results.extend(self.scan_directories(paths))

        toc = time.perf_counter()
        self.logger.info("Scanner finished in %s seconds", toc - tic)
        self.logger.info("Scanned %s directories", len(results))
        self.logger.info(
            "Detected %s added, %s removed, %s modified files",
            sum(result.added for result in results),
            sum(result.removed for result in results),
            sum(result.modified for result in results),
        )

        return results

    def run_loop(self, paths: Sequence[str], *, recursive: bool = False) -> None:
        """Run the scanner until ctrl-c is pressed. This is blocking."""
        next_scan = time.time() + self._scan_interval

        self.logger.info("Starting scanner...")
        try:
            while True:
                if time.time() >= next_scan:
                    try:
                        self.run(paths, recursive=recursive)
                    except TransientIOError as error:
                        self.logger.error("Scan failed, retrying next pass: %s", error)
                    next_scan = time.time() + self._scan_interval

                time.sleep(0.1)

        except KeyboardInterrupt:
            self.logger.info("Scanner stopped")

        except Exception as error:
            self.logger.exception("Scanner stopped due to an error: %s", error)
            raise error

    def _get_or_create_directory(self, path: str) -> Directory:
        try:
            return self._store.get_directory(path)

        except NotFoundError:
            directory = self._store.create_directory(path)
            self.logger.info("Tracking new directory %s", directory)
            return directory

    def _map(
        self,
        func: Callable[[str], _T],
        paths: Sequence[str],
    ) -> list[_T]:
        """Run func over distinct directories in parallel, results in path order."""
        if len(paths) <= 1:
            return [func(path) for path in paths]

        with ThreadPoolExecutor(
            max_workers=self._workers,
            thread_name_prefix="walk-cache-scan",
        ) as executor:
            futures = [executor.submit(func, path) for path in paths]

        return [future.result() for future in futures]

    def _scan_subdirectory(self, path: str) -> ScanResult | None:
        try:
            return self.scan_directory(path)

        except DirectoryUnavailable as error:
            self.logger.warning("Skipping subdirectory: %s", error)
            return None

    def _next_level(self, parents: list[str]) -> list[str]:
        """Return the listed subdirectories, then tracked ones no longer listed."""
        listed: list[str] = []
        for parent in parents:
            try:
                listed.extend(self._listing.list_subdirectories(parent))

            except DirectoryUnavailable as error:
                self.logger.warning("Cannot list subdirectories: %s", error)

        parent_paths = set(parents)
        listed_paths = set(listed)
        vanished = [
            directory.path
            for directory in self._store.list_directories()
            if os.path.dirname(directory.path) in parent_paths
            and directory.path not in listed_paths
            and self.directory_state(directory.path) is not DirectoryState.REMOVED
        ]
        if vanished:
            self.logger.debug("Tracked subdirectories not listed: %s", vanished)

        return listed + vanished

    def _get_listing_pool(self) -> ThreadPoolExecutor:
        with self._listing_pool_lock:
            if self._listing_pool is None:
                self._listing_pool = ThreadPoolExecutor(
                    max_workers=self._workers,
                    thread_name_prefix="walk-cache-listing",
                )
            return self._listing_pool

    def _list_directory(self, path: str) -> list[ListingEntry]:
        """
        List the directory, bounded by the listing timeout when one is set.

        Raises:
            DirectoryUnavailable
        """
        try:
            if self._listing_timeout <= 0:
                return list(self._listing.list_directory(path))

            future = self._get_listing_pool().submit(self._listing.list_directory, path)
            return list(future.result(timeout=self._listing_timeout))

        except concurrent.futures.TimeoutError:
            raise DirectoryUnavailable(
                path, f"listing timed out after {self._listing_timeout} seconds"
            ) from None

        except DirectoryUnavailable:
            raise

        except OSError as error:
            raise DirectoryUnavailable(path, str(error)) from error

    def _record_miss(
        self,
        path: str,
        error: DirectoryUnavailable,
    ) -> DirectoryUnavailable | None:
        """Log the miss of a known directory. None when the directory is unknown."""
        with self._store.directory_scope(path):
            try:
                directory = self._store.get_directory(path)
            except NotFoundError:
                self.logger.debug("Unknown directory %s is unavailable", path)
                return None

            missed, removed = self._committer.record_miss(
                directory.id, self._missing_threshold
            )

        miss = DirectoryUnavailable(path, error.reason, missed=missed, removed=removed)
        self.logger.warning("%s", miss)

        return miss
