from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import closing
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING

from .cacheerrors import ConsistencyViolation
from .cacheerrors import NotFoundError
from .cacheerrors import StoreUnavailable
from .cachemodel import ActionCodes
from .cachemodel import ActionKind
from .cachemodel import Directory
from .cachemodel import DirectoryAction
from .cachemodel import FileRecord
from .cachemodel import as_utc
from .cachemodel import from_text
from .cachemodel import to_text

if TYPE_CHECKING:
    from types import TracebackType
    from typing import Protocol

    class _CacheConfig(Protocol):
        @property
        def database_path(self) -> str:
            ...

        @property
        def max_is_running_seconds(self) -> int:
            ...

        @property
        def action_codes(self) -> ActionCodes:
            ...


class CacheStore:
    """Database of tracked directories, their cached files and action logs."""

    logger = logging.getLogger("walk_cache.CacheStore")

    def __init__(
        self,
        database_path: str = ":memory:",
        *,
        action_codes: ActionCodes | None = None,
        max_is_running_age: int = 300,
        timeout: float = 5.0,
    ) -> None:
        """
        Initialize a new CacheStore connected to the given path.

        The connection runs in autocommit mode: a single write is durable
        when the call returns. Multi-statement writes belong in
        `transaction()`. Use the `with` statement to hold the run flag for
        the duration of a scan pass:

            with CacheStore() as store:
                ...

        Args:
            database_path: The path to the database file. Defaults to an
                in-memory database.

        Keyword Args:
            action_codes: Mapping of action kinds to stored integers.
            max_is_running_age: The maximum age of the is_running flag in
                seconds. If the is_running flag is older than this, it will be
                ignored. Defaults to 300 (5 minutes).
            timeout: Seconds to wait for another connection's lock on the
                database file. Defaults to 5.
        """
        self.logger.debug("Initializing CacheStore at %s", database_path)
        self._connection = sqlite3.connect(
            database_path,
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        # Shared by worker threads, each statement and transaction holds it.
        self._lock = threading.RLock()

        # path -> (lock, number of threads holding or waiting for it)
        self._scopes: dict[str, tuple[threading.Lock, int]] = {}
        self._scopes_lock = threading.Lock()

        self._codes = action_codes or ActionCodes()
        self._max_is_running_age = max_is_running_age

        self._create_directory_table()
        self._create_action_log_table()
        self._create_file_table()
        self._create_system_table()

        self._save_system_info(database_path)

    @classmethod
    def from_config(cls, config: _CacheConfig) -> CacheStore:
        """Build a CacheStore from the given configuration."""
        return cls(
            config.database_path,
            action_codes=config.action_codes,
            max_is_running_age=config.max_is_running_seconds,
        )

    def __enter__(self) -> CacheStore:
        """Enter a context manager."""
        self.start_run()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Exit a context manager."""
        self.stop_run()

    @property
    def action_codes(self) -> ActionCodes:
        return self._codes

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._connection.close()

    @contextmanager
    def _guard(self, subject: str | int) -> Generator[None, None, None]:
        """Serialize access to the connection and translate sqlite errors."""
        with self._lock:
            try:
                yield None

            except sqlite3.IntegrityError as error:
                raise ConsistencyViolation(
                    f"Integrity error for {subject!r}: {error}"
                ) from error

            except sqlite3.Error as error:
                raise StoreUnavailable(subject, str(error)) from error

    @contextmanager
    def transaction(
        self,
        subject: str | int = "transaction",
    ) -> Generator[None, None, None]:
        """
        Run the enclosed writes as one all-or-nothing transaction.

        Every exception raised inside the block rolls the transaction back
        and is re-raised. A transaction opened inside another one joins it:
        the outermost block commits or rolls back.

        Args:
            subject: The path or directory id named by store errors.
        """
        with self._guard(subject):
            # The lock is held for the whole transaction, so an open one
            # always belongs to this thread.
            if self._connection.in_transaction:
                yield None
                return

            self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield None
                self._connection.execute("COMMIT")

            except BaseException:
                self.logger.debug("Rolling back transaction")
                self._connection.rollback()
                raise

    @contextmanager
    def directory_scope(self, path: str) -> Generator[None, None, None]:
        """
        Hold the exclusive scope of one directory, blocking other holders.

        The lock of a path is dropped once no thread holds or waits for it.
        """
        path = Directory.normalize_path(path)
        with self._scopes_lock:
            lock, holders = self._scopes.get(path, (threading.Lock(), 0))
            self._scopes[path] = (lock, holders + 1)

        try:
            with lock:
                self.logger.debug("Entered scope of %s", path)
                yield None

        finally:
            with self._scopes_lock:
                lock, holders = self._scopes[path]
                if holders == 1:
                    del self._scopes[path]
                else:
                    self._scopes[path] = (lock, holders - 1)

            self.logger.debug("Left scope of %s", path)

    def _create_directory_table(self) -> None:
        """Create the directory table if it does not already exist."""
        self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS dir_props (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE
            )
            """
        )
        self.logger.debug("Created directory table")

    def _create_action_log_table(self) -> None:
        """Create the action log table if it does not already exist."""
        # Rows are only ever inserted. AUTOINCREMENT keeps ids increasing even
        # if the highest row were removed by hand.
        self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS dir_actions_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dir_id INTEGER NOT NULL,
                action_type INTEGER NOT NULL,
                cached_date TEXT NOT NULL
            )
            """
        )
        self._connection.execute(
            """
            CREATE INDEX IF NOT EXISTS dir_actions_log_dir_id
            ON dir_actions_log (dir_id, id)
            """
        )
        self.logger.debug("Created action log table")

    def _create_file_table(self) -> None:
        """Create the file table if it does not already exist."""
        self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS dir_file_props (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dir_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                cached_date TEXT NOT NULL,
                created_date TEXT NOT NULL,
                modified_date TEXT NOT NULL,
                UNIQUE(dir_id, name)
            )
            """
        )
        self.logger.debug("Created file table")

    def _create_system_table(self) -> None:
        """Create a table to store system information."""
        self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS system (
                database_path TEXT NOT NULL,
                last_run INTEGER NOT NULL,
                is_running INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE(database_path)
            )
            """
        )
        self.logger.debug("Created system table")

    def _save_system_info(self, database_path: str) -> None:
        """Save system information to the database. (only at startup)"""
        now = int(datetime.now().timestamp())
        self._connection.execute(
            """
            INSERT OR IGNORE INTO system
            ( database_path, last_run, is_running, created_at )
            VALUES (?, ?, ?, ?)
            """,
            (database_path, now, 0, now),
        )
        self.logger.debug("Saved system information")

    def _get_last_run(self) -> tuple[int, int]:
        """Return the last run timestamp and is_running flag."""
        with closing(self._connection.cursor()) as cursor:
            cursor.execute("SELECT MAX(last_run), MAX(is_running) FROM system")
            return cursor.fetchone()

    def start_run(self) -> None:
        """Set the is_running flag to True, raise error if already running."""
        with self._guard("system"):
            last_run, is_running = self._get_last_run()

            # A flag older than the max age is left over from a crashed run.
            if last_run < int(datetime.now().timestamp()) - self._max_is_running_age:
                is_running = False

            if is_running:
                raise RuntimeError(f"Already running (last run {last_run})")

            self._connection.execute(
                "UPDATE system SET is_running = 1, last_run = ?",
                (int(datetime.now().timestamp()),),
            )

    def stop_run(self) -> None:
        """Set the is_running flag to False."""
        with self._guard("system"):
            self._connection.execute("UPDATE system SET is_running = 0")

    def _directory_exists(self, directory_id: int) -> bool:
        with closing(self._connection.cursor()) as cursor:
            cursor.execute("SELECT 1 FROM dir_props WHERE id = ?", (directory_id,))
            return cursor.fetchone() is not None

    def _require_directory(self, directory_id: int) -> None:
        """Raise unless the directory row exists."""
        if not self._directory_exists(directory_id):
            raise ConsistencyViolation(
                f"Directory {directory_id} does not exist, refusing to write"
            )

    def get_directory(self, path: str) -> Directory:
        """
        Return the tracked directory for the path.

        Raises:
            NotFoundError: The path has never been observed.
        """
        path = Directory.normalize_path(path)
        with self._guard(path), closing(self._connection.cursor()) as cursor:
            cursor.execute("SELECT id, path FROM dir_props WHERE path = ?", (path,))
            row = cursor.fetchone()

        if row is None:
            raise NotFoundError(path)

        return Directory(*row)

    def get_directory_by_id(self, directory_id: int) -> Directory:
        """
        Return the tracked directory with the id.

        Raises:
            NotFoundError: No directory has the id.
        """
        with self._guard(directory_id), closing(self._connection.cursor()) as cursor:
            cursor.execute(
                "SELECT id, path FROM dir_props WHERE id = ?", (directory_id,)
            )
            row = cursor.fetchone()

        if row is None:
            raise NotFoundError(directory_id)

        return Directory(*row)

    def create_directory(self, path: str) -> Directory:
        """Create the directory row for the path, returning the existing one if any."""
        path = Directory.normalize_path(path)
        with self._guard(path):
            self._connection.execute(
                "INSERT OR IGNORE INTO dir_props (path) VALUES (?)", (path,)
            )
            directory = self.get_directory(path)

        self.logger.debug("Directory %s", directory)
        return directory

    def list_directories(self) -> list[Directory]:
        """Return every tracked directory ordered by path."""
        with self._guard("dir_props"), closing(self._connection.cursor()) as cursor:
            cursor.execute("SELECT id, path FROM dir_props ORDER BY path")
            return [Directory(*row) for row in cursor.fetchall()]

    def list_files(self, directory_id: int) -> set[FileRecord]:
        """Return the cached file records of the directory."""
        self.logger.debug("Getting file rows for directory %s", directory_id)
        with self._guard(directory_id), closing(self._connection.cursor()) as cursor:
            cursor.execute(
                """
                SELECT dir_id, name, cached_date, created_date, modified_date, id
                FROM dir_file_props
                WHERE dir_id = ?
                """,
                (directory_id,),
            )
            rows = cursor.fetchall()

        return {
            FileRecord(
                directory_id=dir_id,
                name=name,
                cached_date=from_text(cached_date),
                created_date=from_text(created_date),
                modified_date=from_text(modified_date),
                id=row_id,
            )
            for dir_id, name, cached_date, created_date, modified_date, row_id in rows
        }

    def upsert_file(
        self,
        directory_id: int,
        name: str,
        created_date: datetime,
        modified_date: datetime,
        cached_date: datetime,
    ) -> None:
        """
        Insert the file record, or update the existing one of the same name.

        Raises:
            ConsistencyViolation: The directory does not exist, or the
                cached_date is older than the stored one.
        """
        with self._guard(directory_id):
            self._require_directory(directory_id)

            with closing(self._connection.cursor()) as cursor:
                cursor.execute(
                    "SELECT cached_date FROM dir_file_props WHERE dir_id = ? AND name = ?",
                    (directory_id, name),
                )
                row = cursor.fetchone()

                if row is not None and from_text(row[0]) > as_utc(cached_date):
                    raise ConsistencyViolation(
                        f"cached_date of {name!r} in directory {directory_id} "
                        f"would go back from {row[0]} to {to_text(cached_date)}"
                    )

                cursor.execute(
                    """
                    INSERT INTO dir_file_props
                    (dir_id, name, cached_date, created_date, modified_date)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(dir_id, name) DO UPDATE SET
                        cached_date = excluded.cached_date,
                        created_date = excluded.created_date,
                        modified_date = excluded.modified_date
                    """,
                    (
                        directory_id,
                        name,
                        to_text(cached_date),
                        to_text(created_date),
                        to_text(modified_date),
                    ),
                )

    def delete_file(self, directory_id: int, name: str) -> None:
        """Delete the file record, a no-op when there is none."""
        with self._guard(directory_id):
            self._connection.execute(
                "DELETE FROM dir_file_props WHERE dir_id = ? AND name = ?",
                (directory_id, name),
            )

    def delete_files(self, directory_id: int) -> int:
        """Delete every file record of the directory, returning the count."""
        with self._guard(directory_id), closing(self._connection.cursor()) as cursor:
            cursor.execute("DELETE FROM dir_file_props WHERE dir_id = ?", (directory_id,))
            return cursor.rowcount

    def append_action(
        self,
        directory_id: int,
        kind: ActionKind,
        cached_date: datetime,
    ) -> DirectoryAction:
        """
        Append an entry to the directory's action log.

        Raises:
            ConsistencyViolation: The directory does not exist.
        """
        with self._guard(directory_id):
            self._require_directory(directory_id)

            with closing(self._connection.cursor()) as cursor:
                cursor.execute(
                    """
                    INSERT INTO dir_actions_log (dir_id, action_type, cached_date)
                    VALUES (?, ?, ?)
                    """,
                    (directory_id, self._codes.encode(kind), to_text(cached_date)),
                )
                action_id = cursor.lastrowid

        self.logger.debug("Logged %s for directory %s", kind.value, directory_id)
        return DirectoryAction(
            id=action_id,
            directory_id=directory_id,
            kind=kind,
            cached_date=as_utc(cached_date),
        )

    def _action_from_row(self, row: tuple[int, int, int, str]) -> DirectoryAction:
        # Watch the order of the columns here, must match the model
        action_id, dir_id, action_type, cached_date = row
        return DirectoryAction(
            id=action_id,
            directory_id=dir_id,
            kind=self._codes.decode(action_type),
            cached_date=from_text(cached_date),
        )

    def list_actions(self, directory_id: int) -> list[DirectoryAction]:
        """Return the directory's action log, oldest first."""
        with self._guard(directory_id), closing(self._connection.cursor()) as cursor:
            cursor.execute(
                """
                SELECT id, dir_id, action_type, cached_date
                FROM dir_actions_log
                WHERE dir_id = ?
                ORDER BY id
                """,
                (directory_id,),
            )
            return [self._action_from_row(row) for row in cursor.fetchall()]

    def latest_action(self, directory_id: int) -> DirectoryAction | None:
        """Return the newest entry of the directory's action log, if any."""
        with self._guard(directory_id), closing(self._connection.cursor()) as cursor:
            cursor.execute(
                """
                SELECT id, dir_id, action_type, cached_date
                FROM dir_actions_log
                WHERE dir_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (directory_id,),
            )
            row = cursor.fetchone()

        return self._action_from_row(row) if row else None

    def count_trailing_actions(self, directory_id: int, kind: ActionKind) -> int:
        """Count the `kind` actions logged after the last action of another kind."""
        code = self._codes.encode(kind)
        with self._guard(directory_id), closing(self._connection.cursor()) as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) FROM dir_actions_log
                WHERE dir_id = ? AND action_type = ? AND id > COALESCE(
                    (
                        SELECT MAX(id) FROM dir_actions_log
                        WHERE dir_id = ? AND action_type != ?
                    ),
                    0
                )
                """,
                (directory_id, code, directory_id, code),
            )
            return cursor.fetchone()[0]
