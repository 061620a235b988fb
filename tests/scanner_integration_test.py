from __future__ import annotations

import os
import shutil
import sqlite3
from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest

from walk_cache.cacheerrors import DirectoryUnavailable
from walk_cache.cacheerrors import NotFoundError
from walk_cache.cacheerrors import StoreUnavailable
from walk_cache.cachelisting import LocalListing
from walk_cache.cachemodel import ActionKind
from walk_cache.cachemodel import DirectoryState
from walk_cache.cachemodel import to_timestamp_ns
from walk_cache.cachestore import CacheStore
from walk_cache.scanner import Scanner

T1_NS = 1_704_110_400_000_000_000
T2_NS = T1_NS + 3_600_000_000_000


@pytest.fixture
def database_path(tmp_path: Path) -> str:
    return str(tmp_path / "cache.db")


@pytest.fixture
def watched(tmp_path: Path) -> Path:
    path = tmp_path / "watched"
    path.mkdir()
    return path


@pytest.fixture
def scanner(database_path: str) -> Generator[Scanner, None, None]:
    scanner = Scanner(CacheStore(database_path), LocalListing(), workers=2)
    yield scanner
    scanner.close()
    scanner.store.close()


def write_file(path: Path, mtime_ns: int = T1_NS) -> None:
    path.write_text(path.name)
    os.utime(path, ns=(mtime_ns, mtime_ns))


def kinds(scanner: Scanner, path: Path) -> list[ActionKind]:
    return [action.kind for action in scanner.history(str(path))]


def cached(scanner: Scanner, path: Path) -> dict:
    directory = scanner.store.get_directory(str(path))
    return {record.name: record for record in scanner.store.list_files(directory.id)}


def test_empty_directory_scanned_first_time(scanner: Scanner, watched: Path) -> None:
    result = scanner.scan_directory(str(watched))

    assert (result.added, result.removed, result.modified) == (0, 0, 0)
    assert scanner.store.get_directory(str(watched)).path == str(watched)
    assert kinds(scanner, watched) == [ActionKind.SCANNED]


def test_modified_file_is_logged_and_cached(scanner: Scanner, watched: Path) -> None:
    write_file(watched / "a.txt", T1_NS)
    first = scanner.scan_directory(str(watched))

    os.utime(watched / "a.txt", ns=(T2_NS, T2_NS))
    second = scanner.scan_directory(str(watched))

    record = cached(scanner, watched)["a.txt"]
    assert {entry.name for entry in second.diff.modified} == {"a.txt"}
    assert kinds(scanner, watched) == [ActionKind.ADDED, ActionKind.MODIFIED]
    assert to_timestamp_ns(record.modified_date) == T2_NS
    assert record.cached_date == second.cached_date
    assert record.cached_date >= first.cached_date


def test_deleted_file_is_removed_from_cache(scanner: Scanner, watched: Path) -> None:
    write_file(watched / "a.txt")
    write_file(watched / "b.txt")
    scanner.scan_directory(str(watched))

    (watched / "b.txt").unlink()
    result = scanner.scan_directory(str(watched))

    assert result.diff.removed == {"b.txt"}
    assert set(cached(scanner, watched)) == {"a.txt"}
    assert kinds(scanner, watched) == [ActionKind.ADDED, ActionKind.REMOVED]


def test_rescan_without_changes(scanner: Scanner, watched: Path) -> None:
    write_file(watched / "a.txt")
    scanner.scan_directory(str(watched))

    result = scanner.scan_directory(str(watched))

    assert result.diff.is_empty
    assert kinds(scanner, watched) == [ActionKind.ADDED, ActionKind.SCANNED]


def test_two_directories_scanned_concurrently(scanner: Scanner, tmp_path: Path) -> None:
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    write_file(first / "a.txt")
    for name in ["a.txt", "b.txt", "c.txt"]:
        write_file(second / name)

    results = scanner.scan_directories([str(first), str(second)])
    write_file(second / "d.txt")
    results += scanner.scan_directories([str(first), str(second)])

    assert [result.added for result in results] == [1, 3, 0, 1]
    assert kinds(scanner, first) == [ActionKind.ADDED, ActionKind.SCANNED]
    assert kinds(scanner, second) == [ActionKind.ADDED, ActionKind.ADDED]
    assert set(cached(scanner, second)) == {"a.txt", "b.txt", "c.txt", "d.txt"}


def test_failed_commit_keeps_old_state_on_disk(
    scanner: Scanner,
    watched: Path,
    database_path: str,
) -> None:
    write_file(watched / "a.txt")
    write_file(watched / "b.txt")
    scanner.scan_directory(str(watched))

    (watched / "b.txt").unlink()
    os.utime(watched / "a.txt", ns=(T2_NS, T2_NS))
    write_file(watched / "c.txt")

    with patch.object(
        scanner.store,
        "append_action",
        side_effect=StoreUnavailable(str(watched), "disk I/O error"),
    ):
        with pytest.raises(StoreUnavailable):
            scanner.scan_directory(str(watched))

    reopened = CacheStore(database_path)
    directory = reopened.get_directory(str(watched))
    records = {record.name: record for record in reopened.list_files(directory.id)}

    assert set(records) == {"a.txt", "b.txt"}
    assert to_timestamp_ns(records["a.txt"].modified_date) == T1_NS
    assert [action.kind for action in reopened.list_actions(directory.id)] == [
        ActionKind.ADDED
    ]
    reopened.close()


def test_scan_tree_tracks_subdirectories(scanner: Scanner, watched: Path) -> None:
    (watched / "sub" / "deeper").mkdir(parents=True)
    write_file(watched / "top.txt")
    write_file(watched / "sub" / "deeper" / "low.txt")

    results = scanner.scan_tree(str(watched))

    assert [result.directory.path for result in results] == [
        str(watched),
        str(watched / "sub"),
        str(watched / "sub" / "deeper"),
    ]
    assert set(cached(scanner, watched / "sub" / "deeper")) == {"low.txt"}
    assert set(cached(scanner, watched)) == {"top.txt"}


def test_restore_modified_dates(scanner: Scanner, watched: Path) -> None:
    write_file(watched / "a.txt", T1_NS)
    write_file(watched / "b.txt", T1_NS)
    scanner.scan_directory(str(watched))

    os.utime(watched / "a.txt", ns=(T2_NS, T2_NS))
    (watched / "b.txt").unlink()

    restored = scanner.restore_modified_dates(str(watched))

    assert restored == 1
    assert os.stat(watched / "a.txt").st_mtime_ns == T1_NS
    assert os.stat(watched / "a.txt").st_atime_ns == T2_NS


def test_removed_directory_after_three_misses(scanner: Scanner, watched: Path) -> None:
    write_file(watched / "a.txt")
    scanner.scan_directory(str(watched))
    (watched / "a.txt").unlink()
    watched.rmdir()

    for _ in range(3):
        with pytest.raises(DirectoryUnavailable) as error:
            scanner.scan_directory(str(watched))

    assert error.value.removed is True
    assert cached(scanner, watched) == {}
    assert kinds(scanner, watched)[-1] is ActionKind.DIRECTORY_REMOVED


def test_state_persists_between_store_instances(
    scanner: Scanner,
    watched: Path,
    database_path: str,
) -> None:
    write_file(watched / "a.txt")
    scanner.scan_directory(str(watched))

    second = Scanner(CacheStore(database_path), LocalListing())
    result = second.scan_directory(str(watched))
    second.store.close()

    assert result.diff.is_empty
    assert result.diff.unchanged == {"a.txt"}


def test_failed_first_scan_leaves_no_directory_on_disk(
    scanner: Scanner,
    watched: Path,
    database_path: str,
) -> None:
    write_file(watched / "a.txt")

    with patch.object(
        scanner.store,
        "append_action",
        side_effect=StoreUnavailable(str(watched), "disk I/O error"),
    ):
        with pytest.raises(StoreUnavailable):
            scanner.scan_directory(str(watched))

    reopened = CacheStore(database_path)
    with pytest.raises(NotFoundError):
        reopened.get_directory(str(watched))
    reopened.close()


def test_scan_tree_retires_removed_subdirectory(scanner: Scanner, watched: Path) -> None:
    (watched / "sub" / "deeper").mkdir(parents=True)
    write_file(watched / "sub" / "a.txt")
    write_file(watched / "sub" / "deeper" / "b.txt")
    scanner.scan_tree(str(watched))

    shutil.rmtree(watched / "sub")
    for _ in range(3):
        scanner.scan_tree(str(watched))

    for path in (watched / "sub", watched / "sub" / "deeper"):
        assert scanner.directory_state(str(path)) is DirectoryState.REMOVED
        assert cached(scanner, path) == {}
        assert kinds(scanner, path)[-1] is ActionKind.DIRECTORY_REMOVED
    assert scanner.directory_state(str(watched)) is DirectoryState.KNOWN


def test_locked_database_error_names_directory(watched: Path, database_path: str) -> None:
    scanner = Scanner(CacheStore(database_path, timeout=0.1), LocalListing())
    scanner.scan_directory(str(watched))

    blocker = sqlite3.connect(database_path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreUnavailable) as error:
            scanner.scan_directory(str(watched))

    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        scanner.store.close()

    assert error.value.subject == str(watched)
    assert str(watched) in str(error.value)
    assert "locked" in str(error.value)
