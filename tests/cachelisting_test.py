from __future__ import annotations

import os
from pathlib import Path
from types import SimpleNamespace

import pytest

from walk_cache.cacheerrors import DirectoryUnavailable
from walk_cache.cachelisting import LocalListing
from walk_cache.cachemodel import from_timestamp_ns

MODIFIED_NS = 1_704_110_400_123_456_000


@pytest.fixture
def fixture_dir(tmp_path: Path) -> Path:
    (tmp_path / "file01.txt").write_text("one")
    (tmp_path / "file02.txt").write_text("two")
    (tmp_path / ".hidden").write_text("hidden")
    (tmp_path / "directory01").mkdir()
    (tmp_path / "directory02").mkdir()
    (tmp_path / "directory01" / "nested.txt").write_text("nested")
    os.utime(tmp_path / "file02.txt", ns=(MODIFIED_NS, MODIFIED_NS))
    return tmp_path


def test_list_directory_lists_files_only(fixture_dir: Path) -> None:
    listing = LocalListing().list_directory(str(fixture_dir))

    assert sorted(entry.name for entry in listing) == [
        ".hidden",
        "file01.txt",
        "file02.txt",
    ]


def test_list_directory_reads_modified_date(fixture_dir: Path) -> None:
    listing = LocalListing().list_directory(str(fixture_dir))
    entry = next(entry for entry in listing if entry.name == "file02.txt")

    assert entry.modified_date == from_timestamp_ns(MODIFIED_NS)
    assert entry.created_date.tzinfo is not None


def test_list_directory_excludes_files(fixture_dir: Path) -> None:
    listing = LocalListing(exclude_file_pattern=r"^\..*$|file01")

    result = listing.list_directory(str(fixture_dir))

    assert [entry.name for entry in result] == ["file02.txt"]


def test_list_directory_missing_raises(tmp_path: Path) -> None:
    missing = str(tmp_path / "missing")

    with pytest.raises(DirectoryUnavailable) as error:
        LocalListing().list_directory(missing)

    assert error.value.path == missing
    assert missing in str(error.value)


def test_list_directory_on_a_file_raises(fixture_dir: Path) -> None:
    with pytest.raises(DirectoryUnavailable):
        LocalListing().list_directory(str(fixture_dir / "file01.txt"))


def test_list_directory_skips_symlinks(fixture_dir: Path) -> None:
    try:
        os.symlink(fixture_dir / "file01.txt", fixture_dir / "link.txt")
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")

    names = [entry.name for entry in LocalListing().list_directory(str(fixture_dir))]

    assert "link.txt" not in names


def test_list_subdirectories(fixture_dir: Path) -> None:
    result = LocalListing().list_subdirectories(str(fixture_dir))

    assert result == [
        str(fixture_dir / "directory01"),
        str(fixture_dir / "directory02"),
    ]


def test_list_subdirectories_excludes_pattern(fixture_dir: Path) -> None:
    listing = LocalListing(exclude_directory_pattern=r"directory02$")

    result = listing.list_subdirectories(str(fixture_dir))

    assert result == [str(fixture_dir / "directory01")]


def test_created_date_prefers_birthtime_ns() -> None:
    stat = SimpleNamespace(st_birthtime_ns=2_000_000, st_ctime_ns=5_000_000)

    assert LocalListing._created_date(stat) == from_timestamp_ns(2_000_000)


def test_created_date_uses_birthtime_seconds() -> None:
    stat = SimpleNamespace(st_birthtime=2.5, st_ctime_ns=5_000_000)

    assert LocalListing._created_date(stat) == from_timestamp_ns(2_500_000_000)


def test_created_date_falls_back_to_ctime() -> None:
    stat = SimpleNamespace(st_ctime_ns=5_000_000)

    assert LocalListing._created_date(stat) == from_timestamp_ns(5_000_000)
