from __future__ import annotations

import logging
import os
import re
from datetime import datetime

from .cacheerrors import DirectoryUnavailable
from .cachemodel import ListingEntry
from .cachemodel import from_timestamp_ns


class LocalListing:
    """List the files and subdirectories of local directories."""

    logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        exclude_file_pattern: str | None = None,
        exclude_directory_pattern: str | None = None,
    ) -> None:
        """
        Initialize a new LocalListing.

        Keyword Args:
            exclude_file_pattern: Regular expression searched in file names.
                Matching files are not listed.
            exclude_directory_pattern: Regular expression searched in full
                directory paths. Matching subdirectories are not listed.
        """
        self._exclude_file_pattern = exclude_file_pattern
        self._exclude_directory_pattern = exclude_directory_pattern

    def _is_ignored_filename(self, filename: str) -> bool:
        """True if the filename is in the excluded pattern."""
        ptn = self._exclude_file_pattern
        if ptn and re.search(ptn, filename):
            return True

        return False

    def _is_ignored_directory(self, dirpath: str) -> bool:
        """True if the directory path is in the excluded pattern."""
        ptn = self._exclude_directory_pattern
        if ptn and re.search(ptn, dirpath):
            return True

        return False

    def _scan(self, path: str) -> list[os.DirEntry[str]]:
        """
        Return the raw entries of the directory.

        Raises:
            DirectoryUnavailable
        """
        try:
            with os.scandir(path) as entries:
                return list(entries)

        except OSError as error:
            raise DirectoryUnavailable(path, error.strerror or str(error)) from error

    def list_directory(self, path: str) -> list[ListingEntry]:
        """
        List the regular files of the directory with their timestamps.

        Raises:
            DirectoryUnavailable: The directory cannot be opened.
        """
        listing: list[ListingEntry] = []

        for entry in self._scan(path):
            if self._is_ignored_filename(entry.name):
                self.logger.debug("Ignoring file `%s`", entry.name)
                continue

            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                stat = entry.stat(follow_symlinks=False)

            except FileNotFoundError:
                # The file has been moved after the directory was read
                self.logger.debug("'%s' moved during listing.", entry.path)
                continue

            listing.append(
                ListingEntry(
                    name=entry.name,
                    created_date=self._created_date(stat),
                    modified_date=from_timestamp_ns(stat.st_mtime_ns),
                )
            )

        self.logger.debug("Found %s files in %s", len(listing), path)

        return listing

    def list_subdirectories(self, path: str) -> list[str]:
        """
        List the full paths of the directory's subdirectories, sorted.

        Raises:
            DirectoryUnavailable: The directory cannot be opened.
        """
        subdirectories: list[str] = []

        for entry in self._scan(path):
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue

            except FileNotFoundError:
                continue

            if self._is_ignored_directory(entry.path):
                self.logger.debug("Ignoring directory '%s'", entry.path)
                continue

            subdirectories.append(entry.path)

        return sorted(subdirectories)

    @staticmethod
    def _created_date(stat: os.stat_result) -> datetime:
        """Birth time where the platform reports it, else ctime."""
        birthtime_ns = getattr(stat, "st_birthtime_ns", None)
        if birthtime_ns is not None:
            return from_timestamp_ns(birthtime_ns)

        birthtime = getattr(stat, "st_birthtime", None)
        if birthtime is not None:
            return from_timestamp_ns(int(birthtime * 1_000_000_000))

        return from_timestamp_ns(stat.st_ctime_ns)
