from __future__ import annotations

from collections.abc import Iterable

from .cachemodel import Diff
from .cachemodel import FileRecord
from .cachemodel import ListingEntry


def detect_changes(
    cached: Iterable[FileRecord],
    observed: Iterable[ListingEntry],
) -> Diff:
    """
    Classify the observed listing of a directory against its cached records.

    A name present on both sides is modified when either timestamp differs,
    in either direction. A modified time earlier than the cached one is
    reported like any other mismatch. Names with identical timestamps are
    unchanged and must not cause a write.

    Args:
        cached: The file records loaded from the store for one directory.
        observed: The entries listed from the filesystem for the same
            directory. Names are expected to be unique; a repeated name
            keeps its last entry.

    Returns:
        The Diff. Modified entries carry the observed timestamps.
    """
    cached_by_name = {record.name: record for record in cached}
    observed_by_name = {entry.name: entry for entry in observed}

    added: set[ListingEntry] = set()
    modified: set[ListingEntry] = set()
    unchanged: set[str] = set()

    for name, entry in observed_by_name.items():
        record = cached_by_name.get(name)

        if record is None:
            added.add(entry)

        elif (
            record.created_date != entry.created_date
            or record.modified_date != entry.modified_date
        ):
            modified.add(entry)

        else:
            unchanged.add(name)

    removed = cached_by_name.keys() - observed_by_name.keys()

    return Diff(
        added=frozenset(added),
        removed=frozenset(removed),
        modified=frozenset(modified),
        unchanged=frozenset(unchanged),
    )
