"""Changelog compaction: reorder, deduplicate and truncate in place.

A live changelog is append-ordered and may hold the same object several
times (incremental fetches overlap at their watermarks). Compaction streams
the file into an ordered index keyed by ``updated_at``, rewrites it from the
start in index order and truncates whatever trailing bytes remain.

Records without a parseable ``updated_at`` sort after every timestamped
record. Records whose keys compare equal collapse into one; which one
survives is decided by an explicit ``DuplicatePolicy``.

Example:
    from storesync.lib.compaction import DuplicatePolicy, compact_file

    result = compact_file("out/acme/orders.jsonl", DuplicatePolicy.KEEP_FIRST)
    print(result.records_read, result.records_written)
"""

from __future__ import annotations

import bisect
import io
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from storesync.lib.errors import (
    ChangelogError,
    CompactionIOError,
    DecodingError,
    RunError,
    SyncError,
)
from storesync.lib.records import Record, iter_records, write_record

logger = logging.getLogger(__name__)

__all__ = [
    "CompactionResult",
    "DuplicatePolicy",
    "OrderedRecordIndex",
    "compact_file",
    "compact_files",
    "reorder",
    "sort_key",
]

BACKUP_SUFFIX = ".bak"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# (unknown timestamp?, updated_at); unknown timestamps sort last
SortKey = Tuple[bool, datetime]


class DuplicatePolicy(Enum):
    """Which record survives when two share an ``updated_at``."""

    KEEP_FIRST = "keep_first"  # earliest line in the file wins
    KEEP_LAST = "keep_last"  # latest line in the file wins


def sort_key(record: Record) -> SortKey:
    if record.updated_at is None:
        return (True, _EPOCH)
    return (False, record.updated_at)


class OrderedRecordIndex:
    """Ordered map from ``sort_key`` to a single record.

    Keys are kept sorted with ``bisect``; inserting a key that is already
    present applies the duplicate policy instead of adding an entry.
    """

    def __init__(self, policy: DuplicatePolicy = DuplicatePolicy.KEEP_FIRST) -> None:
        self.policy = policy
        self._keys: List[SortKey] = []
        self._records: Dict[SortKey, Record] = {}
        self.duplicates = 0

    def insert(self, record: Record) -> bool:
        """Add a record; return False when it was dropped as a duplicate."""
        key = sort_key(record)
        if key in self._records:
            self.duplicates += 1
            if self.policy is DuplicatePolicy.KEEP_LAST:
                self._records[key] = record
                return True
            return False
        bisect.insort(self._keys, key)
        self._records[key] = record
        return True

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[Record]:
        for key in self._keys:
            yield self._records[key]


@dataclass(frozen=True)
class CompactionResult:
    """Outcome of one compaction pass."""

    records_read: int
    records_written: int
    original_size: int
    new_size: int

    @property
    def duplicates_dropped(self) -> int:
        return self.records_read - self.records_written

    @property
    def truncated(self) -> bool:
        return self.new_size < self.original_size


def reorder(
    stream: IO[bytes],
    policy: DuplicatePolicy = DuplicatePolicy.KEEP_FIRST,
) -> CompactionResult:
    """Compact an open, seekable, read-write binary changelog in place.

    The whole file is decoded before the first byte is written, so a
    malformed line leaves the file untouched.

    Raises:
        DecodingError: A line is not a JSON object
        CompactionIOError: Rewriting or truncating failed part way
    """
    original_size = stream.seek(0, io.SEEK_END)
    stream.seek(0)

    index = OrderedRecordIndex(policy)
    records_read = 0
    for record in iter_records(stream):
        records_read += 1
        index.insert(record)

    records_written = 0
    new_size = 0
    try:
        stream.seek(0)
        for record in index:
            new_size += write_record(stream, record)
            records_written += 1
        stream.flush()
    except (OSError, ValueError) as exc:
        raise CompactionIOError(
            f"rewrite failed after {records_written} records: {exc}", cause=exc
        ) from exc

    if new_size < original_size:
        try:
            stream.truncate(new_size)
        except OSError as exc:
            # io.UnsupportedOperation is an OSError
            raise CompactionIOError(
                f"unable to truncate from {original_size} to {new_size} bytes: {exc}",
                cause=exc,
            ) from exc

    logger.debug(
        "reordered %d records into %d (%d duplicates)",
        records_read,
        records_written,
        index.duplicates,
    )
    return CompactionResult(
        records_read=records_read,
        records_written=records_written,
        original_size=original_size,
        new_size=new_size,
    )


def compact_file(
    path: Union[str, Path],
    policy: DuplicatePolicy = DuplicatePolicy.KEEP_FIRST,
    *,
    backup: bool = True,
) -> CompactionResult:
    """Compact one changelog file in place.

    With ``backup`` (the default) the file is first copied next to itself
    with a ``.bak`` suffix. The copy is removed once the rewrite succeeds
    and kept, and named in the raised error, when it does not.

    Raises:
        ChangelogError: The file does not exist or cannot be opened
        DecodingError: A line is not a JSON object (file untouched)
        CompactionIOError: The in-place rewrite failed
    """
    path = Path(path)
    if not path.is_file():
        raise ChangelogError("changelog not found", path=str(path))

    backup_path: Optional[Path] = None
    if backup:
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)
        try:
            shutil.copy2(path, backup_path)
        except OSError as exc:
            raise ChangelogError(
                f"unable to back up changelog: {exc}", path=str(path), cause=exc
            ) from exc

    try:
        with open(path, "r+b") as stream:
            result = reorder(stream, policy)
    except DecodingError:
        # Nothing was written; the backup is redundant.
        _remove_backup(backup_path)
        raise
    except CompactionIOError as exc:
        raise CompactionIOError(
            exc.message,
            path=str(path),
            cause=exc.cause,
            backup_path=str(backup_path) if backup_path else None,
        ) from exc
    except OSError as exc:
        raise CompactionIOError(
            f"compaction failed: {exc}",
            path=str(path),
            cause=exc,
            backup_path=str(backup_path) if backup_path else None,
        ) from exc

    _remove_backup(backup_path)
    logger.info(
        "%s: %d records -> %d (%d -> %d bytes)",
        path,
        result.records_read,
        result.records_written,
        result.original_size,
        result.new_size,
    )
    return result


def _remove_backup(backup_path: Optional[Path]) -> None:
    if backup_path is None:
        return
    try:
        backup_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("unable to remove backup %s: %s", backup_path, exc)


def compact_files(
    paths: Sequence[Union[str, Path]],
    policy: DuplicatePolicy = DuplicatePolicy.KEEP_FIRST,
    *,
    backup: bool = True,
    max_workers: int = 4,
) -> Dict[str, CompactionResult]:
    """Compact several changelogs concurrently.

    Every file is attempted; failures do not stop the others.

    Returns:
        Mapping of path to result for every file that was compacted

    Raises:
        RunError: Aggregating the failure of every file that failed
    """
    if max_workers <= 0:
        max_workers = 1

    results: Dict[str, CompactionResult] = {}
    errors: List[BaseException] = []

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_path = {
            executor.submit(compact_file, path, policy, backup=backup): str(path)
            for path in paths
        }
        for future in as_completed(future_to_path):
            path = future_to_path[future]
            try:
                results[path] = future.result()
            except SyncError as exc:
                logger.error("compaction of %s failed: %s", path, exc)
                errors.append(exc)

    logger.info(
        "Compaction complete: %d successful, %d failed out of %d total",
        len(results),
        len(errors),
        len(paths),
    )
    if errors:
        raise RunError(errors)
    return results
