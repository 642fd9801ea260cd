"""Incremental synchronization of one store resource into its changelog.

A ``SyncJob`` moves through these phases:

    DETECT_WATERMARK -> FETCH_ALL | FETCH_BOTH -> DRAIN -> DONE | FAILED

The existing changelog is scanned for the oldest and newest ``updated_at``
(the watermarks). An empty changelog is filled by one unbounded fetch;
otherwise two fetches run concurrently, one for everything updated at or
before the oldest watermark and one for everything updated at or after the
newest. Boundary records may duplicate what is already on disk; compaction
removes them later.

Fetch streams never touch the file. They feed a queue drained by the job's
own thread, the only writer of the changelog.
"""

from __future__ import annotations

import io
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

from storesync.lib.api import ShopClient
from storesync.lib.cancellation import CancellationToken
from storesync.lib.errors import ChangelogError, DecodingError, TaskError
from storesync.lib.logging import TaskLogger
from storesync.lib.records import format_timestamp, iter_records, write_record

logger = logging.getLogger(__name__)

__all__ = [
    "PAGE_LIMIT",
    "SyncJob",
    "SyncPhase",
    "SyncResult",
    "Watermarks",
    "fetch_plan",
    "scan_watermarks",
    "terminate_last_line",
]

PAGE_LIMIT = 250
QUEUE_SIZE = PAGE_LIMIT * 4

_STREAM_DONE = object()


class SyncPhase(Enum):
    DETECT_WATERMARK = "detect_watermark"
    FETCH_ALL = "fetch_all"
    FETCH_BOTH = "fetch_both"
    DRAIN = "drain"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Watermarks:
    """Oldest and newest ``updated_at`` found in a changelog.

    Both are None when the changelog holds no timestamped record.
    """

    first: Optional[datetime] = None
    last: Optional[datetime] = None
    records: int = 0
    untimestamped: int = 0

    @property
    def known(self) -> bool:
        return self.first is not None and self.last is not None


def scan_watermarks(stream: IO[bytes], log: Optional[TaskLogger] = None) -> Watermarks:
    """Decode every record from the start of ``stream`` and track watermarks.

    Raises:
        DecodingError: A line is not a JSON object
    """
    stream.seek(0)
    first: Optional[datetime] = None
    last: Optional[datetime] = None
    records = 0
    untimestamped = 0

    for record in iter_records(stream):
        records += 1
        updated = record.updated_at
        if updated is None:
            untimestamped += 1
            continue
        if first is None or updated < first:
            first = updated
        if last is None or updated > last:
            last = updated

    if untimestamped and log is not None:
        log.warning("%d of %d records have no updated_at", untimestamped, records)
    return Watermarks(first=first, last=last, records=records, untimestamped=untimestamped)


def terminate_last_line(stream: IO[bytes]) -> bool:
    """Append ``\\n`` when a non-empty changelog lacks a final newline.

    Returns True when a newline was written.
    """
    size = stream.seek(0, io.SEEK_END)
    if size == 0:
        return False
    stream.seek(size - 1)
    if stream.read(1) == b"\n":
        return False
    stream.write(b"\n")
    return True


def fetch_plan(watermarks: Watermarks) -> List[Dict[str, Any]]:
    """Pagination options for each fetch stream a job should run."""
    first, last = watermarks.first, watermarks.last
    if first is None or last is None:
        return [{"limit": PAGE_LIMIT}]
    return [
        {"limit": PAGE_LIMIT, "updated_at_max": first.isoformat()},
        {"limit": PAGE_LIMIT, "updated_at_min": last.isoformat()},
    ]


@dataclass
class SyncResult:
    """Outcome of a successful (or cancelled) job."""

    store: str
    resource: str
    path: str
    phase: SyncPhase
    watermarks: Watermarks = field(default_factory=Watermarks)
    records_written: int = 0
    dry_run: bool = False
    cancelled: bool = False


class SyncJob:
    """Synchronize one resource of one store into its changelog.

    Example:
        with ShopClient("acme", user, password) as client:
            job = SyncJob(client, "orders", "out/acme/orders.jsonl")
            result = job.run()
            print(result.records_written)
    """

    def __init__(
        self,
        client: ShopClient,
        resource: str,
        path: Union[str, Path],
        *,
        logger: Optional[TaskLogger] = None,
        dry_run: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.client = client
        self.resource = resource
        self.path = Path(path)
        self.dry_run = dry_run
        self.cancel = cancel or CancellationToken()
        self.log = logger or TaskLogger(__name__, store=client.store_id, resource=resource)
        self.phase = SyncPhase.DETECT_WATERMARK

    @property
    def store(self) -> str:
        return self.client.store_id

    def _fail(self, errors: List[BaseException]) -> TaskError:
        self.phase = SyncPhase.FAILED
        return TaskError(errors, store=self.store, resource=self.resource)

    def run(self) -> SyncResult:
        """Run the job to completion.

        Raises:
            TaskError: Aggregating every failure of the job
        """
        self.phase = SyncPhase.DETECT_WATERMARK
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            stream = open(self.path, "a+b")
        except OSError as exc:
            raise self._fail(
                [ChangelogError(f"unable to open changelog: {exc}", path=str(self.path), cause=exc)]
            ) from exc

        with stream:
            self.log.info("scanning %s", self.path)
            try:
                watermarks = scan_watermarks(stream, self.log)
            except DecodingError as exc:
                raise self._fail([exc]) from exc
            except OSError as exc:
                raise self._fail(
                    [ChangelogError(f"unable to read changelog: {exc}", path=str(self.path), cause=exc)]
                ) from exc

            self.log.info(
                "found %d records; first=%s last=%s",
                watermarks.records,
                format_timestamp(watermarks.first),
                format_timestamp(watermarks.last),
            )

            plans = fetch_plan(watermarks)
            self.phase = SyncPhase.FETCH_BOTH if watermarks.known else SyncPhase.FETCH_ALL
            result = SyncResult(
                store=self.store,
                resource=self.resource,
                path=str(self.path),
                phase=self.phase,
                watermarks=watermarks,
                dry_run=self.dry_run,
            )

            if self.dry_run:
                for options in plans:
                    self.log.warning(
                        "dry run enabled; would have paginated %s with options: %s",
                        self.resource,
                        urlencode(options),
                    )
                self.phase = result.phase = SyncPhase.DONE
                return result

            try:
                if terminate_last_line(stream):
                    self.log.warning("%s did not end with a newline; terminated it", self.path)
            except OSError as exc:
                raise self._fail(
                    [ChangelogError(f"unable to terminate changelog: {exc}", path=str(self.path), cause=exc)]
                ) from exc

            written, errors, cancelled = self._drain(stream, plans)

        result.records_written = written
        result.cancelled = cancelled
        if errors:
            raise self._fail(errors)

        self.phase = result.phase = SyncPhase.DONE
        self.log.info("wrote %d records to %s", written, self.path)
        return result

    def _drain(
        self,
        stream: IO[bytes],
        plans: List[Dict[str, Any]],
    ) -> Tuple[int, List[BaseException], bool]:
        """Fan the fetch streams into a queue and append what arrives.

        Returns:
            (records written, errors, whether the job was cancelled)
        """
        token = self.cancel.child()
        results: "queue.Queue[Any]" = queue.Queue(maxsize=QUEUE_SIZE)
        errors: List[BaseException] = []
        errors_lock = threading.Lock()

        def record_error(exc: BaseException) -> None:
            with errors_lock:
                errors.append(exc)

        def produce(options: Dict[str, Any]) -> None:
            try:
                for record in self.client.paginate(self.resource, options, cancel=token):
                    if token.cancelled:
                        break
                    results.put(record)
            except Exception as exc:
                self.log.error("fetching %s failed: %s", self.resource, exc)
                record_error(exc)
                token.cancel(f"fetching {self.resource} failed")
            finally:
                results.put(_STREAM_DONE)

        self.phase = SyncPhase.DRAIN
        written = 0
        write_failed = False
        finished = 0

        with ThreadPoolExecutor(
            max_workers=len(plans),
            thread_name_prefix=f"{self.store}-{self.resource}",
        ) as pool:
            for options in plans:
                pool.submit(produce, options)

            while finished < len(plans):
                item = results.get()
                if item is _STREAM_DONE:
                    finished += 1
                    continue
                if write_failed or token.cancelled:
                    continue
                try:
                    write_record(stream, item)
                    written += 1
                except (OSError, ValueError) as exc:
                    write_failed = True
                    record_error(
                        ChangelogError(
                            f"write failed after {written} records: {exc}",
                            path=str(self.path),
                            cause=exc,
                        )
                    )
                    token.cancel("changelog write failed")

        if not write_failed:
            try:
                stream.flush()
            except OSError as exc:
                record_error(
                    ChangelogError(f"flush failed: {exc}", path=str(self.path), cause=exc)
                )

        cancelled = self.cancel.cancelled
        if cancelled and not errors:
            self.log.warning("cancelled after writing %d records", written)
        return written, errors, cancelled
