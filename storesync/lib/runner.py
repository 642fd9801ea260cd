"""Run orchestration: synchronize many stores concurrently.

One task per store runs on a thread pool. Inside a task the configured
resources are synchronized one after another through a single client, so
rate-limit quota stays per store. A failed resource does not stop the
task's other resources, and a failed task does not stop other tasks; all
failures are aggregated into one ``RunError``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from storesync.lib.api import ClientOptions, ShopClient
from storesync.lib.cancellation import CancellationToken
from storesync.lib.config import RuntimeSettings
from storesync.lib.diagnostics import StackDumper
from storesync.lib.errors import RunError, TaskError
from storesync.lib.logging import TaskLogger, get_task_logger
from storesync.lib.stores import Store, changelog_path
from storesync.lib.sync import SyncJob, SyncResult

logger = logging.getLogger(__name__)

__all__ = ["ClientFactory", "RunReport", "TaskResult", "run_sync", "sync_store"]

ClientFactory = Callable[[Store, ClientOptions, TaskLogger], ShopClient]


def default_client_factory(store: Store, options: ClientOptions, log: TaskLogger) -> ShopClient:
    return ShopClient(
        store.store_id,
        store.username,
        store.password,
        options=options,
        logger=log,
    )


@dataclass
class TaskResult:
    """Outcome of one store task."""

    store: Store
    results: List[SyncResult] = field(default_factory=list)
    error: Optional[TaskError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def records_written(self) -> int:
        return sum(r.records_written for r in self.results)


@dataclass
class RunReport:
    """Outcome of a whole run."""

    tasks: List[TaskResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> List[TaskResult]:
        return [t for t in self.tasks if not t.ok]

    @property
    def succeeded(self) -> List[TaskResult]:
        return [t for t in self.tasks if t.ok]

    @property
    def records_written(self) -> int:
        return sum(t.records_written for t in self.tasks)


def sync_store(
    store: Store,
    settings: RuntimeSettings,
    cancel: CancellationToken,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> TaskResult:
    """Synchronize every configured resource of one store."""
    factory = client_factory or default_client_factory
    log = get_task_logger(__name__, store=store.id)
    task_cancel = cancel.child()
    result = TaskResult(store=store)
    errors: List[BaseException] = []

    log.info("starting sync of %d resources (%s)", len(settings.resources), store.provenance or "-")
    with factory(store, settings.client_options(), log) as client:
        for resource in settings.resources:
            if task_cancel.cancelled:
                log.warning("cancelled; skipping remaining resources")
                break
            job_log = log.bind(resource=resource)
            job = SyncJob(
                client,
                resource,
                changelog_path(settings.output_dir, store.store_id, resource),
                logger=job_log,
                dry_run=settings.dry_run,
                cancel=task_cancel,
            )
            try:
                result.results.append(job.run())
            except TaskError as exc:
                job_log.error("sync failed: %s", exc)
                errors.append(exc)

    if errors:
        result.error = TaskError(errors, store=store.id)
    log.info(
        "finished: %d records written, %d failed resources",
        result.records_written,
        len(errors),
    )
    return result


def run_sync(
    stores: Sequence[Store],
    settings: RuntimeSettings,
    cancel: Optional[CancellationToken] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> RunReport:
    """Synchronize all stores.

    Raises:
        RunError: If any task failed; its ``report`` holds the full report
    """
    cancel = cancel or CancellationToken()
    report = RunReport()
    if not stores:
        logger.warning("no stores to synchronize")
        return report

    max_workers = max(1, min(settings.max_workers, len(stores)))
    logger.info(
        "Starting sync with %d workers for %d stores", max_workers, len(stores)
    )

    dumper: Optional[StackDumper] = None
    if settings.stack_dump:
        dumper = StackDumper(settings.output_dir, settings.stack_dump_period, cancel)
        dumper.start()

    try:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="store") as executor:
            future_to_store = {
                executor.submit(
                    sync_store, store, settings, cancel, client_factory=client_factory
                ): store
                for store in stores
            }
            for future in as_completed(future_to_store):
                store = future_to_store[future]
                try:
                    task = future.result()
                except Exception as e:
                    logger.error("Unexpected error for %s: %s", store.id, e, exc_info=True)
                    task = TaskResult(store=store, error=TaskError([e], store=store.id))
                report.tasks.append(task)
    finally:
        if dumper is not None:
            dumper.stop()

    report.cancelled = cancel.cancelled
    logger.info(
        "Sync complete: %d successful, %d failed out of %d total (%d records)",
        len(report.succeeded),
        len(report.failed),
        len(stores),
        report.records_written,
    )

    failures = [t.error for t in report.failed if t.error is not None]
    if failures:
        raise RunError(failures, report=report)
    return report
