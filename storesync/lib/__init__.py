"""Store synchronization library modules.

This package contains the retry engine, the paginating API client, the
incremental sync job and the changelog compaction engine, plus the
settings, logging and orchestration around them.
"""

from storesync.lib.api import ClientOptions, ShopClient, check_response, next_page_params
from storesync.lib.cancellation import CancellationToken, cancel_on_signals
from storesync.lib.compaction import (
    CompactionResult,
    DuplicatePolicy,
    OrderedRecordIndex,
    compact_file,
    compact_files,
    reorder,
)
from storesync.lib.config import RuntimeSettings, load_settings
from storesync.lib.env import expand_env_vars, load_env_file
from storesync.lib.errors import (
    ChangelogError,
    ClientError,
    CompactionIOError,
    ConfigurationError,
    DecodingError,
    OperationCancelled,
    RateLimitError,
    ResponseError,
    RetryExhaustedError,
    RunError,
    ServerError,
    SyncError,
    TaskError,
    TransportError,
)
from storesync.lib.logging import TaskLogger, get_task_logger, setup_logging
from storesync.lib.quota import QuotaSnapshot, QuotaTracker
from storesync.lib.records import Record
from storesync.lib.retry import RetryPolicy, exponential_backoff, run_with_retry
from storesync.lib.runner import RunReport, TaskResult, run_sync
from storesync.lib.stores import Store, load_stores
from storesync.lib.sync import SyncJob, SyncPhase, SyncResult

__all__ = [
    # API
    "ClientOptions",
    "ShopClient",
    "check_response",
    "next_page_params",
    # Cancellation
    "CancellationToken",
    "cancel_on_signals",
    # Compaction
    "CompactionResult",
    "DuplicatePolicy",
    "OrderedRecordIndex",
    "compact_file",
    "compact_files",
    "reorder",
    # Config
    "RuntimeSettings",
    "load_settings",
    "expand_env_vars",
    "load_env_file",
    # Errors
    "ChangelogError",
    "ClientError",
    "CompactionIOError",
    "ConfigurationError",
    "DecodingError",
    "OperationCancelled",
    "RateLimitError",
    "ResponseError",
    "RetryExhaustedError",
    "RunError",
    "ServerError",
    "SyncError",
    "TaskError",
    "TransportError",
    # Logging
    "TaskLogger",
    "get_task_logger",
    "setup_logging",
    # Quota
    "QuotaSnapshot",
    "QuotaTracker",
    # Records
    "Record",
    # Retry
    "RetryPolicy",
    "exponential_backoff",
    "run_with_retry",
    # Runner
    "RunReport",
    "TaskResult",
    "run_sync",
    # Stores
    "Store",
    "load_stores",
    # Sync
    "SyncJob",
    "SyncPhase",
    "SyncResult",
]
