"""CLI entry point for synchronizing and compacting store changelogs.

Usage:
    python -m storesync sync --stores stores.jsonl --output ./out
    python -m storesync sync --resource orders --dry-run
    python -m storesync compact out/acme/orders.jsonl out/acme/products.jsonl

Exit codes:
    0  success
    1  at least one store task or file failed (each error is printed)
    2  invalid settings or store list
    130  interrupted
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import IO, List, Optional, Sequence

from storesync import __version__
from storesync.lib.cancellation import CancellationToken, cancel_on_signals
from storesync.lib.compaction import DuplicatePolicy, compact_files
from storesync.lib.config import load_settings
from storesync.lib.env import load_env_file
from storesync.lib.errors import ConfigurationError, RunError, SyncError
from storesync.lib.logging import setup_logging
from storesync.lib.runner import run_sync
from storesync.lib.stores import load_stores

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def print_errors(error: RunError, stream: Optional[IO[str]] = None) -> None:
    """Print every constituent error of a run on its own line."""
    stream = stream or sys.stderr
    leaves = list(error.iter_contexts())
    print(f"{len(leaves)} errors occurred:", file=stream)
    for store, resource, err in leaves:
        prefix = ""
        has_context = isinstance(err, SyncError) and (err.store or err.resource)
        if not has_context and (store or resource):
            prefix = f"[{store or '?'}.{resource or '?'}] "
        print(f"* {prefix}{err}", file=stream)


def sync_command(args: argparse.Namespace) -> int:
    load_env_file()

    try:
        settings = load_settings(
            args.config,
            stores_file=args.stores,
            output_dir=args.output,
            dry_run=True if args.dry_run else None,
            api_version=args.api_version,
            http_timeout=args.timeout,
            retry_count=args.retries,
            retry_delay=args.delay,
            retry_jitter=args.jitter,
            user_agent=args.user_agent,
            resources=args.resources,
            max_workers=args.workers,
            stack_dump=True if args.stack else None,
            stack_dump_period=args.period,
            log_file=args.log_file,
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(
        verbose=args.verbose,
        json_format=args.json_logs or settings.log_format == "json",
        log_file=settings.log_file,
        level=None if args.verbose else settings.log_level,
    )

    try:
        stores = load_stores(settings.stores_file)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    root = CancellationToken()
    with cancel_on_signals(root):
        try:
            report = run_sync(stores, settings, root)
        except RunError as e:
            print_errors(e)
            return EXIT_FAILED

    if report.cancelled:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    return EXIT_OK


def compact_command(args: argparse.Namespace) -> int:
    setup_logging(verbose=args.verbose, json_format=args.json_logs, log_file=args.log_file)

    policy = DuplicatePolicy.KEEP_LAST if args.keep_last else DuplicatePolicy.KEEP_FIRST
    try:
        compact_files(
            args.files,
            policy,
            backup=not args.no_backup,
            max_workers=args.workers,
        )
    except RunError as e:
        print_errors(e)
        return EXIT_FAILED
    return EXIT_OK


def _add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to a file in addition to console",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="storesync",
        description="Synchronize store API collections into local changelogs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Synchronize every store in stores.jsonl into ./out
    python -m storesync sync --stores stores.jsonl --output ./out

    # Show what would be fetched without fetching
    python -m storesync sync --dry-run

    # Sort and deduplicate changelogs in place
    python -m storesync compact out/acme/orders.jsonl
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Fetch new and updated records")
    sync.add_argument("--stores", help="JSON-lines store list (default: ./stores.jsonl)")
    sync.add_argument("--output", help="Output directory (default: ./out)")
    sync.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the fetch options instead of fetching",
    )
    sync.add_argument("--api-version", help="Admin API version (default: 2020-04)")
    sync.add_argument("--timeout", type=float, help="HTTP timeout in seconds (default: 300)")
    sync.add_argument("--retries", type=int, help="Max attempts per request (default: 10)")
    sync.add_argument("--delay", type=float, help="Base retry delay in seconds (default: 0.1)")
    sync.add_argument("--jitter", type=float, help="Retry jitter ceiling in seconds (default: 0.1)")
    sync.add_argument("--user-agent", help="User-Agent header override")
    sync.add_argument(
        "--resource",
        action="append",
        dest="resources",
        help="Resource to synchronize; repeatable (default: orders, products, customers)",
    )
    sync.add_argument("--workers", type=int, help="Stores synchronized concurrently (default: 8)")
    sync.add_argument("--stack", action="store_true", help="Periodically dump thread stacks")
    sync.add_argument("--period", type=float, help="Seconds between stack dumps (default: 60)")
    sync.add_argument("--config", help="YAML settings file")
    _add_logging_arguments(sync)
    sync.set_defaults(handler=sync_command)

    compact = subparsers.add_parser("compact", help="Sort and deduplicate changelogs in place")
    compact.add_argument("files", nargs="+", help="Changelog files to compact")
    compact.add_argument(
        "--keep-last",
        action="store_true",
        help="Keep the last of several records sharing an updated_at (default: first)",
    )
    compact.add_argument(
        "--no-backup",
        action="store_true",
        help="Do not keep a .bak copy while rewriting",
    )
    compact.add_argument("--workers", type=int, default=4, help="Files compacted concurrently (default: 4)")
    _add_logging_arguments(compact)
    compact.set_defaults(handler=compact_command)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.handler(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED


def compact_main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point of the ``storesync-compact`` alias."""
    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    return main(["compact", *args])


if __name__ == "__main__":
    sys.exit(main())
