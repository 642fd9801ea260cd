"""Periodic thread stack dumps for diagnosing stuck runs.

When enabled, a daemon thread writes the stacks of every live thread to
``{directory}/shop-NNNN.trace`` once per period. The counter wraps at
10000; the dumper gives up after more than five consecutive write errors.
"""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from storesync.lib.cancellation import CancellationToken

logger = logging.getLogger(__name__)

__all__ = ["StackDumper", "format_stacks", "write_stack_dump"]

TRACE_FILE_PATTERN = "shop-%04d.trace"
COUNTER_WRAP = 10000
MAX_CONSECUTIVE_ERRORS = 5


def format_stacks() -> str:
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    lines = [f"stack dump at {datetime.now(timezone.utc).isoformat()}\n"]
    for ident, frame in sys._current_frames().items():
        lines.append(f"\nthread {names.get(ident, '?')} ({ident}):\n")
        lines.extend(traceback.format_stack(frame))
    return "".join(lines)


def write_stack_dump(directory: Union[str, Path], counter: int) -> Path:
    """Write all thread stacks to the numbered trace file; return its path."""
    path = Path(directory) / (TRACE_FILE_PATTERN % (counter % COUNTER_WRAP))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_stacks(), encoding="utf-8")
    return path


class StackDumper(threading.Thread):
    """Daemon thread dumping stacks every ``period`` seconds until stopped.

    Stops when ``stop()`` is called or the parent token is cancelled.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        period: float = 60.0,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        super().__init__(name="stack-dumper", daemon=True)
        self.directory = Path(directory)
        self.period = period
        self._stop_token = cancel.child() if cancel is not None else CancellationToken()
        self.dumps = 0

    def stop(self) -> None:
        self._stop_token.cancel("stack dumper stopped")

    def run(self) -> None:
        counter = 0
        errors = 0
        while not self._stop_token.wait(self.period):
            try:
                path = write_stack_dump(self.directory, counter)
            except OSError as exc:
                errors += 1
                logger.warning("error writing stack dump: %s", exc)
                if errors > MAX_CONSECUTIVE_ERRORS:
                    logger.error("too many stack dump errors; giving up")
                    return
                continue
            errors = 0
            self.dumps += 1
            logger.debug("wrote stack dump to %s", path)
            counter = (counter + 1) % COUNTER_WRAP
