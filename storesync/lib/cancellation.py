"""Cancellation tokens and process signal wiring.

A ``CancellationToken`` is a thread-safe flag with an optional parent:
cancelling a token cancels every child created from it, while cancelling
a child leaves its parent and siblings running. The run owns a root token
cancelled by SIGINT/SIGTERM; each task and each sync job derives a child.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from storesync.lib.errors import OperationCancelled

logger = logging.getLogger(__name__)

__all__ = ["CancellationToken", "cancel_on_signals"]


class CancellationToken:
    """Cooperative cancellation flag.

    Example:
        root = CancellationToken()
        task = root.child()
        task.cancel("write failed")   # root keeps running
        root.cancel()                 # task (and all children) stop
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List[CancellationToken] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
            reason = self.reason
        if cancelled:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(
                f"operation cancelled: {self.reason}" if self.reason else "operation cancelled"
            )

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)


@contextmanager
def cancel_on_signals(
    token: CancellationToken,
    signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[CancellationToken]:
    """Cancel ``token`` when one of ``signals`` arrives.

    Previous handlers are restored on exit. Only usable from the main
    thread, as required by ``signal.signal``.
    """
    previous = {}

    def _handler(signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        logger.warning("received %s, cancelling run", name)
        token.cancel(f"received {name}")

    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
