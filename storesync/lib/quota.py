"""Rate-limit quota tracking for API clients.

The API reports its leaky-bucket state on every response through a
``"{used}/{capacity}"`` header and asks clients to back off with a
``Retry-After`` header (seconds, fractional values allowed). This module
parses those headers into a ``QuotaSnapshot``.

One tracker belongs to one client (one store); snapshots are never shared
across stores or persisted.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Mapping, Optional

import httpx

from storesync.lib.errors import DecodingError

logger = logging.getLogger(__name__)

__all__ = [
    "CALL_LIMIT_HEADER",
    "RETRY_AFTER_HEADER",
    "QuotaSnapshot",
    "QuotaTracker",
    "parse_retry_after",
]

CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"
RETRY_AFTER_HEADER = "Retry-After"


@dataclass(frozen=True)
class QuotaSnapshot:
    """Rate-limit bucket state reported by the last response."""

    requests_used: int = 0
    bucket_capacity: int = 0
    retry_after: timedelta = timedelta(0)

    @property
    def remaining(self) -> int:
        return max(0, self.bucket_capacity - self.requests_used)

    def describe(self) -> str:
        return "%d/%d used, retry after %.3fs" % (
            self.requests_used,
            self.bucket_capacity,
            self.retry_after.total_seconds(),
        )


def parse_retry_after(headers: Mapping[str, str], status: int = 0) -> timedelta:
    """Parse a ``Retry-After`` header given in (possibly fractional) seconds.

    Returns:
        The delay, or a zero duration if the header is absent

    Raises:
        DecodingError: If the header is present but not a number
    """
    value = headers.get(RETRY_AFTER_HEADER)
    if value is None or value == "":
        return timedelta(0)
    try:
        seconds = float(value)
    except ValueError as exc:
        raise DecodingError(
            f"invalid {RETRY_AFTER_HEADER} header: {value!r}",
            body=value.encode("utf-8", errors="replace"),
            status=status,
        ) from exc
    return timedelta(seconds=seconds)


class QuotaTracker:
    """Tracks the quota snapshot of one client.

    Thread-safe: concurrent pagination streams of the same store share the
    tracker.

    Example:
        tracker = QuotaTracker()
        snapshot = tracker.update(response)
        if snapshot.remaining < 2:
            ...
    """

    def __init__(self, snapshot: Optional[QuotaSnapshot] = None) -> None:
        self._snapshot = snapshot or QuotaSnapshot()
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> QuotaSnapshot:
        with self._lock:
            return self._snapshot

    def update(self, response: httpx.Response) -> QuotaSnapshot:
        """Rebuild the snapshot from a response's headers.

        A missing call-limit header leaves the previous counts untouched.
        A missing ``Retry-After`` header resets the delay to zero.

        Raises:
            DecodingError: If either header carries a malformed number
        """
        headers = response.headers
        status = response.status_code

        with self._lock:
            snapshot = self._snapshot

            raw = headers.get(CALL_LIMIT_HEADER)
            if raw is not None:
                parts = raw.split("/")
                if len(parts) == 2:
                    try:
                        used = int(parts[0].strip())
                        capacity = int(parts[1].strip())
                    except ValueError as exc:
                        raise DecodingError(
                            f"invalid {CALL_LIMIT_HEADER} header: {raw!r}",
                            body=raw.encode("utf-8", errors="replace"),
                            status=status,
                        ) from exc
                    snapshot = replace(
                        snapshot, requests_used=used, bucket_capacity=capacity
                    )

            snapshot = replace(
                snapshot, retry_after=parse_retry_after(headers, status)
            )
            self._snapshot = snapshot

        logger.debug("quota: %s", snapshot.describe())
        return snapshot
