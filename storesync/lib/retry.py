"""Retry engine for fallible operations.

Runs an operation under a pluggable ``RetryPolicy``: a delay function that
decides, per failed attempt, how long to wait and whether to try again, an
attempt cap, and an optional hook invoked before each retry sleep.

Every failure is kept; when the engine gives up it raises a single
``RetryExhaustedError`` aggregating all of them.

Implementation: Uses tenacity internally for the attempt loop.

Example:
    policy = RetryPolicy(
        max_attempts=5,
        delay_fn=exponential_backoff(0.1, jitter=0.1),
    )
    response = run_with_retry(lambda: client.get(url), policy)
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import tenacity

from storesync.lib.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_DELAY",
    "DEFAULT_MAX_ATTEMPTS",
    "DelayFn",
    "RetryHook",
    "RetryPolicy",
    "exponential_backoff",
    "fixed_delay",
    "retry_if",
    "run_with_retry",
]

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_DELAY = 0.1  # seconds

# (attempt, error) -> (delay seconds, retry?)
DelayFn = Callable[[int, BaseException], Tuple[float, bool]]
# (attempt, delay seconds, error)
RetryHook = Callable[[int, float, BaseException], None]


def fixed_delay(delay: float = DEFAULT_DELAY) -> DelayFn:
    """Always retry after ``delay`` seconds."""

    def _delay(attempt: int, error: BaseException) -> Tuple[float, bool]:
        return delay, True

    return _delay


def retry_if(
    predicate: Callable[[BaseException], bool],
    delay: float = DEFAULT_DELAY,
) -> DelayFn:
    """Retry after a fixed delay while ``predicate(error)`` holds."""

    def _delay(attempt: int, error: BaseException) -> Tuple[float, bool]:
        return delay, bool(predicate(error))

    return _delay


def exponential_backoff(
    initial: float,
    jitter: float = 0.0,
    *,
    rng: Optional[random.Random] = None,
) -> Callable[[int], float]:
    """Build a backoff function: ``initial * 2**attempt`` plus random jitter.

    The jitter is drawn uniformly from ``[0, jitter)`` seconds.
    """
    source = rng or random.Random()

    def _backoff(attempt: int) -> float:
        delay = initial * (2 ** attempt)
        if jitter > 0:
            delay += source.uniform(0, jitter)
        return delay

    return _backoff


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration. Stateless and reusable across calls.

    Attributes:
        max_attempts: Maximum number of attempts (must be >= 1)
        delay_fn: Decides ``(delay, retry?)`` for each failed attempt
        on_retry: Called with ``(attempt, delay, error)`` before sleeping
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_fn: DelayFn = field(default_factory=fixed_delay)
    on_retry: Optional[RetryHook] = None

    @classmethod
    def default(cls) -> "RetryPolicy":
        """Fixed 100ms delay, always retry, 10 attempts."""
        return cls()

    @classmethod
    def none(cls) -> "RetryPolicy":
        """No retry - fail after the first attempt."""
        return cls(max_attempts=1)


class _PolicyAdapter(tenacity.retry_base):
    """Bridges a ``RetryPolicy`` onto tenacity's retry/wait/before_sleep hooks.

    tenacity asks "retry?" before "how long?", while the policy answers both
    in one call, so the decision for the current attempt is cached here.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self._decisions: Dict[int, Tuple[float, bool]] = {}

    def _decide(self, retry_state: tenacity.RetryCallState) -> Tuple[float, bool]:
        attempt = retry_state.attempt_number
        if attempt not in self._decisions:
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            if error is None:
                self._decisions[attempt] = (0.0, False)
            else:
                delay, again = self.policy.delay_fn(attempt, error)
                self._decisions[attempt] = (max(0.0, float(delay)), bool(again))
        return self._decisions[attempt]

    def __call__(self, retry_state: tenacity.RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        return self._decide(retry_state)[1]

    def wait(self, retry_state: tenacity.RetryCallState) -> float:
        return self._decide(retry_state)[0]

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        hook = self.policy.on_retry
        if hook is None or retry_state.outcome is None:
            return
        error = retry_state.outcome.exception()
        delay = self._decide(retry_state)[0]
        hook(retry_state.attempt_number, delay, error)


def run_with_retry(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    operation_name: str = "operation",
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Execute ``operation`` under ``policy``.

    The attempt counter starts at 1. After each failure the error is
    recorded and the policy's delay function is consulted; the engine stops
    when it declines to retry or the attempt cap is reached, raising a
    ``RetryExhaustedError`` that aggregates every failure in order.

    Args:
        operation: Zero-argument callable to run
        policy: Retry policy (defaults to ``RetryPolicy.default()``)
        operation_name: Name for logging and error context
        sleep: Sleep function, injectable for tests

    Returns:
        Result of the first successful attempt

    Raises:
        ValueError: If ``policy.max_attempts`` is less than 1 (nothing runs)
        RetryExhaustedError: If no attempt succeeded
    """
    policy = policy or RetryPolicy.default()
    if policy.max_attempts < 1:
        raise ValueError(
            f"max_attempts must be >= 1, got {policy.max_attempts}"
        )

    errors: List[BaseException] = []

    def attempt() -> T:
        try:
            return operation()
        except Exception as exc:
            errors.append(exc)
            raise

    adapter = _PolicyAdapter(policy)
    retryer = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(policy.max_attempts),
        wait=adapter.wait,
        retry=adapter,
        before_sleep=adapter.before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        return retryer(attempt)
    except Exception as exc:
        if not errors or errors[-1] is not exc:
            raise
        logger.debug(
            "%s gave up after %d attempt(s): %s", operation_name, len(errors), exc
        )
        raise RetryExhaustedError(errors, operation=operation_name) from exc
