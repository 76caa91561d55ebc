"""
Retry and polling helpers.

Both helpers take sleep, clock and rng as parameters so tests can drive
them without waiting. Nothing here blocks without a ceiling.
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional, TypeVar

import structlog

from peering_orchestrator.core.errors import OrchestratorError, RemoteTransientError
from peering_orchestrator.execution.base import PollPolicy, RetryPolicy

logger = structlog.get_logger("peering_orchestrator.retry")

T = TypeVar("T")


def backoff_delay(policy: RetryPolicy, attempt: int, rng: random.Random | None = None) -> float:
    """Delay to sleep after a failed attempt number attempt (1 based)."""
    rng = rng or random
    raw = min(policy.max_delay, policy.base_delay * (policy.multiplier ** (attempt - 1)))
    factor = 1.0 - policy.jitter * rng.random()
    return max(0.0, raw * factor)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
    label: str = "",
    on_attempt: Optional[Callable[[int], None]] = None,
) -> T:
    """
    Call fn, retrying only RemoteTransientError.

    The last transient error is re-raised once max_attempts is exhausted.
    Any other exception propagates on the first occurrence.
    """

    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return fn()
        except RemoteTransientError as exc:
            if attempt >= policy.max_attempts:
                logger.warning("retry_exhausted", call=label, attempts=attempt, error=str(exc))
                raise
            delay = backoff_delay(policy, attempt, rng)
            logger.info("retry_scheduled", call=label, attempt=attempt, delay=round(delay, 3), error=str(exc))
            sleep(delay)


class PollTimeout(OrchestratorError):
    """Raised when a polled condition does not hold before the ceiling."""

    def __init__(self, label: str, waited: float, last: object) -> None:
        self.label = label
        self.waited = waited
        self.last = last
        super().__init__(f"{label} did not converge within {waited:.1f}s, last observed {last!r}")


def poll_until(
    probe: Callable[[], T],
    done: Callable[[T], bool],
    policy: PollPolicy,
    *,
    timeout: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    label: str = "poll",
    stop: Callable[[T], bool] | None = None,
) -> T:
    """
    Probe until done(value) holds, stop(value) holds, or the ceiling passes.

    Returns the last probed value when done or stop hold. Raises
    PollTimeout otherwise. Transient errors from probe count as a not yet
    converged observation.
    """

    ceiling = policy.timeout if timeout is None else timeout
    started = clock()
    interval = policy.interval
    last: object = None

    while True:
        try:
            value = probe()
        except RemoteTransientError as exc:
            last = exc
        else:
            last = value
            if done(value) or (stop is not None and stop(value)):
                return value

        waited = clock() - started
        if waited >= ceiling:
            raise PollTimeout(label, waited, last)
        sleep(min(interval, max(0.0, ceiling - waited)))
        interval = min(policy.max_interval, interval * policy.multiplier)
