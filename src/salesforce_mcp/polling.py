"""
Polling helpers for long-running platform jobs (deploys, bulk jobs).

A Deadline is created once per tool call and acts as the cancellation
token: polling waits on it, so it wakes up immediately when the call is
cancelled and never sleeps past the call's timeout.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .errors import DeployTimeoutError
from .models import AsyncJob

logger = logging.getLogger(__name__)


class Deadline:
    """Overall time budget for one tool call, cancellable from another thread."""

    def __init__(self, timeout_ms: int, clock: Callable[[], float] = time.monotonic):
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._started = clock()
        self._expires = self._started + timeout_ms / 1000
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        return max(0.0, self._expires - self._clock())

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    @property
    def expired(self) -> bool:
        return self.cancelled or self._clock() >= self._expires

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds`` (bounded by the deadline). True if cancelled."""
        return self._cancelled.wait(max(0.0, min(seconds, self.remaining())))


class BackoffPolicy:
    """Exponential backoff with a cap: initial, initial*factor, ... <= maximum."""

    def __init__(self, initial: float = 1.0, maximum: float = 15.0, factor: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor

    def next_interval(self, current: Optional[float]) -> float:
        if current is None:
            return self.initial
        return min(current * self.factor, self.maximum)


def poll_job(
    job: AsyncJob,
    refresh: Callable[[AsyncJob], None],
    deadline: Deadline,
    policy: Optional[BackoffPolicy] = None,
) -> AsyncJob:
    """Refresh ``job`` until it reaches a terminal state.

    Raises:
        DeployTimeoutError: deadline reached or cancelled before a terminal state
        UpstreamError: propagated unchanged from ``refresh``
    """
    policy = policy or BackoffPolicy()
    interval: Optional[float] = None

    while True:
        refresh(job)
        if job.is_terminal:
            logger.info("Job %s finished: %s", job.id, job.platform_status)
            return job

        if deadline.expired:
            break

        interval = policy.next_interval(interval)
        logger.debug("Job %s is %s; next poll in %.1fs", job.id, job.platform_status, interval)
        if deadline.wait(interval):
            break
        if deadline.remaining() <= 0:
            # One last look at the deadline edge before giving up
            refresh(job)
            if job.is_terminal:
                return job
            break

    reason = "cancelled" if deadline.cancelled else f"did not finish within {deadline.timeout_ms} ms"
    raise DeployTimeoutError(
        f"Job {job.id} {reason} (last status: {job.platform_status or 'unknown'})",
        job_id=job.id,
        elapsed_ms=deadline.elapsed_ms(),
    )


__all__ = ["Deadline", "BackoffPolicy", "poll_job"]
