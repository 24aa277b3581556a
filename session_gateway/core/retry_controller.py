"""
Retry/Backoff Controller
========================

Decides whether, when and how the lifecycle manager re-attempts
initialization after a failure.

Delay selection (per FailureClass):
    - failure_class_delays[cls] when configured. Defaults: TIMEOUT waits a
      longer fixed delay (resource starvation), AUTH_FAILURE retries
      immediately (credentials are purged first, stale ones are never
      retried unchanged).
    - otherwise base_delay grown LINEARLY (base * attempt) or
      MULTIPLICATIVELY (base * factor ** (attempt - 1)), capped at max_delay.

Within one supervised run the delay for a class never decreases. A run ends
when the session reaches READY or an operator forces a clean re-init, at
which point reset() clears the history.

At most one retry may be outstanding; schedule() while one is pending is a
no-op. Once attempt_count reaches max_attempts nothing further is scheduled
and the machine stays FAILED until force_clean_and_reinit().
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from session_gateway.core.errors import FailureClass

logger = logging.getLogger(__name__)

RetryCallback = Callable[[], Awaitable[Any]]


class BackoffGrowth(str, Enum):
    LINEAR = "linear"
    MULTIPLICATIVE = "multiplicative"


def _default_class_delays() -> Dict[FailureClass, float]:
    return {
        FailureClass.TIMEOUT: 15.0,
        FailureClass.AUTH_FAILURE: 0.0,
    }


@dataclass
class RetryPolicy:
    """Backoff configuration for initialization retries."""
    max_attempts: int = 5
    base_delay: float = 5.0
    growth: BackoffGrowth = BackoffGrowth.LINEAR
    growth_factor: float = 2.0
    max_delay: float = 300.0
    failure_class_delays: Dict[FailureClass, float] = field(default_factory=_default_class_delays)

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.growth_factor < 1.0:
            raise ValueError("growth_factor must be >= 1.0")
        self.growth = BackoffGrowth(self.growth)


@dataclass
class ScheduledRetry:
    """A retry that is waiting for its delay to elapse."""
    reason: str
    delay: float
    failure_class: Optional[FailureClass]
    attempt: int
    scheduled_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def due_at(self) -> float:
        return self.scheduled_at + self.delay

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "delay": self.delay,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "next_attempt": self.attempt,
            "remaining": max(0.0, self.due_at - time.monotonic()),
        }


class RetryBackoffController:
    """
    Owns the single outstanding retry timer.

    The controller knows nothing about the session itself: the lifecycle
    manager passes in the failure class and attempt count, and a coroutine
    function to run once the delay elapses.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self._policy = policy or RetryPolicy()
        self._pending: Optional[ScheduledRetry] = None
        self._last_delay: Dict[FailureClass, float] = {}
        self._scheduled_total = 0
        self._refused_total = 0
        self._sleep = asyncio.sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def pending(self) -> Optional[ScheduledRetry]:
        return self._pending

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def can_retry(self, attempt_count: int) -> bool:
        return attempt_count < self._policy.max_attempts

    def compute_delay(self, failure_class: FailureClass, attempt_count: int) -> float:
        """Delay before the next attempt; >= 0 and non-decreasing per class."""
        policy = self._policy
        if failure_class in policy.failure_class_delays:
            delay = policy.failure_class_delays[failure_class]
        else:
            n = max(1, attempt_count)
            if policy.growth is BackoffGrowth.MULTIPLICATIVE:
                delay = policy.base_delay * (policy.growth_factor ** (n - 1))
            else:
                delay = policy.base_delay * n
            delay = min(delay, policy.max_delay)

        delay = max(0.0, delay, self._last_delay.get(failure_class, 0.0))
        return delay

    def schedule(
        self,
        failure_class: FailureClass,
        attempt_count: int,
        callback: RetryCallback,
    ) -> Optional[ScheduledRetry]:
        """Schedule a retry after a classified failure.

        Returns the pending retry (the existing one if a retry was already
        outstanding) or None when the attempt budget is exhausted.
        """
        if self._pending is not None:
            logger.debug(
                f"[RetryController] Retry already pending ({self._pending.reason}), ignoring new request"
            )
            return self._pending

        if not self.can_retry(attempt_count):
            self._refused_total += 1
            logger.error(
                f"[RetryController] Maximum retries ({self._policy.max_attempts}) exceeded. "
                "Waiting for manual restart."
            )
            return None

        delay = self.compute_delay(failure_class, attempt_count)
        self._last_delay[failure_class] = delay
        logger.info(
            f"[RetryController] {failure_class.value} failure on attempt "
            f"{attempt_count}/{self._policy.max_attempts}; retrying in {delay:.1f}s"
        )
        return self._start(
            ScheduledRetry(
                reason=failure_class.value,
                delay=delay,
                failure_class=failure_class,
                attempt=attempt_count + 1,
            ),
            callback,
        )

    def schedule_after(self, delay: float, callback: RetryCallback, reason: str) -> ScheduledRetry:
        """Schedule an operator-initiated attempt, replacing any pending retry.

        Not subject to the attempt budget.
        """
        self.cancel()
        return self._start(
            ScheduledRetry(reason=reason, delay=max(0.0, delay), failure_class=None, attempt=1),
            callback,
        )

    def _start(self, retry: ScheduledRetry, callback: RetryCallback) -> ScheduledRetry:
        retry.task = asyncio.create_task(self._run(retry, callback), name=f"session-retry-{retry.reason}")
        self._pending = retry
        self._scheduled_total += 1
        return retry

    async def _run(self, retry: ScheduledRetry, callback: RetryCallback) -> None:
        try:
            await self._sleep(retry.delay)
        except asyncio.CancelledError:
            logger.debug(f"[RetryController] Pending retry ({retry.reason}) cancelled")
            raise

        # Clear before running so the callback may schedule a follow-up.
        if self._pending is retry:
            self._pending = None
        try:
            await callback()
        except Exception as e:
            logger.error(f"[RetryController] Retry callback failed: {e}", exc_info=True)

    def cancel(self) -> bool:
        """Cancel the pending retry, if any."""
        retry = self._pending
        self._pending = None
        if retry is None or retry.task is None:
            return False
        if retry.task is asyncio.current_task() or retry.task.done():
            return False
        retry.task.cancel()
        return True

    def reset(self) -> None:
        """Start a new supervised run: forget per-class delay history."""
        self._last_delay.clear()

    def get_status(self) -> Dict[str, Any]:
        return {
            "max_attempts": self._policy.max_attempts,
            "base_delay": self._policy.base_delay,
            "growth": self._policy.growth.value,
            "pending": self._pending.to_dict() if self._pending else None,
            "last_delays": {cls.value: delay for cls, delay in self._last_delay.items()},
            "scheduled_total": self._scheduled_total,
            "refused_total": self._refused_total,
        }
