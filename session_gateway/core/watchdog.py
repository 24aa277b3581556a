"""
Watchdog Supervisor
===================

Single-shot timer armed when the session enters AUTHENTICATED. If READY is
not reached before it expires, the supervisor reports a stuck session so the
lifecycle manager can tear the transport down instead of waiting forever.

Only one timer is active at a time: start() implicitly cancels any prior
timer, and cancel() is safe to call from inside the expiry callback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class WatchdogSupervisor:

    def __init__(
        self,
        on_expire: Callable[[float], Awaitable[None]],
        is_stuck: Callable[[], bool],
        name: str = "session-watchdog",
    ):
        """
        Args:
            on_expire: coroutine called with the elapsed seconds when the
                timer fires while ``is_stuck()`` still reports True.
            is_stuck: phase probe evaluated at expiry time.
        """
        self._on_expire = on_expire
        self._is_stuck = is_stuck
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._armed_at: Optional[float] = None
        self._timeout: Optional[float] = None
        self._timeout_count = 0
        self._cancel_count = 0

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, timeout: float) -> None:
        """Arm the timer, replacing any timer already running."""
        self.cancel()
        self._timeout = timeout
        self._armed_at = time.monotonic()
        self._task = asyncio.create_task(self._run(timeout), name=self._name)
        logger.debug(f"[Watchdog] '{self._name}' armed ({timeout:.0f}s timeout)")

    def cancel(self) -> bool:
        """Disarm the timer. Returns True if a live timer was cancelled."""
        task = self._task
        self._task = None
        self._armed_at = None
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # Called from the expiry path itself; nothing left to cancel.
            return False
        task.cancel()
        self._cancel_count += 1
        logger.debug(f"[Watchdog] '{self._name}' disarmed")
        return True

    async def _run(self, timeout: float) -> None:
        started = time.monotonic()
        await asyncio.sleep(timeout)

        if not self._is_stuck():
            logger.debug(f"[Watchdog] '{self._name}' expired but session progressed")
            return

        waited = time.monotonic() - started
        self._timeout_count += 1
        logger.error(
            f"[Watchdog] '{self._name}' timeout: authenticated for {waited:.0f}s without "
            f"becoming ready (count: {self._timeout_count})"
        )
        try:
            await self._on_expire(waited)
        except Exception as e:
            logger.error(f"[Watchdog] Expiry handler failed: {e}", exc_info=True)
        finally:
            if self._task is asyncio.current_task():
                self._task = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "is_armed": self.is_armed,
            "timeout_seconds": self._timeout,
            "armed_for": (time.monotonic() - self._armed_at) if self._armed_at and self.is_armed else None,
            "timeout_count": self._timeout_count,
            "cancel_count": self._cancel_count,
        }
