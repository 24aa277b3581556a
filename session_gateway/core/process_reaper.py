"""
Process Reaper
==============

Best-effort, fire-and-forget termination of orphaned browser worker
processes before each initialization attempt and before a forced reconnect.

This is a memory-reclamation heuristic for resource-constrained hosts, not a
correctness requirement: finding nothing is fine, failing to kill is fine,
and the whole operation is bounded by a timeout so it can never block
initialization.

Two strategies:
    - psutil (default): scan the process table for configured names,
      terminate() then kill() survivors. Our own PID and parent are skipped.
    - external command: when ``command`` is set (e.g. ``pkill -9 chrome``),
      run it as an opaque subprocess and ignore its exit status.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import psutil

from session_gateway.core.errors import CleanupFailure

logger = logging.getLogger(__name__)


@dataclass
class ReapResult:
    """Outcome of one reap pass. Never raised, only logged and returned."""
    reason: str
    skipped: bool = False
    matched: int = 0
    killed: int = 0
    timed_out: bool = False
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "skipped": self.skipped,
            "matched": self.matched,
            "killed": self.killed,
            "timed_out": self.timed_out,
            "errors": list(self.errors),
            "duration_ms": round(self.duration_ms, 1),
        }


class ProcessReaper:

    def __init__(
        self,
        process_names: Sequence[str] = ("chrome", "chromium"),
        enabled: bool = True,
        timeout: float = 10.0,
        command: Optional[str] = None,
        grace_period: float = 2.0,
    ):
        self.process_names = tuple(name.lower() for name in process_names)
        self.enabled = enabled
        self.timeout = timeout
        self.command = command
        self.grace_period = grace_period
        self._last_result: Optional[ReapResult] = None
        self._runs = 0

    @property
    def last_result(self) -> Optional[ReapResult]:
        return self._last_result

    async def reap(self, reason: str = "pre-initialize") -> ReapResult:
        """Terminate matching processes. Never raises."""
        result = ReapResult(reason=reason)
        if not self.enabled:
            result.skipped = True
            self._last_result = result
            return result

        self._runs += 1
        started = time.perf_counter()
        logger.info(f"[ProcessReaper] Cleaning up browser processes ({reason})...")
        try:
            if self.command:
                await asyncio.wait_for(self._run_command(result), timeout=self.timeout)
            else:
                loop = asyncio.get_running_loop()
                await asyncio.wait_for(
                    loop.run_in_executor(None, self._reap_with_psutil, result),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            result.timed_out = True
            logger.warning(f"[ProcessReaper] Cleanup exceeded {self.timeout:.0f}s, continuing anyway")
        except Exception as e:
            failure = CleanupFailure(f"Process cleanup failed: {e}")
            result.errors.append(str(failure))
            logger.warning(f"[ProcessReaper] {failure} (non-critical)")

        result.duration_ms = (time.perf_counter() - started) * 1000
        if not result.timed_out and not result.errors:
            logger.info(
                f"[ProcessReaper] Cleanup completed: {result.killed}/{result.matched} "
                f"process(es) terminated in {result.duration_ms:.0f}ms"
            )
        self._last_result = result
        return result

    def _matches(self, name: str) -> bool:
        lowered = (name or "").lower()
        return any(target in lowered for target in self.process_names)

    def _reap_with_psutil(self, result: ReapResult) -> None:
        protected = {os.getpid(), os.getppid()}
        victims: List[psutil.Process] = []

        for proc in psutil.process_iter(["pid", "name"]):
            try:
                if proc.info["pid"] in protected:
                    continue
                if self._matches(proc.info.get("name") or ""):
                    victims.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, KeyError):
                continue

        result.matched = len(victims)
        if not victims:
            return

        for proc in victims:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                result.errors.append(f"pid {proc.pid}: {e}")

        gone, alive = psutil.wait_procs(victims, timeout=self.grace_period)
        result.killed = len(gone)

        for proc in alive:
            try:
                proc.kill()
                result.killed += 1
            except psutil.NoSuchProcess:
                result.killed += 1
            except psutil.AccessDenied as e:
                result.errors.append(f"pid {proc.pid}: {e}")

        if result.errors:
            logger.debug(f"[ProcessReaper] {len(result.errors)} process(es) could not be killed")

    async def _run_command(self, result: ReapResult) -> None:
        argv = shlex.split(self.command or "")
        if not argv:
            return
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        # pkill exits 1 when nothing matched; that is not a failure here
        logger.debug(f"[ProcessReaper] '{self.command}' exited with {returncode}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "strategy": "command" if self.command else "psutil",
            "process_names": list(self.process_names),
            "runs": self._runs,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
