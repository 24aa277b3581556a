"""
Connection Lifecycle Manager
============================

Owns the single external session handle and keeps it alive.

Responsibilities:
    - Serialize initialization attempts behind one guard (InitGuard)
    - Prepare each attempt: restart marker, auth store sanity, process reaping
    - Race the client's connect call against a hard deadline
    - Apply inbound session events to the state machine, one at a time
    - Classify failures and hand them to the retry/backoff controller
    - Arm the watchdog on AUTHENTICATED, tear down stuck sessions
    - Offer operator recovery (force clean + re-init) and gated sending

Architecture:
    LifecycleManager
    ├── LifecycleStateMachine   (phase + transition validation)
    ├── AuthStoreGuard          (credential directory)
    ├── ProcessReaper           (orphaned browser processes)
    ├── RetryBackoffController  (single outstanding retry)
    ├── WatchdogSupervisor      (AUTHENTICATED -> READY deadline)
    ├── ReadinessFacade         (lock-free readiness reads)
    └── ReadinessGatedClient    (sends gated on readiness)

Concurrency:
    Everything runs on one asyncio event loop. Event handlers are serialized
    by ``_event_lock``; readiness reads take no lock. ``_init_guard`` is held
    from before the auth store check until the connect call settles and is
    always released in ``finally`` (``async with``). Retries requested while
    an attempt is in flight are deferred until that attempt settles, so a
    retry can never be rejected by the guard it is waiting on.

Usage:
    manager = LifecycleManager(client, config)
    await manager.request_initialize()
    snapshot = manager.query_readiness()
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

from session_gateway.clients.base import SessionClient, SessionEvent, SessionEventType
from session_gateway.clients.gated_client import ReadinessGatedClient
from session_gateway.config.gateway_config import GatewayConfig, get_config
from session_gateway.core.auth_store import AuthStoreGuard
from session_gateway.core.errors import (
    AuthRejectedError,
    CleanupFailure,
    ErrorRecord,
    FailureClass,
    InitTimeoutError,
    InvalidTransitionError,
    SessionClosedError,
    SessionLifecycleError,
    WatchdogStuckError,
)
from session_gateway.core.process_reaper import ProcessReaper
from session_gateway.core.readiness import ReadinessFacade, ReadinessSnapshot
from session_gateway.core.retry_controller import RetryBackoffController, ScheduledRetry
from session_gateway.core.secure_logging import mask_phone_number, sanitize_for_log
from session_gateway.core.session_state import (
    RESTARTABLE_PHASES,
    LifecycleStateMachine,
    SessionPhase,
    SessionState,
)
from session_gateway.core.watchdog import WatchdogSupervisor

logger = logging.getLogger(__name__)

_TEARDOWN_TIMEOUT = 15.0
_STATUS_BROADCAST = "status@broadcast"


class InitOutcome(str, Enum):
    """Result of request_initialize(). None of these is raised."""
    STARTED = "started"
    ALREADY_IN_PROGRESS = "already_in_progress"
    SESSION_ACTIVE = "session_active"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FAILED = "failed"


class LifecycleManager:

    def __init__(
        self,
        client: SessionClient,
        config: Optional[GatewayConfig] = None,
        *,
        auth_store: Optional[AuthStoreGuard] = None,
        reaper: Optional[ProcessReaper] = None,
        retry: Optional[RetryBackoffController] = None,
    ):
        self._config = config or get_config()
        self._client = client
        self._machine = LifecycleStateMachine()

        self._auth_store = auth_store or AuthStoreGuard(
            auth_dir=self._config.auth_dir,
            session_dir_name=self._config.session_dir_name,
            sentinel_name=self._config.sentinel_name,
            min_session_entries=self._config.min_session_entries,
            restart_marker_name=self._config.restart_marker_name,
            qr_file_name=self._config.qr_file_name,
        )
        self._reaper = reaper or ProcessReaper(
            process_names=self._config.reaper_process_names,
            enabled=bool(self._config.reaper_enabled),
            timeout=self._config.reaper_timeout,
            command=self._config.reaper_command,
        )
        self._retry = retry or RetryBackoffController(self._config.retry_policy())
        self._watchdog = WatchdogSupervisor(
            on_expire=self._on_watchdog_expired,
            is_stuck=lambda: self.phase is SessionPhase.AUTHENTICATED,
        )

        self._init_guard = asyncio.Lock()
        self._event_lock = asyncio.Lock()
        self._latest_qr: Optional[str] = None
        self._teardown_count = 0
        self._background: Set[asyncio.Task] = set()
        self._sleep = asyncio.sleep

        self._readiness = ReadinessFacade(
            state=self._machine.state,
            client=client,
            max_attempts=self._retry.policy.max_attempts,
            in_flight=self._init_guard.locked,
            qr_available=lambda: self._latest_qr is not None,
        )
        self._sender = ReadinessGatedClient(
            client,
            self._readiness,
            on_transport_error=lambda: self.force_clean_and_reinit(reason="send failure"),
        )

        client.set_event_sink(self.dispatch)
        logger.info(
            f"[LifecycleManager] Initialized ({self._config.environment} mode, "
            f"max attempts {self._retry.policy.max_attempts}, "
            f"watchdog {self._config.watchdog_timeout:.0f}s)"
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def phase(self) -> SessionPhase:
        return self._machine.phase

    @property
    def machine(self) -> LifecycleStateMachine:
        return self._machine

    @property
    def client(self) -> SessionClient:
        return self._client

    @property
    def auth_store(self) -> AuthStoreGuard:
        return self._auth_store

    @property
    def reaper(self) -> ProcessReaper:
        return self._reaper

    @property
    def retry_controller(self) -> RetryBackoffController:
        return self._retry

    @property
    def watchdog(self) -> WatchdogSupervisor:
        return self._watchdog

    @property
    def readiness(self) -> ReadinessFacade:
        return self._readiness

    @property
    def is_initializing(self) -> bool:
        return self._init_guard.locked()

    @property
    def latest_qr(self) -> Optional[str]:
        return self._latest_qr

    @property
    def teardown_count(self) -> int:
        return self._teardown_count

    # -------------------------------------------------------------------------
    # Readiness (lock-free reads)
    # -------------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._readiness.is_ready()

    def query_readiness(self) -> ReadinessSnapshot:
        return self._readiness.snapshot()

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def request_initialize(self, reason: str = "requested") -> InitOutcome:
        """Run one attempt sequence unless one is already executing.

        Returns once the client's connect call settles (or times out), not
        once the session is ready.
        """
        if self._init_guard.locked():
            logger.info("[LifecycleManager] Initialization already in progress, skipping duplicate call")
            return InitOutcome.ALREADY_IN_PROGRESS

        async with self._init_guard:
            return await self._run_attempt(reason)

    async def _run_attempt(self, reason: str) -> InitOutcome:
        state = self.state
        max_attempts = self._retry.policy.max_attempts

        if self.phase not in RESTARTABLE_PHASES:
            logger.info(f"[LifecycleManager] Session is {self.phase.value}, not re-initializing")
            return InitOutcome.SESSION_ACTIVE

        if not self._retry.can_retry(state.attempt_count):
            logger.warning(
                f"[LifecycleManager] Maximum retries ({max_attempts}) exceeded. Waiting for manual restart."
            )
            return InitOutcome.BUDGET_EXHAUSTED

        # An attempt starting now supersedes any retry still waiting.
        self._retry.cancel()
        state.attempt_count += 1
        self._machine.transition(
            SessionPhase.INITIALIZING,
            reason=f"{reason}, attempt {state.attempt_count}/{max_attempts}",
        )
        logger.info(f"[LifecycleManager] Initialization attempt {state.attempt_count} of {max_attempts}")

        try:
            await self._prepare_attempt()
            try:
                await asyncio.wait_for(self._client.connect(), timeout=self._config.init_timeout)
            except asyncio.TimeoutError as e:
                raise InitTimeoutError(self._config.init_timeout) from e
        except Exception as e:
            await self._record_failure(e)
            outcome = InitOutcome.FAILED
        else:
            if self.phase in (SessionPhase.FAILED, SessionPhase.DISCONNECTED):
                # The client reported a failure while the call was running.
                outcome = InitOutcome.FAILED
            else:
                logger.info("[LifecycleManager] Client initialization call completed successfully")
                outcome = InitOutcome.STARTED

        if outcome is InitOutcome.FAILED:
            # Never leave a half-started browser resident between attempts
            await self._teardown_transport("failed attempt")
            self._schedule_retry(from_attempt=True)
        return outcome

    async def _prepare_attempt(self) -> None:
        if await self._auth_store.consume_restart_marker():
            self._latest_qr = None
        await self._auth_store.ensure_ready()
        await self._reaper.reap("pre-initialize")
        if self._config.settle_delay > 0:
            # Let killed browser processes release memory and profile locks
            await self._sleep(self._config.settle_delay)

    async def _retry_initialize(self) -> None:
        outcome = await self.request_initialize(reason="retry")
        logger.debug(f"[LifecycleManager] Scheduled attempt finished: {outcome.value}")

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    async def _record_failure(self, error: BaseException) -> ErrorRecord:
        """Record a failure and park the machine in FAILED (when the edge exists)."""
        record = ErrorRecord.from_exception(error)
        self.state.last_error = record
        self._watchdog.cancel()

        if record.failure_class is FailureClass.SESSION_CLOSED:
            logger.error(
                f"[LifecycleManager] {record.message} - browser session was closed, "
                "likely due to memory constraints"
            )
        elif record.failure_class is FailureClass.TIMEOUT:
            logger.error(
                f"[LifecycleManager] {record.message} - your server might have limited resources"
            )
        else:
            logger.error(f"[LifecycleManager] Session failure ({record.error_type}): {record.message}")

        if self._machine.can_transition(SessionPhase.FAILED):
            self._machine.transition(SessionPhase.FAILED, reason=record.failure_class.value)

        if record.failure_class is FailureClass.AUTH_FAILURE:
            logger.info("[LifecycleManager] Clearing auth data due to auth failure, a new QR scan is required")
            await self._auth_store.purge()
            self._latest_qr = None
        return record

    def _schedule_retry(self, from_attempt: bool = False) -> Optional[ScheduledRetry]:
        if not from_attempt and self._init_guard.locked():
            # The attempt in flight schedules the retry once its call settles.
            logger.debug("[LifecycleManager] Attempt in flight, deferring retry scheduling")
            return None

        record = self.state.last_error
        failure_class = record.failure_class if record else FailureClass.OTHER
        scheduled = self._retry.schedule(failure_class, self.state.attempt_count, self._retry_initialize)

        if scheduled is None and self.phase is SessionPhase.DISCONNECTED:
            self._machine.transition(SessionPhase.FAILED, reason="retry budget exhausted")
        return scheduled

    async def _on_watchdog_expired(self, waited: float) -> None:
        error = WatchdogStuckError(waited)
        async with self._event_lock:
            if self.phase is not SessionPhase.AUTHENTICATED:
                return
            await self._record_failure(error)
        await self._teardown_transport("watchdog")
        self._schedule_retry()

    async def _teardown_transport(self, reason: str) -> bool:
        """Destroy the client's transport handle. Never raises."""
        self._teardown_count += 1
        try:
            await asyncio.wait_for(self._client.destroy(), timeout=_TEARDOWN_TIMEOUT)
            logger.info(f"[LifecycleManager] Closed existing browser ({reason})")
            return True
        except Exception as e:
            logger.error(f"[LifecycleManager] {CleanupFailure(f'Error closing browser: {e}')}")
            return False

    async def _abandon_transport(self, reason: str) -> None:
        """Close the browser after an event-reported failure, then retry.

        While an attempt is in flight, its own failure path does both once
        the connect call settles.
        """
        if not self._init_guard.locked():
            await self._teardown_transport(reason)
        self._schedule_retry()

    # -------------------------------------------------------------------------
    # Inbound events
    # -------------------------------------------------------------------------

    async def dispatch(self, event: SessionEvent) -> None:
        """Apply one inbound session event; handlers never interleave."""
        async with self._event_lock:
            try:
                await self._apply_event(event)
            except InvalidTransitionError as e:
                logger.warning(f"[LifecycleManager] Ignoring '{event.type.value}' event: {e}")

    async def _apply_event(self, event: SessionEvent) -> None:
        handler = {
            SessionEventType.CONNECTED: self._on_connected,
            SessionEventType.QR_CHALLENGE: self._on_qr,
            SessionEventType.AUTHENTICATED: self._on_authenticated,
            SessionEventType.READY: self._on_ready,
            SessionEventType.DISCONNECTED: self._on_disconnected,
            SessionEventType.AUTH_FAILED: self._on_auth_failed,
            SessionEventType.ERROR: self._on_error,
            SessionEventType.MESSAGE_RECEIVED: self._on_message,
        }[event.type]
        await handler(event)

    async def _on_connected(self, event: SessionEvent) -> None:
        logger.info(f"[LifecycleManager] Transport connected (phase: {self.phase.value})")

    async def _on_qr(self, event: SessionEvent) -> None:
        qr = str(event.payload.get("qr") or "")
        if self.phase is SessionPhase.AWAITING_SCAN:
            logger.info("[LifecycleManager] QR code refreshed")
        else:
            self._machine.transition(SessionPhase.AWAITING_SCAN, reason="login challenge presented")

        self._latest_qr = qr or None
        banner = "=" * 80
        logger.info(
            f"\n{banner}\n{'=' * 30} WHATSAPP QR CODE {'=' * 30}\n{banner}\n{qr}\n{banner}\n"
            f"SCAN THIS QR CODE WITH YOUR WHATSAPP APP TO AUTHENTICATE\n{banner}"
        )
        if qr:
            await self._auth_store.write_qr(qr)

    async def _on_authenticated(self, event: SessionEvent) -> None:
        self._machine.transition(SessionPhase.AUTHENTICATED, reason="credentials accepted")
        logger.info("[LifecycleManager] WhatsApp client authenticated successfully")
        self._watchdog.start(self._config.watchdog_timeout)

    async def _on_ready(self, event: SessionEvent) -> None:
        self._machine.transition(SessionPhase.READY, reason="session fully usable")
        self._watchdog.cancel()
        self._retry.cancel()
        self._retry.reset()
        self._latest_qr = None
        self._auth_store.clear_qr()
        logger.info("[LifecycleManager] WhatsApp client is ready and connected")

    async def _on_disconnected(self, event: SessionEvent) -> None:
        reason = str(event.payload.get("reason") or "unknown")
        phase = self.phase
        logger.warning(f"[LifecycleManager] WhatsApp client disconnected: {sanitize_for_log(reason)}")

        if phase in (SessionPhase.AUTHENTICATED, SessionPhase.READY):
            self._watchdog.cancel()
            record = ErrorRecord.from_exception(SessionClosedError(f"Disconnected: {reason}"))
            if "logout" in reason.lower():
                record = ErrorRecord.from_exception(AuthRejectedError(f"Logged out: {reason}"))
                await self._auth_store.purge()
            self.state.last_error = record
            self._machine.transition(SessionPhase.DISCONNECTED, reason=reason)
            logger.info("[LifecycleManager] Attempting to reconnect...")
            await self._abandon_transport("disconnected")
        elif phase in (SessionPhase.INITIALIZING, SessionPhase.AWAITING_SCAN):
            await self._record_failure(SessionClosedError(f"Session closed during login: {reason}"))
            await self._abandon_transport("closed during login")
        else:
            logger.debug(f"[LifecycleManager] Stale disconnect while {phase.value}, ignoring")

    async def _on_auth_failed(self, event: SessionEvent) -> None:
        message = str(event.payload.get("message") or "credentials rejected")
        if not self._machine.can_transition(SessionPhase.FAILED):
            raise InvalidTransitionError(self.phase.value, SessionPhase.FAILED.value, "auth failure")
        await self._record_failure(AuthRejectedError(f"Authentication failure: {message}"))
        await self._abandon_transport("auth failure")

    async def _on_error(self, event: SessionEvent) -> None:
        message = str(event.payload.get("message") or "unrecoverable client error")
        if not self._machine.can_transition(SessionPhase.FAILED):
            raise InvalidTransitionError(self.phase.value, SessionPhase.FAILED.value, message)
        await self._record_failure(SessionLifecycleError(message))
        await self._abandon_transport("client error")

    async def _on_message(self, event: SessionEvent) -> None:
        sender = str(event.payload.get("from") or "Unknown")
        if sender == _STATUS_BROADCAST:
            return
        body = sanitize_for_log(event.payload.get("body") or "", 120)
        logger.info(f"[LifecycleManager] Message from {mask_phone_number(sender)}: {body}")

    # -------------------------------------------------------------------------
    # Operator recovery
    # -------------------------------------------------------------------------

    async def force_clean_and_reinit(self, reason: str = "manual") -> None:
        """Tear down, purge credentials, reset the budget, re-init shortly.

        Raises AuthStoreError only if the credential directory cannot be
        recreated; every other step is best effort.
        """
        logger.info(f"[LifecycleManager] Forced reconnection requested ({reason})")
        self._watchdog.cancel()
        self._retry.cancel()

        async with self._event_lock:
            self._leave_live_phase(reason)

        await self._teardown_transport(f"force reconnect: {reason}")
        await self._reaper.reap("force-reconnect")

        logger.info("[LifecycleManager] Clearing auth data for fresh start")
        await self._auth_store.purge()
        self._auth_store.ensure_directory()
        self._latest_qr = None

        self.state.attempt_count = 0
        self._retry.reset()
        self._retry.schedule_after(self._config.reinit_delay, self._retry_initialize, reason="force-reconnect")
        logger.info(f"[LifecycleManager] Reinitializing in {self._config.reinit_delay:.0f}s")

    def _leave_live_phase(self, reason: str) -> None:
        phase = self.phase
        label = f"forced reconnect: {reason}"
        if phase in (SessionPhase.AUTHENTICATED, SessionPhase.READY):
            self._machine.transition(SessionPhase.DISCONNECTED, reason=label)
        elif phase in (SessionPhase.INITIALIZING, SessionPhase.AWAITING_SCAN):
            self._machine.transition(SessionPhase.FAILED, reason=label)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send_message(self, number: str, text: str) -> str:
        """Send through the readiness gate (SessionNotReadyError / SendFailedError)."""
        return await self._sender.send_message(number, text)

    # -------------------------------------------------------------------------
    # Background helpers and shutdown
    # -------------------------------------------------------------------------

    def spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def shutdown(self) -> None:
        self._watchdog.cancel()
        self._retry.cancel()
        for task in list(self._background):
            task.cancel()
        await self._teardown_transport("shutdown")
        logger.info("[LifecycleManager] Shutdown complete")

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.to_dict(),
            "readiness": self.query_readiness().to_dict(),
            "retry": self._retry.get_status(),
            "watchdog": self._watchdog.get_status(),
            "reaper": self._reaper.get_status(),
            "history": [record.to_dict() for record in list(self.state.history)[-20:]],
            "teardowns": self._teardown_count,
        }


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

_manager: Optional[LifecycleManager] = None


def get_lifecycle_manager() -> Optional[LifecycleManager]:
    """Get the process-wide manager installed by the application factory."""
    return _manager


def set_lifecycle_manager(manager: Optional[LifecycleManager]) -> None:
    global _manager
    _manager = manager
