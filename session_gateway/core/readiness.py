"""
Readiness Facade
================

Single source of truth for "is the session usable right now".

    is_ready() == phase is READY
                  AND the client still holds a transport handle
                  AND the client reports identity info

Reads are lock-free and never mutate state, so HTTP health probes may call
them at any rate while lifecycle handlers run. Any exception raised while
probing a partially constructed client counts as "not ready".
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from session_gateway.clients.base import ClientIdentity, SessionClient
from session_gateway.core.session_state import SessionPhase, SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadinessSnapshot:
    phase: SessionPhase
    is_authenticated: bool
    is_ready: bool
    last_ready_at: Optional[float]
    transport_present: bool
    identity_present: bool
    # Authenticated or ready, but the browser handle is gone
    transport_lost: bool
    attempt_count: int
    max_attempts: int
    is_initializing: bool
    qr_available: bool
    last_error: Optional[Dict[str, Any]] = None
    identity: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


class ReadinessFacade:

    def __init__(
        self,
        state: SessionState,
        client: SessionClient,
        max_attempts: int,
        in_flight: Callable[[], bool] = lambda: False,
        qr_available: Callable[[], bool] = lambda: False,
    ):
        self._state = state
        self._client = client
        self._max_attempts = max_attempts
        self._in_flight = in_flight
        self._qr_available = qr_available

    def _transport_present(self) -> bool:
        try:
            return bool(self._client.has_transport)
        except Exception as e:
            logger.debug(f"[Readiness] transport probe failed: {e}")
            return False

    def _identity(self) -> Optional[ClientIdentity]:
        try:
            return self._client.identity
        except Exception as e:
            logger.debug(f"[Readiness] identity probe failed: {e}")
            return None

    def is_ready(self) -> bool:
        try:
            if self._state.phase is not SessionPhase.READY:
                return False
            return self._transport_present() and self._identity() is not None
        except Exception:
            return False

    def snapshot(self) -> ReadinessSnapshot:
        state = self._state
        phase = state.phase
        transport = self._transport_present()
        identity = self._identity()
        in_live_auth_phase = phase in (SessionPhase.AUTHENTICATED, SessionPhase.READY)

        try:
            initializing = bool(self._in_flight())
        except Exception:
            initializing = False
        try:
            qr = bool(self._qr_available())
        except Exception:
            qr = False

        identity_dict = None
        if identity is not None:
            try:
                identity_dict = identity.to_dict()
            except Exception:
                identity_dict = None

        return ReadinessSnapshot(
            phase=phase,
            is_authenticated=state.is_authenticated,
            is_ready=phase is SessionPhase.READY and transport and identity is not None,
            last_ready_at=state.last_ready_at,
            transport_present=transport,
            identity_present=identity is not None,
            transport_lost=in_live_auth_phase and not transport,
            attempt_count=state.attempt_count,
            max_attempts=self._max_attempts,
            is_initializing=initializing,
            qr_available=qr,
            last_error=state.last_error.to_dict() if state.last_error else None,
            identity=identity_dict,
        )
