"""
Session Lifecycle State Machine
===============================

Tracks the coarse phase of the single external session and validates every
phase change against one transition table.

    IDLE ──► INITIALIZING ──► AWAITING_SCAN ──► AUTHENTICATED ──► READY
                 │   │              │              │   │            │
                 │   └──────────────┼─────────────►┘   │            │
                 ▼                  ▼                  ▼            ▼
               FAILED ◄─────────────┴──────────── DISCONNECTED ◄────┘
                 │                                     │
                 └──────────► INITIALIZING ◄───────────┘

INITIALIZING -> AUTHENTICATED is the stored-credential fast path (no QR
challenge is presented). INITIALIZING -> READY is never legal: an external
client that collapses events is rejected here rather than silently skipping
a phase.

There is no terminal phase. FAILED and DISCONNECTED re-enter INITIALIZING
through the retry controller; when the retry budget is exhausted the machine
parks in FAILED until an operator-triggered reset.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Optional

from session_gateway.core.errors import ErrorRecord, InvalidTransitionError

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    """Coarse lifecycle phase of the session."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[SessionPhase, FrozenSet[SessionPhase]] = {
    SessionPhase.IDLE: frozenset({SessionPhase.INITIALIZING}),
    SessionPhase.INITIALIZING: frozenset({
        SessionPhase.AWAITING_SCAN,
        SessionPhase.AUTHENTICATED,
        SessionPhase.FAILED,
    }),
    SessionPhase.AWAITING_SCAN: frozenset({
        SessionPhase.AUTHENTICATED,
        SessionPhase.FAILED,
    }),
    SessionPhase.AUTHENTICATED: frozenset({
        SessionPhase.READY,
        SessionPhase.DISCONNECTED,
        SessionPhase.FAILED,
    }),
    SessionPhase.READY: frozenset({SessionPhase.DISCONNECTED}),
    SessionPhase.DISCONNECTED: frozenset({
        SessionPhase.INITIALIZING,
        SessionPhase.FAILED,
    }),
    SessionPhase.FAILED: frozenset({SessionPhase.INITIALIZING}),
}

# Phases from which a new initialization attempt may start
RESTARTABLE_PHASES: FrozenSet[SessionPhase] = frozenset({
    SessionPhase.IDLE,
    SessionPhase.DISCONNECTED,
    SessionPhase.FAILED,
})

# Phases in which a connect sequence is live (browser is up or coming up)
LIVE_PHASES: FrozenSet[SessionPhase] = frozenset({
    SessionPhase.INITIALIZING,
    SessionPhase.AWAITING_SCAN,
    SessionPhase.AUTHENTICATED,
    SessionPhase.READY,
})


def is_allowed(current: SessionPhase, target: SessionPhase) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of the transition history."""
    from_phase: SessionPhase
    to_phase: SessionPhase
    at: float
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_phase.value,
            "to": self.to_phase.value,
            "at": self.at,
            "reason": self.reason,
        }


@dataclass
class SessionState:
    """
    Process-wide session state.

    Mutated only through LifecycleStateMachine (phase fields) and the
    LifecycleManager (counters, error record).
    """
    phase: SessionPhase = SessionPhase.IDLE
    phase_entered_at: float = field(default_factory=time.time)
    is_authenticated: bool = False
    last_ready_at: Optional[float] = None
    last_error: Optional[ErrorRecord] = None
    attempt_count: int = 0
    history: Deque[TransitionRecord] = field(default_factory=lambda: deque(maxlen=100))

    def time_in_phase(self, now: Optional[float] = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.phase_entered_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "phase_entered_at": self.phase_entered_at,
            "is_authenticated": self.is_authenticated,
            "last_ready_at": self.last_ready_at,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "attempt_count": self.attempt_count,
        }


class LifecycleStateMachine:
    """
    The single place where phase transitions are validated and applied.

    ``transition()`` raises InvalidTransitionError for any edge not listed in
    ALLOWED_TRANSITIONS; callers decide whether to log-and-ignore (external
    events) or to propagate (programming errors).
    """

    def __init__(self, state: Optional[SessionState] = None):
        self._state = state or SessionState()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    def can_transition(self, target: SessionPhase) -> bool:
        return is_allowed(self._state.phase, target)

    def transition(self, target: SessionPhase, reason: str = "") -> TransitionRecord:
        current = self._state.phase
        if not is_allowed(current, target):
            raise InvalidTransitionError(current.value, target.value, reason)

        now = time.time()
        record = TransitionRecord(current, target, now, reason)
        self._state.phase = target
        self._state.phase_entered_at = now
        self._state.history.append(record)

        if target is SessionPhase.READY:
            self._state.last_ready_at = now
            self._state.attempt_count = 0
        elif target in (SessionPhase.DISCONNECTED, SessionPhase.FAILED, SessionPhase.INITIALIZING):
            self._state.is_authenticated = False
        if target is SessionPhase.AUTHENTICATED:
            self._state.is_authenticated = True

        logger.info(
            f"[StateMachine] {current.value} -> {target.value}"
            + (f" ({reason})" if reason else "")
        )
        return record

    def phases_seen(self) -> List[SessionPhase]:
        """Ordered phases recorded in the (bounded) transition history."""
        history = self._state.history
        if not history:
            return [self._state.phase]
        seen = [history[0].from_phase]
        seen.extend(record.to_phase for record in history)
        return seen
