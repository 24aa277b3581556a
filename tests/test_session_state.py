import pytest

from session_gateway.core.errors import InvalidTransitionError
from session_gateway.core.session_state import (
    ALLOWED_TRANSITIONS,
    RESTARTABLE_PHASES,
    LifecycleStateMachine,
    SessionPhase,
    is_allowed,
)


def _walk(machine, *phases):
    for phase in phases:
        machine.transition(phase, reason="test")


def test_happy_path_with_qr_scan():
    machine = LifecycleStateMachine()

    _walk(
        machine,
        SessionPhase.INITIALIZING,
        SessionPhase.AWAITING_SCAN,
        SessionPhase.AUTHENTICATED,
        SessionPhase.READY,
    )

    assert machine.phase is SessionPhase.READY
    assert machine.state.is_authenticated is True
    assert machine.state.last_ready_at is not None
    assert [record.to_phase for record in machine.state.history] == [
        SessionPhase.INITIALIZING,
        SessionPhase.AWAITING_SCAN,
        SessionPhase.AUTHENTICATED,
        SessionPhase.READY,
    ]


@pytest.mark.parametrize(
    "path,illegal",
    [
        ((), SessionPhase.READY),
        ((), SessionPhase.AUTHENTICATED),
        ((SessionPhase.INITIALIZING,), SessionPhase.READY),
        ((SessionPhase.INITIALIZING, SessionPhase.AWAITING_SCAN), SessionPhase.READY),
        ((SessionPhase.INITIALIZING, SessionPhase.AWAITING_SCAN), SessionPhase.DISCONNECTED),
        ((SessionPhase.INITIALIZING, SessionPhase.FAILED), SessionPhase.READY),
    ],
)
def test_skipping_a_phase_is_rejected(path, illegal):
    machine = LifecycleStateMachine()
    _walk(machine, *path)
    before = machine.phase

    with pytest.raises(InvalidTransitionError):
        machine.transition(illegal)

    assert machine.phase is before


def test_ready_resets_attempt_count():
    machine = LifecycleStateMachine()
    machine.state.attempt_count = 3

    _walk(machine, SessionPhase.INITIALIZING, SessionPhase.AUTHENTICATED, SessionPhase.READY)

    assert machine.state.attempt_count == 0


def test_disconnect_clears_authenticated_flag():
    machine = LifecycleStateMachine()
    _walk(machine, SessionPhase.INITIALIZING, SessionPhase.AUTHENTICATED, SessionPhase.READY)

    machine.transition(SessionPhase.DISCONNECTED, reason="NAVIGATION")

    assert machine.state.is_authenticated is False
    assert machine.can_transition(SessionPhase.INITIALIZING) is True


def test_no_terminal_phase():
    for phase in SessionPhase:
        assert ALLOWED_TRANSITIONS[phase], f"{phase} has no way out"


def test_restartable_phases_can_enter_initializing():
    for phase in RESTARTABLE_PHASES:
        assert is_allowed(phase, SessionPhase.INITIALIZING)
    assert not is_allowed(SessionPhase.READY, SessionPhase.INITIALIZING)


def test_phases_seen_starts_at_initial_phase():
    machine = LifecycleStateMachine()
    assert machine.phases_seen() == [SessionPhase.IDLE]

    _walk(machine, SessionPhase.INITIALIZING, SessionPhase.FAILED, SessionPhase.INITIALIZING)

    assert machine.phases_seen() == [
        SessionPhase.IDLE,
        SessionPhase.INITIALIZING,
        SessionPhase.FAILED,
        SessionPhase.INITIALIZING,
    ]
    assert machine.state.to_dict()["phase"] == "initializing"
