import pytest

from session_gateway.clients.base import ClientIdentity
from session_gateway.core.readiness import ReadinessFacade
from session_gateway.core.session_state import SessionPhase, SessionState


class _Client:
    def __init__(self, transport=True, identity=True):
        self.transport = transport
        self._identity = ClientIdentity(wid="15550001111@c.us", last_connect=0.0) if identity else None

    @property
    def has_transport(self):
        return self.transport

    @property
    def identity(self):
        return self._identity


class _ExplodingClient:
    @property
    def has_transport(self):
        raise RuntimeError("page not constructed yet")

    @property
    def identity(self):
        raise AttributeError("info")


def _facade(phase, client, **kwargs):
    state = SessionState(phase=phase, is_authenticated=phase in (SessionPhase.AUTHENTICATED, SessionPhase.READY))
    return ReadinessFacade(state=state, client=client, max_attempts=5, **kwargs)


def test_ready_requires_all_three_conditions():
    assert _facade(SessionPhase.READY, _Client()).is_ready() is True
    assert _facade(SessionPhase.AUTHENTICATED, _Client()).is_ready() is False
    assert _facade(SessionPhase.READY, _Client(transport=False)).is_ready() is False
    assert _facade(SessionPhase.READY, _Client(identity=False)).is_ready() is False


@pytest.mark.parametrize("phase", list(SessionPhase))
def test_readiness_check_errors_count_as_not_ready(phase):
    facade = _facade(phase, _ExplodingClient())

    assert facade.is_ready() is False
    snapshot = facade.snapshot()
    assert snapshot.is_ready is False
    assert snapshot.transport_present is False
    assert snapshot.identity is None


def test_transport_lost_flag():
    snapshot = _facade(SessionPhase.READY, _Client(transport=False)).snapshot()

    assert snapshot.phase is SessionPhase.READY
    assert snapshot.transport_lost is True
    assert _facade(SessionPhase.AWAITING_SCAN, _Client(transport=False)).snapshot().transport_lost is False


def test_snapshot_serializes_phase_and_identity():
    facade = _facade(
        SessionPhase.READY,
        _Client(),
        in_flight=lambda: True,
        qr_available=lambda: False,
    )

    data = facade.snapshot().to_dict()

    assert data["phase"] == "ready"
    assert data["is_ready"] is True
    assert data["is_initializing"] is True
    assert data["identity"]["wid"] == "15550001111@c.us"
    assert data["max_attempts"] == 5
