"""
Pytest configuration and shared fixtures for the session gateway tests.

This file contains:
- FakeSessionClient: in-memory stand-in for the WhatsApp Web client
- Config/manager fixtures with zero settle delays and the reaper disabled
- Helpers for draining the event loop
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

import pytest

from session_gateway.clients.base import ClientIdentity, SessionEvent, SessionEventType
from session_gateway.config.gateway_config import DEVELOPMENT, GatewayConfig, reset_config
from session_gateway.core.lifecycle_manager import LifecycleManager, set_lifecycle_manager


class FakeSessionClient:
    """Scriptable SessionClient. ``on_connect`` runs inside connect()."""

    def __init__(self, on_connect: Optional[Callable[["FakeSessionClient"], Awaitable[None]]] = None):
        self.on_connect = on_connect
        self.sink = None
        self.connect_calls = 0
        self.destroy_calls = 0
        self.sent: List[tuple] = []
        self.send_error: Optional[BaseException] = None
        self.transport = False
        self._identity: Optional[ClientIdentity] = None

    def set_event_sink(self, sink) -> None:
        self.sink = sink

    async def connect(self) -> None:
        self.connect_calls += 1
        self.transport = True
        if self.on_connect is not None:
            await self.on_connect(self)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        self.transport = False
        self._identity = None

    @property
    def has_transport(self) -> bool:
        return self.transport

    @property
    def identity(self) -> Optional[ClientIdentity]:
        return self._identity

    async def send_message(self, chat_id: str, text: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, text))
        return f"true_{chat_id}_FAKE{len(self.sent)}"

    async def emit(self, event_type: SessionEventType, **payload) -> None:
        await self.sink(SessionEvent(event_type, payload))

    async def become_ready(self, wid: str = "15550001111@c.us") -> None:
        await self.emit(SessionEventType.AUTHENTICATED)
        self._identity = ClientIdentity(wid=wid, pushname="Test Bot", platform="linux")
        await self.emit(SessionEventType.READY)


async def drain(cycles: int = 20) -> None:
    """Let pending callbacks and short tasks run."""
    for _ in range(cycles):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _isolated_globals():
    reset_config()
    yield
    reset_config()
    set_lifecycle_manager(None)


@pytest.fixture
def gateway_config(tmp_path):
    return GatewayConfig(
        environment=DEVELOPMENT,
        auth_dir=tmp_path / "auth_data",
        client_id="test-bot",
        init_timeout=5.0,
        settle_delay=0.0,
        reinit_delay=0.0,
        watchdog_timeout=60.0,
        needs_auth_after=60.0,
        retry_max_attempts=3,
        retry_base_delay=5.0,
        retry_growth="linear",
        retry_timeout_delay=15.0,
        retry_auth_failure_delay=0.0,
        reaper_enabled=False,
    )


@pytest.fixture
def fake_client():
    return FakeSessionClient()


@pytest.fixture
def make_manager(gateway_config):
    def _make(client: FakeSessionClient, **overrides) -> LifecycleManager:
        config = gateway_config
        for key, value in overrides.items():
            setattr(config, key, value)
        return LifecycleManager(client, config)
    return _make


@pytest.fixture
def recorded_sleeps():
    """Delays passed to the retry controller; the sleep itself returns at once."""
    return []


@pytest.fixture
def instant_retries(recorded_sleeps):
    def _install(manager: LifecycleManager) -> LifecycleManager:
        async def _fake_sleep(delay):
            recorded_sleeps.append(delay)
            await asyncio.sleep(0)
        manager.retry_controller._sleep = _fake_sleep
        return manager
    return _install


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


@pytest.fixture
def client_factory():
    """Build FakeSessionClient instances with a scripted ``on_connect``."""
    return FakeSessionClient


@pytest.fixture
def settle():
    return drain
