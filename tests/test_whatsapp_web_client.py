import asyncio
import logging

import pytest

from session_gateway.clients import whatsapp_web
from session_gateway.clients.base import SessionEventType
from session_gateway.clients.whatsapp_web import (
    CHAT_LIST_SELECTOR,
    IDENTITY_SCRIPT,
    QR_SELECTOR,
    UNREAD_CHATS_SCRIPT,
    WhatsAppWebClient,
)
from session_gateway.core.lifecycle_manager import LifecycleManager
from session_gateway.core.session_state import SessionPhase


class FakeQrElement:
    def __init__(self, ref):
        self.ref = ref

    async def get_attribute(self, name):
        return self.ref if name == "data-ref" else None


class FakePage:
    """Just enough of a Playwright Page for the DOM monitor."""

    def __init__(self):
        self.qr = None
        self.chat_list = False
        self.identity = None
        self.unread = []
        self.closed = False
        self.query_error = None

    async def query_selector(self, selector):
        if self.query_error is not None:
            raise self.query_error
        if selector == QR_SELECTOR:
            return FakeQrElement(self.qr) if self.qr else None
        if selector == CHAT_LIST_SELECTOR:
            return object() if self.chat_list else None
        return None

    async def evaluate(self, script):
        if script == IDENTITY_SCRIPT:
            return self.identity
        if script == UNREAD_CHATS_SCRIPT:
            return [dict(entry) for entry in self.unread]
        raise AssertionError(f"unexpected script: {script[:40]}")

    def is_closed(self):
        return self.closed


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def events():
    return []


@pytest.fixture
def web_client(gateway_config, page, events):
    async def _record(event):
        events.append(event)

    client = WhatsAppWebClient(gateway_config)
    client.set_event_sink(_record)
    client._page = page
    return client


def _types(events):
    return [event.type for event in events]


def _log_in(page):
    page.qr = None
    page.chat_list = True
    page.identity = {"wid": "15550001111@c.us", "pushname": "Test Bot", "platform": "linux"}


@pytest.mark.asyncio
async def test_qr_challenge_is_reported_once_per_code(web_client, page, events):
    page.qr = "2@first"
    await web_client._poll(page)
    await web_client._poll(page)

    page.qr = "2@second"
    await web_client._poll(page)

    assert _types(events) == [SessionEventType.QR_CHALLENGE, SessionEventType.QR_CHALLENGE]
    assert [event.payload["qr"] for event in events] == ["2@first", "2@second"]


@pytest.mark.asyncio
async def test_chat_list_reports_authenticated_then_ready(web_client, page, events):
    page.chat_list = True
    await web_client._poll(page)

    assert _types(events) == [SessionEventType.AUTHENTICATED]
    assert web_client.identity is None

    page.identity = {"wid": "15550001111@c.us", "pushname": "Test Bot", "platform": "linux"}
    await web_client._poll(page)
    await web_client._poll(page)

    assert _types(events) == [SessionEventType.AUTHENTICATED, SessionEventType.READY]
    assert web_client.identity.wid == "15550001111@c.us"
    assert web_client.identity.pushname == "Test Bot"


@pytest.mark.asyncio
async def test_qr_after_login_is_reported_as_logout(web_client, page, events):
    _log_in(page)
    await web_client._poll(page)

    page.chat_list = False
    page.qr = "2@relink"
    await web_client._poll(page)

    assert _types(events) == [
        SessionEventType.AUTHENTICATED,
        SessionEventType.READY,
        SessionEventType.DISCONNECTED,
    ]
    assert events[-1].payload["reason"] == "LOGOUT"
    assert web_client.identity is None

    await web_client._poll(page)

    assert events[-1].type is SessionEventType.QR_CHALLENGE
    assert events[-1].payload["qr"] == "2@relink"


@pytest.mark.asyncio
async def test_unread_chats_are_reported_once_per_new_preview(web_client, page, events):
    page.unread = [{"chat": "Old Friend", "body": "from before login"}]
    _log_in(page)
    await web_client._poll(page)

    await web_client._poll(page)
    assert SessionEventType.MESSAGE_RECEIVED not in _types(events)

    page.unread = [
        {"chat": "Old Friend", "body": "from before login"},
        {"chat": "15551234567", "body": "hello there"},
    ]
    await web_client._poll(page)
    await web_client._poll(page)

    messages = [event for event in events if event.type is SessionEventType.MESSAGE_RECEIVED]
    assert len(messages) == 1
    assert messages[0].payload == {"from": "15551234567", "body": "hello there", "chat": "15551234567"}

    page.unread = [{"chat": "15551234567", "body": "second message"}]
    await web_client._poll(page)

    messages = [event for event in events if event.type is SessionEventType.MESSAGE_RECEIVED]
    assert [m.payload["body"] for m in messages] == ["hello there", "second message"]


@pytest.mark.asyncio
async def test_polling_is_skipped_while_a_send_is_running(web_client, page, events):
    page.qr = "2@first"

    async with web_client._send_lock:
        await web_client._poll(page)

    assert events == []


@pytest.mark.asyncio
async def test_monitor_reports_closed_page_as_disconnect(web_client, page, events, gateway_config):
    gateway_config.client_poll_interval = 0.01
    page.query_error = RuntimeError("Target page, context or browser has been closed")

    await asyncio.wait_for(web_client._monitor(), timeout=1.0)

    assert _types(events) == [SessionEventType.DISCONNECTED]
    assert events[0].payload["reason"] == "Session closed"


@pytest.mark.asyncio
async def test_events_drive_the_lifecycle_manager(gateway_config, page, caplog):
    client = WhatsAppWebClient(gateway_config)
    client._page = page
    manager = LifecycleManager(client, gateway_config)
    manager.machine.transition(SessionPhase.INITIALIZING, reason="test")
    caplog.set_level(logging.INFO, logger="session_gateway.core.lifecycle_manager")

    page.qr = "2@scan-me"
    await client._poll(page)
    assert manager.phase is SessionPhase.AWAITING_SCAN
    assert manager.latest_qr == "2@scan-me"

    _log_in(page)
    await client._poll(page)
    assert manager.phase is SessionPhase.READY

    page.unread = [{"chat": "15551234567", "body": "ping"}]
    await client._poll(page)

    assert any("*******4567: ping" in record.getMessage() for record in caplog.records)

    manager.watchdog.cancel()


@pytest.mark.asyncio
async def test_cancelled_launch_stops_the_playwright_driver(gateway_config, monkeypatch):
    class HangingChromium:
        async def launch_persistent_context(self, *args, **kwargs):
            await asyncio.sleep(10)

    class FakePlaywright:
        def __init__(self):
            self.chromium = HangingChromium()
            self.stopped = False

        async def stop(self):
            self.stopped = True

    driver = FakePlaywright()

    class FakeStarter:
        async def start(self):
            return driver

    monkeypatch.setattr(whatsapp_web, "async_playwright", lambda: FakeStarter())
    client = WhatsAppWebClient(gateway_config)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(client.connect(), timeout=0.05)

    assert driver.stopped is True
    assert client.has_transport is False
