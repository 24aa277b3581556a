"""
WhatsApp Web Session Client
===========================

Playwright-backed implementation of SessionClient.

The browser profile is a persistent context stored in
``<auth_dir>/session-<client_id>``, so a scanned login survives restarts.
Lifecycle progress is detected by polling the page DOM:

    div[data-ref]   login QR challenge (``data-ref`` holds the QR payload)
    #pane-side      chat list rendered -> authenticated, then ready once the
                    logged-in identity can be read from localStorage

A QR challenge re-appearing after the chat list was shown means the phone
logged the session out; that is reported as a ``LOGOUT`` disconnect.

Once ready, chats carrying an unread badge are reported as MESSAGE_RECEIVED,
once per new last-message preview. WhatsApp Web shows no distinct error for
a rejected stored login; it simply presents a new QR challenge, so this
client never emits AUTH_FAILED or ERROR.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright

from session_gateway.clients.base import ClientIdentity, EventSink, SessionEvent, SessionEventType
from session_gateway.config.gateway_config import GatewayConfig, get_config
from session_gateway.core.errors import SessionClosedError

logger = logging.getLogger(__name__)

QR_SELECTOR = "div[data-ref]"
CHAT_LIST_SELECTOR = "#pane-side"
COMPOSE_SELECTOR = "footer div[contenteditable='true']"

# Low-memory flags for small containers
BROWSER_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-software-rasterizer",
    "--js-flags=--max-old-space-size=256",
]

IDENTITY_SCRIPT = """() => {
    const raw = localStorage.getItem('last-wid-md') || localStorage.getItem('last-wid');
    if (!raw) return null;
    return {
        wid: raw.replace(/"/g, ''),
        pushname: localStorage.getItem('me-display-name'),
        platform: navigator.platform || null,
    };
}"""

UNREAD_CHATS_SCRIPT = """() => {
    const pane = document.querySelector('#pane-side');
    if (!pane) return [];
    const chats = [];
    for (const row of pane.querySelectorAll("div[role='listitem'], div[role='row']")) {
        if (!row.querySelector("span[aria-label*='unread']")) continue;
        const titles = row.querySelectorAll('span[title]');
        if (!titles.length) continue;
        chats.push({
            chat: titles[0].getAttribute('title'),
            body: titles.length > 1 ? titles[titles.length - 1].getAttribute('title') : '',
        });
    }
    return chats;
}"""


class WhatsAppWebClient:

    def __init__(self, config: Optional[GatewayConfig] = None):
        self._config = config or get_config()
        self._sink: Optional[EventSink] = None
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._identity: Optional[ClientIdentity] = None
        self._last_qr: Optional[str] = None
        self._last_previews: Dict[str, str] = {}
        self._authenticated = False
        self._closing = False

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    @property
    def has_transport(self) -> bool:
        return self._context is not None and self._page is not None and not self._page.is_closed()

    @property
    def identity(self) -> Optional[ClientIdentity]:
        return self._identity

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Launch Chrome with the persistent profile and open WhatsApp Web."""
        if self._context is not None:
            await self.destroy()

        self._closing = False
        self._authenticated = False
        self._identity = None
        self._last_qr = None
        self._last_previews.clear()

        profile_dir = self._config.session_dir
        profile_dir.mkdir(parents=True, exist_ok=True)

        try:
            self._playwright = await async_playwright().start()
            self._context = await self._playwright.chromium.launch_persistent_context(
                str(profile_dir),
                headless=self._config.headless,
                executable_path=self._config.browser_executable,
                args=BROWSER_ARGS,
                viewport={"width": 1280, "height": 720},
            )
            self._context.on("close", self._on_context_closed)
            pages = self._context.pages
            self._page = pages[0] if pages else await self._context.new_page()
            await self._page.goto(self._config.web_url, wait_until="domcontentloaded")
        except BaseException:
            # Includes the cancellation delivered by the init deadline
            await self._cleanup()
            raise

        logger.info(f"[WhatsAppWeb] Browser launched, profile {profile_dir}")
        await self._emit(SessionEvent(SessionEventType.CONNECTED))
        self._monitor_task = asyncio.create_task(self._monitor(), name="whatsapp-web-monitor")

    async def destroy(self) -> None:
        self._closing = True
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._cleanup()

    async def _cleanup(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except Exception as e:
                logger.debug(f"[WhatsAppWeb] Context close failed: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"[WhatsAppWeb] Playwright stop failed: {e}")
        self._context = None
        self._page = None
        self._playwright = None
        self._identity = None

    def _on_context_closed(self, _context: Any) -> None:
        if self._closing:
            return
        logger.warning("[WhatsAppWeb] Browser context closed unexpectedly")
        self._page = None
        asyncio.get_running_loop().create_task(self._emit(SessionEvent.disconnected("Session closed")))

    async def _emit(self, event: SessionEvent) -> None:
        if self._sink is None:
            logger.debug(f"[WhatsAppWeb] No event sink, dropping '{event.type.value}'")
            return
        try:
            await self._sink(event)
        except Exception as e:
            logger.error(f"[WhatsAppWeb] Event sink failed for '{event.type.value}': {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # DOM monitor
    # -------------------------------------------------------------------------

    async def _monitor(self) -> None:
        interval = self._config.client_poll_interval
        while not self._closing:
            page = self._page
            if page is None or page.is_closed():
                break
            try:
                await self._poll(page)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._closing:
                    break
                if "closed" in str(e).lower():
                    logger.warning(f"[WhatsAppWeb] Page gone while polling: {e}")
                    await self._emit(SessionEvent.disconnected("Session closed"))
                    break
                logger.debug(f"[WhatsAppWeb] Poll error: {e}")
            await asyncio.sleep(interval)

    async def _poll(self, page: Page) -> None:
        if self._send_lock.locked():
            return

        qr_element = await page.query_selector(QR_SELECTOR)
        if qr_element is not None:
            ref = await qr_element.get_attribute("data-ref")
            if self._authenticated:
                self._authenticated = False
                self._identity = None
                self._last_previews.clear()
                await self._emit(SessionEvent.disconnected("LOGOUT"))
                return
            if ref and ref != self._last_qr:
                self._last_qr = ref
                await self._emit(SessionEvent.qr(ref))
            return

        if self._identity is not None:
            await self._check_incoming(page)
            return

        if await page.query_selector(CHAT_LIST_SELECTOR) is None:
            return

        if not self._authenticated:
            self._authenticated = True
            self._last_qr = None
            await self._emit(SessionEvent(SessionEventType.AUTHENTICATED))

        identity = await self._read_identity(page)
        if identity is not None:
            self._identity = identity
            logger.info(f"[WhatsAppWeb] Logged in as {identity.pushname or 'unknown'}")
            await self._emit(SessionEvent(SessionEventType.READY))
            # Chats already unread at login are history, not new messages
            await self._check_incoming(page, announce=False)

    async def _read_identity(self, page: Page) -> Optional[ClientIdentity]:
        data: Optional[Dict[str, Any]] = await page.evaluate(IDENTITY_SCRIPT)
        if not data or not data.get("wid"):
            return None
        return ClientIdentity(
            wid=str(data["wid"]),
            pushname=data.get("pushname"),
            platform=data.get("platform"),
            last_connect=time.time(),
        )

    async def _check_incoming(self, page: Page, announce: bool = True) -> int:
        chats: Optional[List[Dict[str, Any]]] = await page.evaluate(UNREAD_CHATS_SCRIPT)
        emitted = 0
        for entry in chats or []:
            chat = str(entry.get("chat") or "")
            body = str(entry.get("body") or "")
            if not chat or self._last_previews.get(chat) == body:
                continue
            self._last_previews[chat] = body
            if announce:
                await self._emit(SessionEvent.message(chat, body, chat=chat))
                emitted += 1
        return emitted

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send_message(self, chat_id: str, text: str) -> str:
        page = self._page
        if page is None or page.is_closed():
            raise SessionClosedError("Session closed: no browser page")

        phone = chat_id.split("@", 1)[0]
        async with self._send_lock:
            await page.goto(
                f"{self._config.web_url}/send?phone={phone}&text={quote(text)}",
                wait_until="domcontentloaded",
            )
            compose = await page.wait_for_selector(COMPOSE_SELECTOR, timeout=30000)
            await compose.press("Enter")
            await asyncio.sleep(1.0)

        return f"true_{chat_id}_{uuid.uuid4().hex[:20].upper()}"
