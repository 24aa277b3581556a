"""
Readiness-gated sending.

Wraps the external client instead of patching its send method in place:
every send is checked against the readiness facade first, and a send that
fails with a transport-level error schedules a forced clean reconnect as a
side effect before the failure is reported to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from session_gateway.clients.base import SessionClient, format_chat_id
from session_gateway.core.errors import SendFailedError, SessionNotReadyError, is_transport_failure
from session_gateway.core.readiness import ReadinessFacade
from session_gateway.core.secure_logging import mask_phone_number, sanitize_for_log

logger = logging.getLogger(__name__)


class ReadinessGatedClient:

    def __init__(
        self,
        client: SessionClient,
        readiness: ReadinessFacade,
        on_transport_error: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._client = client
        self._readiness = readiness
        self._on_transport_error = on_transport_error
        self._recovery_tasks: Set[asyncio.Task] = set()

    async def send_message(self, number: str, text: str) -> str:
        """Send ``text`` to ``number``; returns the message id.

        Raises:
            SessionNotReadyError: the session is not usable right now (retryable).
            SendFailedError: the client raised while sending.
        """
        chat_id = format_chat_id(number)
        masked = mask_phone_number(chat_id)

        if not self._readiness.is_ready():
            logger.warning(f"[GatedClient] Session not ready, cannot send message to {masked}")
            raise SessionNotReadyError("WhatsApp client is not fully connected. Try again later.")

        logger.info(f"[GatedClient] Sending message to {masked}: {sanitize_for_log(text, 30)}")
        try:
            message_id = await self._client.send_message(chat_id, text)
        except Exception as e:
            recovery = is_transport_failure(e) and self._schedule_recovery()
            logger.error(
                f"[GatedClient] Failed to send message to {masked}: {e}"
                + (" (forced reconnect scheduled)" if recovery else "")
            )
            raise SendFailedError(str(e) or e.__class__.__name__, recovery_scheduled=recovery) from e

        logger.info(f"[GatedClient] Message sent with ID: {message_id}")
        return message_id

    def _schedule_recovery(self) -> bool:
        if self._on_transport_error is None:
            return False
        task = asyncio.create_task(self._on_transport_error(), name="send-failure-recovery")
        self._recovery_tasks.add(task)
        task.add_done_callback(self._recovery_tasks.discard)
        return True
