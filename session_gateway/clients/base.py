"""
External session client interface.

The lifecycle manager drives any object satisfying SessionClient. The client
owns the browser/transport; it reports lifecycle changes by awaiting the
event sink it was given, never by mutating gateway state directly.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable


class SessionEventType(str, Enum):
    """Inbound notifications from the external session."""
    CONNECTED = "connected"
    QR_CHALLENGE = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failure"
    ERROR = "error"
    MESSAGE_RECEIVED = "message"


@dataclass(frozen=True)
class SessionEvent:
    type: SessionEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)

    @classmethod
    def qr(cls, code: str) -> "SessionEvent":
        return cls(SessionEventType.QR_CHALLENGE, {"qr": code})

    @classmethod
    def disconnected(cls, reason: str) -> "SessionEvent":
        return cls(SessionEventType.DISCONNECTED, {"reason": reason})

    @classmethod
    def auth_failed(cls, message: str) -> "SessionEvent":
        return cls(SessionEventType.AUTH_FAILED, {"message": message})

    @classmethod
    def error(cls, message: str) -> "SessionEvent":
        return cls(SessionEventType.ERROR, {"message": message})

    @classmethod
    def message(cls, sender: str, body: str, chat: Optional[str] = None) -> "SessionEvent":
        return cls(SessionEventType.MESSAGE_RECEIVED, {"from": sender, "body": body, "chat": chat})


@dataclass(frozen=True)
class ClientIdentity:
    """Who the session is logged in as (``client.info`` in the JS client)."""
    wid: str
    pushname: Optional[str] = None
    platform: Optional[str] = None
    last_connect: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wid": self.wid,
            "pushname": self.pushname,
            "platform": self.platform,
            "lastConnect": self.last_connect,
        }


EventSink = Callable[[SessionEvent], Awaitable[None]]


@runtime_checkable
class SessionClient(Protocol):
    """What the lifecycle manager needs from the external client."""

    def set_event_sink(self, sink: EventSink) -> None: ...

    async def connect(self) -> None:
        """Launch the transport and begin the login flow.

        Returns once the launch call itself settles; readiness is reported
        asynchronously through the event sink.
        """
        ...

    async def destroy(self) -> None:
        """Tear down the live transport handle (idempotent)."""
        ...

    @property
    def has_transport(self) -> bool: ...

    @property
    def identity(self) -> Optional[ClientIdentity]: ...

    async def send_message(self, chat_id: str, text: str) -> str:
        """Send ``text`` to ``chat_id``; returns the message id."""
        ...


CHAT_SUFFIX = "@c.us"
_NON_DIGIT_RE = re.compile(r"[^\d]")


def format_chat_id(number: str) -> str:
    """Normalize a phone number into a chat id.

    ``"+1 (555) 123-4567"`` -> ``"15551234567@c.us"``; ids that already carry
    the ``@c.us`` suffix pass through unchanged.
    """
    number = str(number).strip()
    if CHAT_SUFFIX in number:
        return number
    return f"{_NON_DIGIT_RE.sub('', number)}{CHAT_SUFFIX}"
