"""
Session Clients
===============

- SessionClient: protocol the lifecycle manager drives
- WhatsAppWebClient: Playwright-backed WhatsApp Web session (clients.whatsapp_web)
- ReadinessGatedClient: readiness-gated sending (clients.gated_client)
"""

from session_gateway.clients.base import (
    ClientIdentity,
    EventSink,
    SessionClient,
    SessionEvent,
    SessionEventType,
    format_chat_id,
)

__all__ = [
    "ClientIdentity",
    "EventSink",
    "SessionClient",
    "SessionEvent",
    "SessionEventType",
    "format_chat_id",
]
