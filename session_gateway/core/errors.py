"""
Session Gateway Error Taxonomy
==============================

Failures raised inside the connection lifecycle, and the classifier that
maps them onto the retry controller's failure classes.

Propagation rules:
    - Attempt-sequence failures (SessionClosedError, InitTimeoutError,
      AuthRejectedError, WatchdogStuckError) are caught at the
      LifecycleManager boundary, recorded and handed to the retry
      controller. They never reach HTTP callers.
    - CleanupFailure describes best-effort OS/file-system work that failed.
      It is logged and swallowed.
    - SessionNotReadyError and SendFailedError are raised synchronously to
      the caller of a send (503 / 500 on the HTTP surface).
    - "Already in progress" is not a failure and is modelled as
      InitOutcome.ALREADY_IN_PROGRESS rather than an exception.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple, Union


class GatewayError(Exception):
    """Base class for every error raised by the session gateway."""

    http_status: int = 500
    retryable: bool = False


class SessionLifecycleError(GatewayError):
    """A failure of the external session during an initialization attempt."""


class SessionClosedError(SessionLifecycleError):
    """The browser transport died mid-handshake (usually memory pressure)."""


class InitTimeoutError(SessionLifecycleError):
    """Initialization did not settle before its deadline."""

    def __init__(self, timeout: float):
        minutes = timeout / 60.0
        super().__init__(f"Initialization timed out after {minutes:g} minutes")
        self.timeout = timeout


class AuthRejectedError(SessionLifecycleError):
    """Stored credentials were rejected by the messaging network."""


class WatchdogStuckError(SessionLifecycleError):
    """The session authenticated but never became ready."""

    def __init__(self, waited: float):
        super().__init__(f"Session authenticated but not ready after {waited:.0f}s")
        self.waited = waited


class InvalidTransitionError(GatewayError):
    """A lifecycle event asked for an edge the state machine does not allow."""

    def __init__(self, current: Any, requested: Any, reason: str = ""):
        message = f"Illegal phase transition {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.current = current
        self.requested = requested


class CleanupFailure(GatewayError):
    """Best-effort cleanup (process reaping, file purge) did not succeed."""


class AuthStoreError(GatewayError):
    """The credential directory could not be created or prepared."""


class SessionNotReadyError(GatewayError):
    """A send was attempted while the session is not usable."""

    http_status = 503
    retryable = True


class SendFailedError(GatewayError):
    """The external client raised while dispatching a message."""

    http_status = 500

    def __init__(self, message: str, recovery_scheduled: bool = False):
        super().__init__(message)
        self.recovery_scheduled = recovery_scheduled


# =============================================================================
# FAILURE CLASSIFICATION
# =============================================================================

class FailureClass(str, Enum):
    """Coarse failure classes used to pick a backoff delay."""
    SESSION_CLOSED = "session_closed"
    TIMEOUT = "timeout"
    AUTH_FAILURE = "auth_failure"
    OTHER = "other"


FAILURE_PATTERNS: Dict[FailureClass, Tuple[str, ...]] = {
    FailureClass.SESSION_CLOSED: (
        "session closed",
        "page has been closed",
        "target closed",
        "target page, context or browser has been closed",
        "browser has been closed",
        "browser has disconnected",
        "protocol error",
        "execution context was destroyed",
    ),
    FailureClass.TIMEOUT: (
        "timeout",
        "timed out",
    ),
    FailureClass.AUTH_FAILURE: (
        "auth failure",
        "authentication failure",
        "unauthorized",
        "auth_failure",
        "logout",
    ),
}


def classify_failure(error: Union[BaseException, str, None]) -> FailureClass:
    """Map an exception (or its text) onto a FailureClass.

    Typed errors win over text matching. Watchdog expiry is deliberately
    treated as a generic failure: the transport was torn down on purpose.
    """
    if isinstance(error, WatchdogStuckError):
        return FailureClass.OTHER
    if isinstance(error, SessionClosedError):
        return FailureClass.SESSION_CLOSED
    if isinstance(error, (InitTimeoutError, asyncio.TimeoutError)):
        return FailureClass.TIMEOUT
    if isinstance(error, AuthRejectedError):
        return FailureClass.AUTH_FAILURE

    text = str(error or "").lower()
    for failure_class, patterns in FAILURE_PATTERNS.items():
        if any(pattern in text for pattern in patterns):
            return failure_class
    return FailureClass.OTHER


def is_transport_failure(error: Union[BaseException, str, None]) -> bool:
    """True when an error text indicates the browser transport is gone."""
    return classify_failure(error) is FailureClass.SESSION_CLOSED


@dataclass(frozen=True)
class ErrorRecord:
    """The last failure observed by the lifecycle manager."""
    failure_class: FailureClass
    message: str
    error_type: str = "Exception"
    occurred_at: float = field(default_factory=time.time)

    @classmethod
    def from_exception(cls, error: BaseException) -> "ErrorRecord":
        message = str(error) or error.__class__.__name__
        return cls(
            failure_class=classify_failure(error),
            message=message,
            error_type=error.__class__.__name__,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_class": self.failure_class.value,
            "message": self.message,
            "error_type": self.error_type,
            "occurred_at": self.occurred_at,
        }
