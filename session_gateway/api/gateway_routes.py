"""
Gateway HTTP API
================

    GET  /                 plain-text liveness banner
    GET  /health           always 200; WhatsApp status derived from readiness
    GET  /status           "Connected" | "Not connected" plus details
    GET  /qr               latest login QR challenge, if one is pending
    POST /force-reconnect  tear down, purge credentials, re-initialize
    POST /send-message     readiness-gated send (400 / 503 / 200 / 500)

The router is mounted twice by the application factory: at ``/`` and at
``/api``. Handlers only read the manager's readiness snapshot; the single
mutating calls are force_clean_and_reinit() and send_message().
"""

from __future__ import annotations

import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError, field_validator

from session_gateway.core.errors import AuthStoreError, GatewayError, SendFailedError, SessionNotReadyError
from session_gateway.core.lifecycle_manager import LifecycleManager
from session_gateway.core.readiness import ReadinessSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(tags=["whatsapp"])

STATUS_CONNECTED = "Connected"
STATUS_AUTHENTICATED_NOT_READY = "Authenticated but not ready"
STATUS_NOT_AUTHENTICATED = "Not authenticated"
STATUS_INITIALIZING = "Initializing"


class SendMessageRequest(BaseModel):
    # Optional so a missing field is answered with 400, not a 422 validation error
    number: Optional[str] = None
    message: Optional[str] = None

    @field_validator("number", "message", mode="before")
    @classmethod
    def _scalar_to_str(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


# =============================================================================
# Helpers
# =============================================================================

def _manager(request: Request) -> LifecycleManager:
    return request.app.state.manager


def _uptime(request: Request) -> float:
    return time.monotonic() - request.app.state.started_at


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _now_iso() -> str:
    return _iso(time.time())


def _connected_at(snapshot: ReadinessSnapshot) -> Optional[str]:
    if snapshot.identity:
        return _iso(snapshot.identity.get("lastConnect"))
    return None


def derive_client_status(snapshot: ReadinessSnapshot, uptime: float, needs_auth_after: float) -> str:
    if snapshot.is_ready:
        return STATUS_CONNECTED
    if snapshot.is_authenticated:
        return STATUS_AUTHENTICATED_NOT_READY
    if uptime > needs_auth_after:
        return STATUS_NOT_AUTHENTICATED
    return STATUS_INITIALIZING


def _initialization_status(snapshot: ReadinessSnapshot) -> Dict[str, Any]:
    return {
        "isInitializing": snapshot.is_initializing,
        "currentRetry": snapshot.attempt_count,
        "maxRetries": snapshot.max_attempts,
        "phase": snapshot.phase.value,
    }


def _memory_stats() -> Dict[str, Any]:
    try:
        info = psutil.Process().memory_info()
        system = psutil.virtual_memory()
        return {
            "rssMb": round(info.rss / (1024 * 1024), 1),
            "vmsMb": round(info.vms / (1024 * 1024), 1),
            "systemPercent": system.percent,
        }
    except (psutil.Error, OSError) as e:
        logger.debug(f"[GatewayAPI] Memory stats unavailable: {e}")
        return {}


def _not_ready_details(snapshot: ReadinessSnapshot) -> Dict[str, Any]:
    return {
        "clientInfo": snapshot.identity_present,
        "authenticated": snapshot.is_authenticated,
        "browserReady": snapshot.transport_present,
    }


async def _read_send_request(request: Request) -> SendMessageRequest:
    """Parse the body leniently; an absent or malformed one counts as empty."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}
    try:
        return SendMessageRequest.model_validate(payload)
    except ValidationError as e:
        logger.debug(f"[GatewayAPI] Rejecting send-message body: {e}")
        return SendMessageRequest()


def _error_payload(request: Request, message: str, error: BaseException) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": False, "message": message, "error": str(error)}
    if not request.app.state.manager.config.is_production:
        payload["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return payload


# =============================================================================
# Routes
# =============================================================================

@router.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "WhatsApp Bot API is running"


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    manager = _manager(request)
    snapshot = manager.query_readiness()
    uptime = _uptime(request)
    needs_auth_after = manager.config.needs_auth_after

    return {
        "status": "OK",
        "uptime": uptime,
        "whatsapp": {
            "status": derive_client_status(snapshot, uptime, needs_auth_after),
            "connectedAt": _connected_at(snapshot),
            "needsAuthentication": not snapshot.is_authenticated and uptime > needs_auth_after,
            "isAuthenticated": snapshot.is_authenticated,
            "isFullyReady": snapshot.is_ready,
            "transportLost": snapshot.transport_lost,
            "qrCodeAvailable": snapshot.qr_available,
        },
        "initializationStatus": _initialization_status(snapshot),
        "memory": _memory_stats(),
        "timestamp": _now_iso(),
        "environment": manager.config.environment,
    }


@router.get("/status")
async def status(request: Request) -> Dict[str, Any]:
    snapshot = _manager(request).query_readiness()
    return {
        "status": STATUS_CONNECTED if snapshot.is_ready else "Not connected",
        "details": {
            "clientInfo": snapshot.identity_present,
            "authenticated": snapshot.is_authenticated,
            "lastConnect": _connected_at(snapshot),
            "serverUptime": _uptime(request),
        },
    }


@router.get("/qr")
async def qr(request: Request) -> Dict[str, Any]:
    manager = _manager(request)
    code = manager.latest_qr or await manager.auth_store.read_qr()
    return {"available": code is not None, "qr": code, "phase": manager.phase.value}


@router.post("/force-reconnect")
async def force_reconnect(request: Request):
    try:
        await _manager(request).force_clean_and_reinit(reason="http request")
    except AuthStoreError as e:
        logger.error(f"[GatewayAPI] Error during force reconnect: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Error during reconnection process", "error": str(e)},
        )
    return {"success": True, "message": "Reconnection process started. Check logs for QR code."}


@router.post("/send-message")
async def send_message(request: Request):
    body = await _read_send_request(request)
    if not body.number or not body.message:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Please provide both 'number' and 'message' in the request body",
            },
        )

    manager = _manager(request)
    try:
        message_id = await manager.send_message(body.number, body.message)
    except SessionNotReadyError as e:
        snapshot = manager.query_readiness()
        return JSONResponse(
            status_code=e.http_status,
            content={
                "success": False,
                "message": str(e),
                "details": _not_ready_details(snapshot),
                "initializationStatus": _initialization_status(snapshot),
            },
        )
    except SendFailedError as e:
        payload = _error_payload(request, "Failed to send message", e)
        payload["recoveryScheduled"] = e.recovery_scheduled
        return JSONResponse(status_code=e.http_status, content=payload)

    return {"success": True, "message": "Message sent successfully", "messageId": message_id}


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render stray gateway errors as JSON; tracebacks only outside production."""
    logger.error(f"[GatewayAPI] {request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content=_error_payload(request, "Gateway error", exc) | {"retryable": exc.retryable},
    )
