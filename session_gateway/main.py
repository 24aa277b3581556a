"""
Session Gateway Server
======================

FastAPI application serving the gateway routes. The server accepts requests
immediately; the first WhatsApp initialization runs in the background so
health probes answer while the browser is still starting.

Run:
    session-gateway --port 3000
    python -m session_gateway.main
"""

from __future__ import annotations

import argparse
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, Request

from session_gateway import __version__
from session_gateway.api.gateway_routes import gateway_error_handler, router
from session_gateway.config.gateway_config import GatewayConfig, get_config
from session_gateway.core.errors import GatewayError
from session_gateway.core.lifecycle_manager import LifecycleManager, set_lifecycle_manager
from session_gateway.logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_manager(config: GatewayConfig) -> LifecycleManager:
    from session_gateway.clients.whatsapp_web import WhatsAppWebClient

    return LifecycleManager(WhatsAppWebClient(config), config)


def create_app(
    manager: Optional[LifecycleManager] = None,
    config: Optional[GatewayConfig] = None,
    auto_initialize: bool = True,
) -> FastAPI:
    """Build the FastAPI app around ``manager`` (a WhatsApp Web one by default)."""
    if manager is None:
        config = config or get_config()
        manager = build_manager(config)
    config = manager.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.auth_store.ensure_directory()
        logger.info("=" * 60)
        logger.info(f"[Gateway] Running in {config.environment} mode, auth data in {config.auth_dir}")
        logger.info("=" * 60)
        if auto_initialize:
            manager.spawn(manager.request_initialize(reason="startup"), name="startup-initialize")
        try:
            yield
        finally:
            logger.info("[Gateway] Shutting down...")
            await manager.shutdown()
            set_lifecycle_manager(None)

    app = FastAPI(title="WhatsApp Session Gateway", version=__version__, lifespan=lifespan)
    app.state.manager = manager
    app.state.started_at = time.monotonic()
    set_lifecycle_manager(manager)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        logger.info(f"[HTTP] {request.method} {request.url.path} - Started")
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        logger.info(f"[HTTP] {request.method} {request.url.path} - {response.status_code} ({duration_ms:.0f}ms)")
        return response

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.include_router(router, prefix="/api")
    # Unprefixed routes for backwards compatibility
    app.include_router(router)
    return app


def main(argv=None) -> None:
    # .env in the working directory wins over the inherited environment
    load_dotenv(find_dotenv(usecwd=True), override=True)
    config = get_config()
    parser = argparse.ArgumentParser(description="WhatsApp Session Gateway")
    parser.add_argument("--host", default=config.host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=config.port, help="Port to run the server on")
    parser.add_argument("--log-level", default=config.log_level, help="Root log level")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    app = create_app(config=config)

    logger.info(f"[Gateway] Server is running on port {args.port}")
    logger.info(f"[Gateway] Local URL: http://localhost:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower(), access_log=False)


if __name__ == "__main__":
    main()
