"""
Configuration package for the session gateway.

Usage:
    from session_gateway.config import GatewayConfig, get_config

    config = get_config()
    timeout = config.init_timeout
"""

from session_gateway.config.gateway_config import (
    DEVELOPMENT,
    PRODUCTION,
    GatewayConfig,
    get_config,
    reset_config,
)


__all__ = [
    "DEVELOPMENT",
    "PRODUCTION",
    "GatewayConfig",
    "get_config",
    "reset_config",
]
