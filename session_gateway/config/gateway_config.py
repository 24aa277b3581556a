"""
Centralized Gateway Configuration
=================================

Single source of truth for every tunable of the session gateway. All values
are configurable via environment variables; a malformed value logs a warning
and falls back to its default (never crashes on bad config).

Environment Variables:
----------------------

### Runtime
- GATEWAY_ENV: "production" or "development" (default: development)
- HOST / PORT: HTTP bind address (default: 0.0.0.0:3000)
- LOG_LEVEL: root log level (default: INFO)

### Credential store
- AUTH_DIR: persistent credential directory (default: ./auth_data)
- CLIENT_ID: session id; the browser profile lives in AUTH_DIR/session-<CLIENT_ID>
- AUTH_MIN_SESSION_ENTRIES: fewer entries than this = corrupted bundle (default: 2)
- AUTH_RESTART_MARKER: operator restart marker file name (default: restart.trigger)

### Lifecycle timing
- INIT_TIMEOUT: deadline for the connect call (default: 300s)
- INIT_SETTLE_DELAY: pause after reaping before connecting (default: 3s)
- REINIT_DELAY: delay before a forced re-initialization (default: 3s)
- WATCHDOG_TIMEOUT: max time from AUTHENTICATED to READY (default: 180s)
- NEEDS_AUTH_AFTER: uptime after which a missing login is reported (default: 60s)

### Retry policy
- RETRY_MAX_ATTEMPTS (default: 5)
- RETRY_BASE_DELAY (default: 5s)
- RETRY_GROWTH: linear | multiplicative (default: linear)
- RETRY_GROWTH_FACTOR (default: 2.0)
- RETRY_MAX_DELAY (default: 300s)
- RETRY_TIMEOUT_DELAY: fixed delay after an init timeout (default: 15s)
- RETRY_AUTH_FAILURE_DELAY: delay after rejected credentials (default: 0s)

### Process reaper
- REAPER_ENABLED: default true in production only
- REAPER_PROCESS_NAMES: comma separated (default: chrome,chromium)
- REAPER_COMMAND: opaque command instead of psutil, e.g. "pkill -9 chrome"
- REAPER_TIMEOUT (default: 10s)

### Browser
- BROWSER_HEADLESS (default: true)
- BROWSER_EXECUTABLE: Chrome binary (default: google-chrome-stable in production)
- WHATSAPP_WEB_URL (default: https://web.whatsapp.com)
- CLIENT_POLL_INTERVAL: DOM polling interval of the web client (default: 1.0s)

Usage:
    from session_gateway.config import get_config

    config = get_config()
    policy = config.retry_policy()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from session_gateway.core.errors import FailureClass
from session_gateway.core.retry_controller import BackoffGrowth, RetryPolicy
from session_gateway.utils.env_config import (
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_list,
    get_env_optional_str,
    get_env_str,
)

logger = logging.getLogger(__name__)

PRODUCTION = "production"
DEVELOPMENT = "development"
_PRODUCTION_CHROME = "/usr/bin/google-chrome-stable"


def _growth_from_env() -> str:
    value = get_env_str("RETRY_GROWTH", BackoffGrowth.LINEAR.value).lower()
    if value not in (g.value for g in BackoffGrowth):
        logger.warning(f"[GatewayConfig] RETRY_GROWTH={value!r} not recognised, using linear")
        return BackoffGrowth.LINEAR.value
    return value


@dataclass
class GatewayConfig:
    # Runtime
    environment: str = field(default_factory=lambda: get_env_str("GATEWAY_ENV", DEVELOPMENT).lower())
    host: str = field(default_factory=lambda: get_env_str("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: get_env_int("PORT", 3000, minimum=1))
    log_level: str = field(default_factory=lambda: get_env_str("LOG_LEVEL", "INFO").upper())

    # Credential store
    auth_dir: Path = field(default_factory=lambda: Path(get_env_str("AUTH_DIR", "./auth_data")))
    client_id: str = field(default_factory=lambda: get_env_str("CLIENT_ID", "whatsapp-bot"))
    sentinel_name: str = ".gitkeep"
    min_session_entries: int = field(
        default_factory=lambda: get_env_int("AUTH_MIN_SESSION_ENTRIES", 2, minimum=0)
    )
    restart_marker_name: str = field(
        default_factory=lambda: get_env_str("AUTH_RESTART_MARKER", "restart.trigger")
    )
    qr_file_name: str = "latest-qr.txt"

    # Lifecycle timing
    init_timeout: float = field(default_factory=lambda: get_env_float("INIT_TIMEOUT", 300.0, minimum=1.0))
    settle_delay: float = field(default_factory=lambda: get_env_float("INIT_SETTLE_DELAY", 3.0, minimum=0.0))
    reinit_delay: float = field(default_factory=lambda: get_env_float("REINIT_DELAY", 3.0, minimum=0.0))
    watchdog_timeout: float = field(
        default_factory=lambda: get_env_float("WATCHDOG_TIMEOUT", 180.0, minimum=1.0)
    )
    needs_auth_after: float = field(
        default_factory=lambda: get_env_float("NEEDS_AUTH_AFTER", 60.0, minimum=0.0)
    )

    # Retry policy
    retry_max_attempts: int = field(default_factory=lambda: get_env_int("RETRY_MAX_ATTEMPTS", 5, minimum=0))
    retry_base_delay: float = field(default_factory=lambda: get_env_float("RETRY_BASE_DELAY", 5.0, minimum=0.0))
    retry_growth: str = field(default_factory=_growth_from_env)
    retry_growth_factor: float = field(
        default_factory=lambda: get_env_float("RETRY_GROWTH_FACTOR", 2.0, minimum=1.0)
    )
    retry_max_delay: float = field(default_factory=lambda: get_env_float("RETRY_MAX_DELAY", 300.0, minimum=0.0))
    retry_timeout_delay: float = field(
        default_factory=lambda: get_env_float("RETRY_TIMEOUT_DELAY", 15.0, minimum=0.0)
    )
    retry_auth_failure_delay: float = field(
        default_factory=lambda: get_env_float("RETRY_AUTH_FAILURE_DELAY", 0.0, minimum=0.0)
    )

    # Process reaper (None = decide from environment)
    reaper_enabled: Optional[bool] = None
    reaper_process_names: List[str] = field(
        default_factory=lambda: get_env_list("REAPER_PROCESS_NAMES", ["chrome", "chromium"])
    )
    reaper_command: Optional[str] = field(default_factory=lambda: get_env_optional_str("REAPER_COMMAND"))
    reaper_timeout: float = field(default_factory=lambda: get_env_float("REAPER_TIMEOUT", 10.0, minimum=0.1))

    # Browser
    headless: bool = field(default_factory=lambda: get_env_bool("BROWSER_HEADLESS", True))
    browser_executable: Optional[str] = field(default_factory=lambda: get_env_optional_str("BROWSER_EXECUTABLE"))
    web_url: str = field(default_factory=lambda: get_env_str("WHATSAPP_WEB_URL", "https://web.whatsapp.com"))
    client_poll_interval: float = field(
        default_factory=lambda: get_env_float("CLIENT_POLL_INTERVAL", 1.0, minimum=0.05)
    )

    def __post_init__(self):
        self.auth_dir = Path(self.auth_dir)
        if self.environment not in (PRODUCTION, DEVELOPMENT):
            logger.warning(
                f"[GatewayConfig] Unknown environment {self.environment!r}, treating as {DEVELOPMENT}"
            )
            self.environment = DEVELOPMENT
        if self.reaper_enabled is None:
            self.reaper_enabled = get_env_bool("REAPER_ENABLED", self.is_production)
        if self.browser_executable is None and self.is_production:
            self.browser_executable = _PRODUCTION_CHROME

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @property
    def session_dir_name(self) -> str:
        return f"session-{self.client_id}"

    @property
    def session_dir(self) -> Path:
        return self.auth_dir / self.session_dir_name

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            growth=BackoffGrowth(self.retry_growth),
            growth_factor=self.retry_growth_factor,
            max_delay=self.retry_max_delay,
            failure_class_delays={
                FailureClass.TIMEOUT: self.retry_timeout_delay,
                FailureClass.AUTH_FAILURE: self.retry_auth_failure_delay,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "auth_dir": str(self.auth_dir),
            "client_id": self.client_id,
            "init_timeout": self.init_timeout,
            "watchdog_timeout": self.watchdog_timeout,
            "retry_max_attempts": self.retry_max_attempts,
            "retry_base_delay": self.retry_base_delay,
            "retry_growth": self.retry_growth,
            "reaper_enabled": self.reaper_enabled,
            "headless": self.headless,
        }


_config: Optional[GatewayConfig] = None


def get_config() -> GatewayConfig:
    """Module-level singleton, built from the environment on first use."""
    global _config
    if _config is None:
        _config = GatewayConfig()
        logger.debug(f"[GatewayConfig] Loaded: {_config.to_dict()}")
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the environment."""
    global _config
    _config = None
