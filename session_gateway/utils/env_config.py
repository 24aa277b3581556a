"""
Environment variable helpers.

All gateway settings are read through these helpers so that a malformed
value never crashes startup: the problem is logged and the default is used.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def get_env_str(key: str, default: str) -> str:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def get_env_optional_str(key: str) -> Optional[str]:
    value = os.environ.get(key, "").strip()
    return value or None


def get_env_int(key: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except (ValueError, TypeError):
        logger.warning(f"[EnvConfig] {key}={raw!r} is not an integer, using default {default}")
        return default
    if minimum is not None and value < minimum:
        logger.warning(f"[EnvConfig] {key}={value} is below minimum {minimum}, using default {default}")
        return default
    return value


def get_env_float(key: str, default: float, minimum: Optional[float] = None) -> float:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except (ValueError, TypeError):
        logger.warning(f"[EnvConfig] {key}={raw!r} is not a number, using default {default}")
        return default
    if minimum is not None and value < minimum:
        logger.warning(f"[EnvConfig] {key}={value} is below minimum {minimum}, using default {default}")
        return default
    return value


def get_env_bool(key: str, default: bool) -> bool:
    val = os.environ.get(key, "").strip().lower()
    if val in _TRUE_VALUES:
        return True
    if val in _FALSE_VALUES:
        return False
    return default


def get_env_list(key: str, default: List[str]) -> List[str]:
    """Comma separated list, e.g. ``REAPER_PROCESS_NAMES=chrome,chromium``."""
    raw = os.environ.get(key, "").strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]
