"""
Gateway Console Logging
=======================

Colorized console output for the session gateway. Lifecycle transitions,
retries and watchdog timeouts are easy to miss in a wall of request logs,
so records are coloured by level and the ``[Component]`` tag at the start of
a message is highlighted.
"""

import logging
import re
import sys
from datetime import datetime
from typing import Optional

import colorama
from colorama import Fore, Style

colorama.init(autoreset=True)

_TAG_RE = re.compile(r"^\[([^\]]+)\]\s*")


class GatewayLogFormatter(logging.Formatter):
    """Timestamp, coloured level, highlighted component tag, message."""

    COLORS = {
        logging.DEBUG: Fore.CYAN + Style.DIM,
        logging.INFO: Fore.WHITE,
        logging.WARNING: Fore.YELLOW + Style.BRIGHT,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        message = record.getMessage()

        tag = ""
        match = _TAG_RE.match(message)
        if match:
            tag = match.group(1)
            message = message[match.end():]

        if not self.use_color:
            prefix = f"[{tag}] " if tag else ""
            line = f"{timestamp} {record.levelname:<8} {prefix}{message}"
        else:
            color = self.COLORS.get(record.levelno, Fore.WHITE)
            parts = [
                f"{Fore.BLUE}{timestamp}{Style.RESET_ALL}",
                f"{color}{record.levelname:<8}{Style.RESET_ALL}",
            ]
            if tag:
                parts.append(f"{Fore.MAGENTA}[{tag}]{Style.RESET_ALL}")
            parts.append(f"{color}{message}{Style.RESET_ALL}")
            line = " ".join(parts)

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO", use_color: Optional[bool] = None) -> None:
    """Install the gateway formatter on the root logger (idempotent)."""
    if use_color is None:
        use_color = sys.stdout.isatty()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in list(root.handlers):
        if getattr(handler, "_gateway_handler", False):
            root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(GatewayLogFormatter(use_color=use_color))
    console_handler._gateway_handler = True
    root.addHandler(console_handler)

    # uvicorn's access log duplicates the request middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
