"""
Auth Store Guard
================

Keeps the persistent credential directory structurally sane before each
initialization attempt.

Layout (``auth_dir``)::

    auth_data/
        .gitkeep                  sentinel, never deleted by a purge
        session-<client_id>/      browser profile holding the login
        latest-qr.txt             last QR challenge, for operators without a terminal
        restart.trigger           optional operator marker: purge on next attempt

A session directory holding fewer than ``min_session_entries`` entries is a
corrupted partial login. Such a bundle reliably fails authentication without
a decodable error, so it is removed before the attempt instead of being
retried as-is.

Every removal here is best effort: per-entry failures are logged as
CleanupFailure and skipped. The only error that propagates is
AuthStoreError, raised when the directory itself cannot be created.

A Chromium profile holds thousands of files, so the checks and purges that
walk it run in the default executor and never block the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiofiles

from session_gateway.core.errors import AuthStoreError, CleanupFailure

logger = logging.getLogger(__name__)


@dataclass
class AuthStoreReport:
    """What ensure_ready() found and did."""
    created_directory: bool = False
    session_present: bool = False
    session_entries: int = 0
    removed_corrupted_session: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def fresh_login_required(self) -> bool:
        return not self.session_present or self.removed_corrupted_session


class AuthStoreGuard:

    def __init__(
        self,
        auth_dir: Path,
        session_dir_name: str,
        sentinel_name: str = ".gitkeep",
        min_session_entries: int = 2,
        restart_marker_name: str = "restart.trigger",
        qr_file_name: str = "latest-qr.txt",
    ):
        self.auth_dir = Path(auth_dir)
        self.session_dir = self.auth_dir / session_dir_name
        self.sentinel_name = sentinel_name
        self.min_session_entries = min_session_entries
        self.restart_marker = self.auth_dir / restart_marker_name
        self.qr_file = self.auth_dir / qr_file_name

    # -------------------------------------------------------------------------
    # Directory structure
    # -------------------------------------------------------------------------

    def ensure_directory(self) -> bool:
        """Create the credential directory and sentinel if missing.

        Returns True when the directory had to be created. Raises
        AuthStoreError if it cannot be created.
        """
        created = False
        try:
            if not self.auth_dir.is_dir():
                self.auth_dir.mkdir(parents=True, exist_ok=True)
                created = True
                logger.info(f"[AuthStore] Created {self.auth_dir}")
        except OSError as e:
            raise AuthStoreError(f"Cannot create auth directory {self.auth_dir}: {e}") from e

        sentinel = self.auth_dir / self.sentinel_name
        try:
            sentinel.touch(exist_ok=True)
        except OSError as e:
            logger.warning(f"[AuthStore] Could not create sentinel {sentinel}: {e}")
        return created

    def count_session_entries(self) -> int:
        if not self.session_dir.is_dir():
            return 0
        try:
            return sum(1 for _ in self.session_dir.iterdir())
        except OSError as e:
            logger.warning(f"[AuthStore] Could not list {self.session_dir}: {e}")
            return 0

    async def ensure_ready(self) -> AuthStoreReport:
        """Pre-attempt check: directory exists, session bundle absent or plausible."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._check_session)

    def _check_session(self) -> AuthStoreReport:
        report = AuthStoreReport()
        report.created_directory = self.ensure_directory()

        if not self.session_dir.exists():
            logger.info("[AuthStore] No stored session, a fresh login (QR scan) will be required")
            return report

        report.session_present = True
        if not self.session_dir.is_dir():
            # A stray file where the profile directory should be
            report.removed_corrupted_session = self._remove(self.session_dir, report.errors)
            return report

        report.session_entries = self.count_session_entries()
        if report.session_entries < self.min_session_entries:
            logger.warning(
                f"[AuthStore] Session bundle {self.session_dir.name} has {report.session_entries} "
                f"entries (< {self.min_session_entries}); treating as corrupted and removing it"
            )
            report.removed_corrupted_session = self._remove(self.session_dir, report.errors)
        else:
            logger.info(
                f"[AuthStore] Found stored session ({report.session_entries} entries), "
                "attempting to resume without QR"
            )
        return report

    # -------------------------------------------------------------------------
    # Purging
    # -------------------------------------------------------------------------

    async def purge(self) -> List[str]:
        """Remove every entry except the sentinel; keep the directory itself."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._purge_entries)

    def _purge_entries(self) -> List[str]:
        removed: List[str] = []
        errors: List[str] = []
        if not self.auth_dir.is_dir():
            return removed

        try:
            entries = list(self.auth_dir.iterdir())
        except OSError as e:
            logger.error(f"[AuthStore] Error clearing auth data: {e}")
            return removed

        for entry in entries:
            if entry.name == self.sentinel_name:
                continue
            if self._remove(entry, errors):
                removed.append(entry.name)

        logger.info(f"[AuthStore] Purged {len(removed)} entr{'y' if len(removed) == 1 else 'ies'} from {self.auth_dir}")
        return removed

    def restart_requested(self) -> bool:
        return self.restart_marker.exists()

    async def consume_restart_marker(self) -> bool:
        """If the operator dropped a restart marker: full purge, then delete it."""
        if not self.restart_requested():
            return False

        logger.warning(f"[AuthStore] Restart marker {self.restart_marker.name} found, purging stored session")
        await self.purge()
        try:
            self.restart_marker.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"[AuthStore] {CleanupFailure(f'Could not delete restart marker: {e}')}")
        return True

    def _remove(self, path: Path, errors: Optional[List[str]] = None) -> bool:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
            logger.debug(f"[AuthStore] Removed {path}")
            return True
        except OSError as e:
            failure = CleanupFailure(f"Error removing {path.name}: {e}")
            logger.error(f"[AuthStore] {failure}")
            if errors is not None:
                errors.append(str(failure))
            return False

    # -------------------------------------------------------------------------
    # QR challenge file
    # -------------------------------------------------------------------------

    async def write_qr(self, qr: str) -> bool:
        try:
            self.auth_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.qr_file, "w", encoding="utf-8") as f:
                await f.write(qr)
            logger.info(f"[AuthStore] QR code saved to {self.qr_file}")
            return True
        except OSError as e:
            logger.error(f"[AuthStore] Failed to write QR code to file: {e}")
            return False

    async def read_qr(self) -> Optional[str]:
        if not self.qr_file.is_file():
            return None
        try:
            async with aiofiles.open(self.qr_file, "r", encoding="utf-8") as f:
                return (await f.read()).strip() or None
        except OSError as e:
            logger.warning(f"[AuthStore] Failed to read QR code file: {e}")
            return None

    def clear_qr(self) -> bool:
        if not self.qr_file.exists():
            return False
        removed = self._remove(self.qr_file)
        if removed:
            logger.info("[AuthStore] Cleared saved QR code")
        return removed

    def qr_available(self) -> bool:
        return self.qr_file.is_file()
