"""Scheduled purge of records past their retention windows."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.sessions import SessionManager

logger = get_logger(__name__)

RETRY_BASE_SECONDS = 60


@dataclass
class SweepReport:
    expired_sessions: int = 0
    error_logs: int = 0
    audit_entries: int = 0
    revoked_sessions_purged: int = 0
    expired_sessions_purged: int = 0
    reset_tokens: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RetentionSweeper:
    """Expires stale sessions and deletes aged records on a fixed interval.

    Every purge is a bounded, idempotent delete in its own unit of work, so a
    sweep that fails part-way or overlaps another leaves nothing inconsistent.
    """

    def __init__(
        self,
        store: Any,
        sessions: SessionManager,
        settings: Settings,
        *,
        interval_seconds: Optional[int] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.interval = interval_seconds or settings.retention_sweep_interval_seconds
        self.error_log_window = timedelta(days=settings.retention_error_log_days)
        self.audit_window = timedelta(days=settings.retention_audit_log_days)
        self.revoked_window = timedelta(days=settings.retention_revoked_session_days)
        self.expired_window = timedelta(days=settings.retention_expired_session_days)
        self._sweeping = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        if self._sweeping.locked():
            logger.info("retention_sweep_skipped", reason="already_running")
            return SweepReport(skipped=True)
        async with self._sweeping:
            now = now or datetime.now(timezone.utc)
            report = SweepReport()
            async with self.store.detached():
                report.expired_sessions = await self.sessions.expire_stale()
            async with self.store.detached():
                report.error_logs = await self.store.purge_error_logs(
                    now - self.error_log_window
                )
            async with self.store.detached():
                report.audit_entries = await self.store.purge_audit_entries(
                    now - self.audit_window
                )
            async with self.store.detached():
                report.revoked_sessions_purged = await self.store.purge_revoked_sessions(
                    now - self.revoked_window
                )
            async with self.store.detached():
                report.expired_sessions_purged = await self.store.purge_expired_sessions(
                    now - self.expired_window
                )
            async with self.store.detached():
                report.reset_tokens = await self.store.purge_reset_tokens(now)
            logger.info("retention_sweep_completed", **report.to_dict())
            return report

    async def start(self) -> None:
        if self._running:
            logger.warning("retention_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("retention_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("retention_sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "retention_sweep_failed",
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Retry sooner than the next scheduled sweep, backing off to it
                backoff = min(
                    self.interval, RETRY_BASE_SECONDS * (2 ** (consecutive_errors - 1))
                )
                logger.warning(
                    "retention_sweeper_backoff",
                    backoff_seconds=backoff,
                    consecutive_errors=consecutive_errors,
                )
                await asyncio.sleep(backoff)
                continue
            await asyncio.sleep(self.interval)
