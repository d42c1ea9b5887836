"""Periodic hard-delete of dead sessions.

Runs ``AuthService.sweep_expired_sessions`` on a fixed interval. A sweep
that is still running when the next one is due is skipped, and a failed
sweep is logged and retried on the next tick instead of stopping the loop.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from telemed_auth.logging import get_logger

if TYPE_CHECKING:
    from telemed_auth.service.auth import AuthService

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 6 * 60 * 60


class SessionSweeper:
    def __init__(
        self,
        auth: "AuthService",
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.auth = auth
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._sweep_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    async def run_once(self) -> Optional[int]:
        """Run a single sweep.

        Returns the number of deleted sessions, or None when another sweep
        holds the guard.
        """
        if self._sweep_lock.locked():
            logger.info("session_sweep_skipped", reason="already_running")
            return None
        async with self._sweep_lock:
            return await self.auth.sweep_expired_sessions()

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            delay = self.interval
            if consecutive_errors > 3:
                delay = min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3)))
                logger.warning(
                    "session_sweeper_backoff",
                    backoff_seconds=delay,
                    consecutive_errors=consecutive_errors,
                )
            await asyncio.sleep(delay)
