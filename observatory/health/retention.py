"""Retention sweeper — periodically prunes old observations."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from .store import ObservationStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_SWEEP_INTERVAL = 60.0  # seconds

# Consecutive failed sweeps before the sweeper gives up
MAX_CONSECUTIVE_FAILURES = 3


class RetentionSweeper:
    """Deletes observations older than ``retention_days`` every ``interval`` seconds."""

    def __init__(
        self,
        store: ObservationStore,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
    ) -> None:
        self.store = store
        self.retention_days = retention_days
        self.interval = interval
        self.max_failures = max_failures
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.failed = False
        self.consecutive_failures = 0
        self.last_sweep_at: str | None = None
        self.last_removed: int = 0
        self.error: str | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="retention-sweeper")
        logger.info(
            "Retention sweeper started (retention=%sd, interval=%ss)",
            self.retention_days, self.interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Retention sweeper stopped")

    async def sweep_once(self) -> int:
        """Run a single sweep. Raises StoreError on failure."""
        removed = await asyncio.to_thread(self.store.delete_older_than, self.retention_days)
        self.last_sweep_at = datetime.now(timezone.utc).isoformat()
        self.last_removed = removed
        if removed:
            logger.info("Retention sweep removed %d observations", removed)
        return removed

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
                self.consecutive_failures = 0
                self.error = None
            except StoreError as e:
                self.consecutive_failures += 1
                self.error = str(e)
                if self.consecutive_failures >= self.max_failures:
                    self.failed = True
                    logger.error(
                        "Retention sweeper stopped after %d consecutive failures: %s",
                        self.consecutive_failures, e,
                    )
                    return
                logger.warning(
                    "Retention sweep failed (%d/%d): %s",
                    self.consecutive_failures, self.max_failures, e,
                )
            await asyncio.sleep(self.interval)

    def status(self) -> dict[str, Any]:
        return {
            "alive": not self.failed,
            "running": self._running and not self.failed,
            "retention_days": self.retention_days,
            "interval": self.interval,
            "last_sweep_at": self.last_sweep_at,
            "last_removed": self.last_removed,
            "consecutive_failures": self.consecutive_failures,
            "error": self.error,
        }
