"""Scheduled retention sweep over the run store."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from .store import RunStore

logger = logging.getLogger(__name__)


class RunCleanupJob:
    """Deletes expired run records once at start and then every ``interval``."""

    def __init__(
        self,
        store: RunStore,
        *,
        interval: timedelta = timedelta(hours=24),
        max_age: timedelta = timedelta(days=30),
    ) -> None:
        self._store = store
        self._interval = interval
        self._max_age = max_age
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> int:
        deleted = self._store.purge_expired(self._max_age)
        stats = self._store.statistics()
        logger.info(
            "Run cleanup finished",
            extra={
                "deleted": deleted,
                "total": stats["total"],
                "success_rate": stats["success_rate"],
            },
        )
        return deleted

    def start(self) -> None:
        if self.running:
            logger.warning("Run cleanup job is already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "Started run cleanup job",
            extra={"interval_s": self._interval.total_seconds(), "max_age_days": self._max_age.days},
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped run cleanup job")

    async def _loop(self) -> None:
        while True:
            try:
                self.run_once()
            except OSError:
                logger.exception("Run cleanup failed")
            await asyncio.sleep(self._interval.total_seconds())


__all__ = ["RunCleanupJob"]
