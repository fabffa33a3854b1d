"""Background retention worker that prunes old and excess captures."""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from loguru import logger

from .errors import StorageError
from .store import CaptureStore


@dataclass(frozen=True)
class RetentionPolicy:
    """
    How long and how many captures to keep.

    A rule set to None is disabled.
    """
    max_age: Optional[timedelta] = timedelta(days=30)
    max_count: Optional[int] = 100_000
    interval: timedelta = timedelta(hours=24)


@dataclass
class PruneReport:
    """Rows removed by one retention pass."""
    by_age: int = 0
    by_count: int = 0

    @property
    def total(self) -> int:
        return self.by_age + self.by_count


class RetentionWorker:
    """Applies a retention policy to the store on a fixed interval."""

    def __init__(self, store: CaptureStore, policy: RetentionPolicy):
        self.store = store
        self.policy = policy

        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self.stats = {
            "runs": 0,
            "pruned": 0,
            "errors": 0,
        }

    def run_once(self) -> PruneReport:
        """Apply the age rule, then the count rule."""
        report = PruneReport()
        if self.policy.max_age is not None:
            report.by_age = self.store.prune_older_than(self.policy.max_age)
        if self.policy.max_count is not None:
            report.by_count = self.store.prune_keep_recent(self.policy.max_count)

        self.stats["runs"] += 1
        self.stats["pruned"] += report.total
        if report.total:
            logger.info(
                f"Retention pruned {report.total} captures "
                f"({report.by_age} by age, {report.by_count} by count)"
            )
        return report

    async def start(self) -> None:
        if self.running:
            return

        self.running = True
        self._stop_event.clear()
        self.task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Retention worker started (interval: {self.policy.interval.total_seconds():.0f}s)"
        )

    async def stop(self) -> None:
        if not self.running:
            return

        self._stop_event.set()
        if self.task:
            await self.task
            self.task = None
        self.running = False
        logger.info("Retention worker stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except StorageError as e:
                # Retried at the next interval.
                self.stats["errors"] += 1
                logger.error(f"Retention pass failed: {e}")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.policy.interval.total_seconds(),
                )
            except asyncio.TimeoutError:
                pass
