"""Pipeline coordinator: monitors -> privacy filter -> store."""

import asyncio
from collections import defaultdict
from enum import Enum
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .capture import Capture
from .channel import CaptureChannel
from .errors import MonitorPermissionError, StorageError
from .monitors import CaptureMonitor, MonitorStatus, MonitorType
from .privacy import FilterOutcome, PrivacyFilter
from .store import CaptureStore


class CaptureOutcome(str, Enum):
    """What happened to one capture on its way to the store."""
    STORED = "stored"
    DUPLICATE = "duplicate"
    BLOCKED = "blocked"
    EXCLUDED = "excluded"
    FAILED = "failed"


class CaptureCoordinator:
    """
    Runs the capture monitors and routes their output into the store.

    All monitors share one bounded channel. A single forwarding task reads
    from it, drops captures from excluded applications, applies the privacy
    filter and inserts the rest. Store failures are counted and logged; they
    never stop the monitors.
    """

    def __init__(
        self,
        store: CaptureStore,
        privacy_filter: PrivacyFilter,
        monitors: Sequence[CaptureMonitor],
        channel_capacity: int = 100,
    ):
        self.store = store
        self.privacy_filter = privacy_filter
        self.monitors: List[CaptureMonitor] = list(monitors)
        self.channel_capacity = channel_capacity

        self._channel: Optional[CaptureChannel] = None
        self._monitor_tasks: Dict[MonitorType, asyncio.Task] = {}
        self._forwarder_task: Optional[asyncio.Task] = None
        self._running = False
        self._stats = defaultdict(int)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, int]:
        """Per-outcome capture counters since construction."""
        return {outcome.value: self._stats[outcome] for outcome in CaptureOutcome}

    def get_monitor(self, monitor_type: MonitorType) -> Optional[CaptureMonitor]:
        for monitor in self.monitors:
            if monitor.monitor_type == monitor_type:
                return monitor
        return None

    async def start(self) -> None:
        """Start every monitor and the forwarding task."""
        if self._running:
            logger.warning("Capture coordinator already running")
            return

        self._running = True
        self._channel = CaptureChannel(self.channel_capacity)
        self._forwarder_task = asyncio.create_task(self._forward(self._channel))

        for monitor in self.monitors:
            self._monitor_tasks[monitor.monitor_type] = asyncio.create_task(
                self._run_monitor(monitor, self._channel)
            )

        logger.info(f"Capture coordinator started with {len(self.monitors)} monitor(s)")

    async def _run_monitor(self, monitor: CaptureMonitor, channel: CaptureChannel) -> None:
        try:
            await monitor.start(channel)
        except MonitorPermissionError as e:
            logger.error(f"Failed to start {monitor.monitor_type} monitor: {e}")

    async def _forward(self, channel: CaptureChannel) -> None:
        while True:
            capture = await channel.receive()
            if capture is None:
                break
            try:
                await self.process(capture)
            except Exception as e:
                logger.exception(f"Unexpected error processing capture: {e}")
                self._stats[CaptureOutcome.FAILED] += 1

    async def process(self, capture: Capture) -> CaptureOutcome:
        """
        Filter and store a single capture.

        Returns:
            The outcome; filtered and duplicate captures are normal results.
        """
        if self.privacy_filter.is_app_excluded(capture.source_app):
            logger.debug(f"Skipping capture from excluded app: {capture.source_app}")
            return self._record(CaptureOutcome.EXCLUDED)

        result = self.privacy_filter.classify(capture.content)
        if result.outcome == FilterOutcome.BLOCKED:
            logger.debug(f"Capture blocked by privacy filter ({result.pattern_name})")
            return self._record(CaptureOutcome.BLOCKED)
        if result.outcome == FilterOutcome.REDACTED:
            capture = capture.with_content(result.content)

        try:
            capture_id = await asyncio.to_thread(self.store.insert, capture)
        except StorageError as e:
            logger.error(f"Failed to store {capture.capture_type} capture: {e}")
            return self._record(CaptureOutcome.FAILED)

        if capture_id is None:
            logger.debug(f"Duplicate {capture.capture_type} capture dropped")
            return self._record(CaptureOutcome.DUPLICATE)

        logger.debug(f"Stored {capture.capture_type} capture {capture_id}")
        return self._record(CaptureOutcome.STORED)

    def _record(self, outcome: CaptureOutcome) -> CaptureOutcome:
        self._stats[outcome] += 1
        return outcome

    async def stop_monitor(self, monitor_type: MonitorType) -> None:
        """Stop one monitor and wait for its loop to exit."""
        monitor = self.get_monitor(monitor_type)
        if monitor is None:
            logger.warning(f"No {monitor_type} monitor configured")
            return

        await self._halt(monitor, self._monitor_tasks.pop(monitor_type, None))

    async def _halt(self, monitor: CaptureMonitor, task: Optional[asyncio.Task]) -> None:
        monitor.stop()
        if task is None:
            return
        # A task whose monitor is not running yet has not entered start().
        if not task.done() and not monitor.is_running:
            task.cancel()
        await asyncio.wait([task])

    async def stop(self) -> None:
        """
        Stop all monitors, then drain the channel.

        Captures already sent are still filtered and stored before this
        returns.
        """
        if not self._running:
            return

        await asyncio.gather(*(
            self._halt(monitor, self._monitor_tasks.get(monitor.monitor_type))
            for monitor in self.monitors
        ))
        self._monitor_tasks.clear()

        if self._channel is not None:
            await self._channel.close()
        if self._forwarder_task is not None:
            await self._forwarder_task
            self._forwarder_task = None

        self._running = False
        logger.info("Capture coordinator stopped")

    def status(self) -> List[MonitorStatus]:
        return [monitor.status() for monitor in self.monitors]
