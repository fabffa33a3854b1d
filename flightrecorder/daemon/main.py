"""Main daemon process for flightrecorder."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import psutil
from loguru import logger

from .capture import utc_now
from .config import Config
from .errors import ConfigError, StoreOpenError
from .monitors import CaptureMonitor, ClipboardMonitor, TextFieldMonitor
from .pipeline import CaptureCoordinator
from .privacy import PrivacyFilter
from .retention import RetentionWorker
from .store import CaptureStore

__version__ = "0.1.0"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    rotation: str = "1 day",
    retention: str = "7 days",
) -> None:
    """Route loguru output to stderr and, optionally, a rotating log file."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level)

    if log_file is not None:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation=rotation,
            retention=retention,
            level="DEBUG",
        )


def build_monitors(config: Config) -> List[CaptureMonitor]:
    monitors: List[CaptureMonitor] = []
    if config.capture.clipboard_enabled:
        monitors.append(ClipboardMonitor(config.capture.clipboard_settings()))
    if config.capture.text_field_enabled:
        monitors.append(TextFieldMonitor(config.capture.text_field_settings()))
    return monitors


class FlightRecorderDaemon:
    """Owns the store and wires monitors, filter and retention around it."""

    def __init__(
        self,
        config: Config,
        store: Optional[CaptureStore] = None,
        monitors: Optional[List[CaptureMonitor]] = None,
    ):
        self.config = config
        self.start_time: Optional[datetime] = None

        self.store = store or CaptureStore(config.database_path())
        self.privacy_filter = PrivacyFilter(config.filter_config())
        self.coordinator = CaptureCoordinator(
            self.store,
            self.privacy_filter,
            build_monitors(config) if monitors is None else monitors,
            channel_capacity=config.capture.channel_capacity,
        )
        self.retention = RetentionWorker(self.store, config.retention_policy())

    async def start(self) -> None:
        """Start all daemon services."""
        logger.info("Starting flightrecorder daemon...")
        self.start_time = utc_now()
        await self.retention.start()
        await self.coordinator.start()
        logger.info("flightrecorder daemon started successfully")

    async def stop(self) -> None:
        """Stop all daemon services and close the store."""
        logger.info("Stopping flightrecorder daemon...")
        await self.coordinator.stop()
        await self.retention.stop()
        self.store.close()
        logger.info("flightrecorder daemon stopped")

    def get_status(self) -> dict:
        """Get daemon status and statistics."""
        process = psutil.Process()
        uptime = (utc_now() - self.start_time).total_seconds() if self.start_time else 0

        return {
            "status": "running" if self.coordinator.is_running else "stopped",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "monitors": [status.to_dict() for status in self.coordinator.status()],
            "captures": self.coordinator.stats,
            "storage": self.store.stats().to_dict(),
            "retention": dict(self.retention.stats),
            "process": {
                "memory_mb": process.memory_info().rss / 1024 / 1024,
                "cpu_percent": process.cpu_percent(),
            },
            "config": {
                "database_path": str(self.config.database_path()),
                "privacy_mode": self.config.privacy.mode.value,
            },
        }


async def run_daemon(config: Config) -> None:
    """Run the daemon until SIGINT or SIGTERM."""
    try:
        daemon = FlightRecorderDaemon(config)
    except StoreOpenError as e:
        logger.error(f"Storage error: {e}")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        loop.call_soon_threadsafe(shutdown.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await daemon.start()
        await shutdown.wait()
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


async def main(config_path: Optional[str] = None):
    """Main entry point for the daemon."""
    setup_logging()

    try:
        config = Config.load(Path(config_path) if config_path else None)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(
        config.logging.level,
        config.log_file(),
        config.logging.rotation,
        config.logging.retention,
    )
    await run_daemon(config)


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
