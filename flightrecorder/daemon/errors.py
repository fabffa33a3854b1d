"""Error types for the capture pipeline.

Only resource-acquisition failures are raised as exceptions:
- opening the capture store
- starting a monitor without the required OS permission
- individual store operations (returned to that caller only)

Per-capture outcomes (filtered, duplicate, truncated) are plain values.
"""

from pathlib import Path
from typing import Optional


class FlightRecorderError(Exception):
    """Base class for all flightrecorder errors."""


class ConfigError(FlightRecorderError):
    """Configuration could not be loaded or failed validation."""


class StorageError(FlightRecorderError):
    """A single store operation failed."""


class MigrationError(StorageError):
    """The database schema could not be brought up to date."""


class StoreOpenError(FlightRecorderError):
    """The capture store could not be created or opened."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"failed to open capture store at {self.path}: {reason}")


class MonitorError(FlightRecorderError):
    """A capture monitor failed to start."""


class MonitorPermissionError(MonitorError):
    """A monitor requires an OS permission that is not granted."""

    def __init__(self, message: str, instructions: Optional[str] = None):
        self.instructions = instructions or ""
        text = message if not self.instructions else f"{message}\n\n{self.instructions}"
        super().__init__(text)
