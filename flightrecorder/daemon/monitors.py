"""Polling monitors for the clipboard and the focused text field."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from loguru import logger

from .capture import Capture, CaptureType, compute_hash, content_length, truncate_content
from .channel import CaptureChannel
from .errors import MonitorPermissionError
from . import platform

Sample = Tuple[str, Optional[str]]


class MonitorType(str, Enum):
    CLIPBOARD = "clipboard"
    ACCESSIBILITY = "accessibility"
    KEYSTROKE = "keystroke"  # reserved

    def __str__(self) -> str:
        return self.value


@dataclass
class MonitorStatus:
    """Point-in-time view of a monitor."""
    monitor_type: MonitorType
    is_running: bool
    has_permission: bool
    capture_count: int
    message: str

    def to_dict(self) -> dict:
        return {
            "monitor_type": self.monitor_type.value,
            "running": self.is_running,
            "has_permission": self.has_permission,
            "capture_count": self.capture_count,
            "message": self.message,
        }


@dataclass
class MonitorSettings:
    """Polling and length policy shared by all monitors."""
    poll_interval: float = 0.5  # seconds
    min_content_length: int = 1  # UTF-8 bytes
    max_content_length: int = 1_000_000  # UTF-8 bytes
    skip_password_fields: bool = True


class CaptureMonitor(ABC):
    """
    Watches one text surface and emits a capture each time it changes.

    Lifecycle is Stopped -> Running -> Stopped. Each tick samples the
    surface, applies the length policy and suppresses immediate repeats,
    then sends new captures down the channel. Stopping a monitor that is
    not running has no effect.
    """

    monitor_type: MonitorType
    capture_type: CaptureType
    running_message = "Monitoring"

    def __init__(self, settings: MonitorSettings):
        self.settings = settings
        self.last_hash: Optional[str] = None
        self.capture_count = 0
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    def _sample(self) -> Optional[Sample]:
        """Read the surface once; (content, source_app) or None if nothing to read."""

    def _check_start(self) -> None:
        """Raise if the monitor cannot start."""

    def has_permission(self) -> bool:
        return True

    def check_for_changes(self) -> Optional[Capture]:
        """
        Sample the surface once and apply the capture policy.

        Returns:
            A new Capture if the surface holds content that passes the length
            policy and differs from the last emitted content, otherwise None.
        """
        sample = self._sample()
        if sample is None:
            return None
        content, source_app = sample

        # Minimum applies to the untruncated length.
        if content_length(content) < self.settings.min_content_length:
            return None
        content = truncate_content(content, self.settings.max_content_length)

        content_hash = compute_hash(content)
        if content_hash == self.last_hash:
            return None
        self.last_hash = content_hash

        logger.debug(
            f"New {self.capture_type} content detected "
            f"({content_length(content)} bytes, app={source_app})"
        )
        return Capture(
            content=content,
            capture_type=self.capture_type,
            source_app=source_app,
            content_hash=content_hash,
        )

    async def start(self, channel: CaptureChannel) -> None:
        """
        Run the polling loop until stopped or the channel closes.

        Raises:
            MonitorPermissionError: The monitor lacks a required OS permission.
        """
        if self._running:
            logger.warning(f"{self.monitor_type} monitor already running")
            return

        self._check_start()

        self.last_hash = None
        self._running = True
        logger.info(f"{self.monitor_type} monitor started")

        try:
            while not self._stop_event.is_set():
                try:
                    capture = await asyncio.to_thread(self.check_for_changes)
                except MonitorPermissionError as e:
                    logger.error(f"{self.monitor_type} monitor lost permission: {e}")
                    break
                except Exception as e:
                    logger.warning(f"{self.monitor_type} sampling failed: {e}")
                    capture = None

                if capture is not None:
                    if not await channel.send(capture):
                        logger.info(f"{self.monitor_type} monitor channel closed")
                        break
                    self.capture_count += 1

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.settings.poll_interval,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self._stop_event.clear()
            logger.info(f"{self.monitor_type} monitor stopped")

    def stop(self) -> None:
        """Signal the polling loop to exit after the current tick."""
        if not self._running:
            return
        self._stop_event.set()

    def status(self) -> MonitorStatus:
        has_permission = self.has_permission()
        if self._running:
            message = self.running_message
        elif not has_permission:
            message = "Accessibility permission required"
        else:
            message = "Not running"
        return MonitorStatus(
            monitor_type=self.monitor_type,
            is_running=self._running,
            has_permission=has_permission,
            capture_count=self.capture_count,
            message=message,
        )

    def __repr__(self) -> str:
        state = "running" if self._running else "stopped"
        return f"<{self.__class__.__name__} ({state})>"


class ClipboardMonitor(CaptureMonitor):
    """Polls the system clipboard for text changes."""

    monitor_type = MonitorType.CLIPBOARD
    capture_type = CaptureType.CLIPBOARD
    running_message = "Monitoring clipboard"

    def __init__(
        self,
        settings: Optional[MonitorSettings] = None,
        read_clipboard: Callable[[], Optional[str]] = platform.read_clipboard,
        foreground_app: Callable[[], Optional[str]] = platform.get_foreground_app,
    ):
        super().__init__(settings or MonitorSettings(poll_interval=0.5))
        self._read_clipboard = read_clipboard
        self._foreground_app = foreground_app

    def _sample(self) -> Optional[Sample]:
        text = self._read_clipboard()
        if text is None:
            return None
        return text, self._resolve_app()

    def _resolve_app(self) -> Optional[str]:
        try:
            return self._foreground_app()
        except Exception as e:
            logger.debug(f"Could not resolve foreground app: {e}")
            return None


class TextFieldMonitor(CaptureMonitor):
    """Snapshots the focused text input of the frontmost application."""

    monitor_type = MonitorType.ACCESSIBILITY
    capture_type = CaptureType.TEXT_FIELD
    running_message = "Monitoring text fields"

    def __init__(
        self,
        settings: Optional[MonitorSettings] = None,
        focused_field: Callable[[], Optional[platform.FieldSnapshot]] = platform.get_focused_field,
        permission: Optional[platform.AccessibilityPermission] = None,
    ):
        super().__init__(settings or MonitorSettings(poll_interval=2.0))
        self._focused_field = focused_field
        self.permission = permission or platform.AccessibilityPermission()

    def has_permission(self) -> bool:
        return self.permission.is_granted()

    def _permission_error(self) -> MonitorPermissionError:
        return MonitorPermissionError(
            "Accessibility permission required",
            self.permission.instructions(),
        )

    def _check_start(self) -> None:
        if not self.has_permission():
            raise self._permission_error()

    def _sample(self) -> Optional[Sample]:
        if not self.has_permission():
            raise self._permission_error()

        snapshot = self._focused_field()
        if snapshot is None:
            return None
        if snapshot.is_password and self.settings.skip_password_fields:
            logger.trace("Skipping password field")
            return None
        return snapshot.content, snapshot.source_app
