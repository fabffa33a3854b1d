"""Tests for the clipboard and text field monitors."""

import asyncio

import pytest

from flightrecorder.daemon.capture import CaptureType, compute_hash
from flightrecorder.daemon.channel import CaptureChannel
from flightrecorder.daemon.errors import MonitorPermissionError
from flightrecorder.daemon.monitors import (
    ClipboardMonitor, MonitorSettings, MonitorType, TextFieldMonitor
)
from flightrecorder.daemon.platform import FieldSnapshot


class FakeClipboard:
    """Clipboard stand-in whose value tests set directly."""

    def __init__(self, value=None, fail_times=0):
        self.value = value
        self.fail_times = fail_times
        self.reads = 0

    def read(self):
        self.reads += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("clipboard busy")
        return self.value


class FakePermission:
    def __init__(self, granted=True):
        self.granted = granted

    def is_granted(self):
        return self.granted

    def request(self):
        return False

    def instructions(self):
        return "Go to Privacy & Security > Accessibility"


def clipboard_monitor(clipboard, interval=0.05, **settings):
    return ClipboardMonitor(
        MonitorSettings(poll_interval=interval, **settings),
        read_clipboard=clipboard.read,
        foreground_app=lambda: "Notes",
    )


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestCapturePolicy:
    """Test the per-tick sample and policy step."""

    def test_repeat_suppressed(self):
        clipboard = FakeClipboard("hello")
        monitor = clipboard_monitor(clipboard)

        first = monitor.check_for_changes()
        assert first.content == "hello"
        assert first.capture_type == CaptureType.CLIPBOARD
        assert first.source_app == "Notes"
        assert monitor.check_for_changes() is None

        clipboard.value = "world"
        assert monitor.check_for_changes().content == "world"

    def test_empty_clipboard(self):
        monitor = clipboard_monitor(FakeClipboard(None))

        assert monitor.check_for_changes() is None

    def test_truncation_before_hash(self):
        monitor = clipboard_monitor(FakeClipboard("1234567890"), max_content_length=5)
        capture = monitor.check_for_changes()

        assert capture.content == "12345"
        assert capture.content_hash == compute_hash("12345")
        assert capture.content_hash != compute_hash("1234567890")

    def test_min_length_precedes_truncation(self):
        """Test content under the minimum is dropped even when min > max."""
        monitor = clipboard_monitor(
            FakeClipboard("x" * 50), min_content_length=100, max_content_length=10
        )

        assert monitor.check_for_changes() is None

    def test_min_length_uses_bytes(self):
        monitor = clipboard_monitor(FakeClipboard("é"), min_content_length=2)

        assert monitor.check_for_changes().content == "é"

    def test_foreground_app_failure_is_none(self):
        def broken():
            raise OSError("no display")

        monitor = ClipboardMonitor(
            MonitorSettings(poll_interval=0.05),
            read_clipboard=lambda: "text",
            foreground_app=broken,
        )

        assert monitor.check_for_changes().source_app is None


class TestClipboardMonitor:

    @pytest.mark.asyncio
    async def test_copy_sequence(self):
        """Test hello, hello again, then world yields exactly two captures."""
        clipboard = FakeClipboard("hello")
        monitor = clipboard_monitor(clipboard)
        channel = CaptureChannel(10)
        task = asyncio.create_task(monitor.start(channel))

        first = await asyncio.wait_for(channel.receive(), timeout=1.0)
        assert first.capture_type == CaptureType.CLIPBOARD
        assert first.content == "hello"

        clipboard.value = "hello"
        await asyncio.sleep(0.2)
        assert len(channel) == 0

        clipboard.value = "world"
        second = await asyncio.wait_for(channel.receive(), timeout=1.0)
        assert second.content == "world"

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert not monitor.is_running
        assert monitor.capture_count == 2

    @pytest.mark.asyncio
    async def test_second_start_is_noop(self, log_messages):
        monitor = clipboard_monitor(FakeClipboard("hello"))
        channel = CaptureChannel(10)
        task = asyncio.create_task(monitor.start(channel))
        await wait_until(lambda: monitor.is_running)

        await asyncio.wait_for(monitor.start(channel), timeout=0.5)
        assert any("already running" in m for m in log_messages)

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_is_prompt(self):
        """Test a stop does not wait out a long poll interval."""
        monitor = clipboard_monitor(FakeClipboard("hello"), interval=30)
        task = asyncio.create_task(monitor.start(CaptureChannel(10)))
        await wait_until(lambda: monitor.capture_count == 1)

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_closed_channel_ends_loop(self):
        monitor = clipboard_monitor(FakeClipboard("hello"))
        channel = CaptureChannel(10)
        await channel.close()

        await asyncio.wait_for(monitor.start(channel), timeout=1.0)
        assert not monitor.is_running
        assert monitor.capture_count == 0

    @pytest.mark.asyncio
    async def test_transient_error_continues(self, log_messages):
        clipboard = FakeClipboard("recovered", fail_times=2)
        monitor = clipboard_monitor(clipboard, interval=0.01)
        channel = CaptureChannel(10)
        task = asyncio.create_task(monitor.start(channel))

        capture = await asyncio.wait_for(channel.receive(), timeout=1.0)
        assert capture.content == "recovered"
        assert any("sampling failed" in m for m in log_messages)

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_restart_resets_last_hash(self):
        monitor = clipboard_monitor(FakeClipboard("hello"))
        channel = CaptureChannel(10)

        task = asyncio.create_task(monitor.start(channel))
        await wait_until(lambda: monitor.capture_count == 1)
        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)

        task = asyncio.create_task(monitor.start(channel))
        await wait_until(lambda: monitor.capture_count == 2)
        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_while_stopped_has_no_effect(self):
        """Test a stop sent before start does not end the next run."""
        monitor = clipboard_monitor(FakeClipboard("hello"))
        channel = CaptureChannel(10)
        monitor.stop()
        monitor.stop()

        task = asyncio.create_task(monitor.start(channel))
        capture = await asyncio.wait_for(channel.receive(), timeout=1.0)
        assert capture.content == "hello"
        assert monitor.is_running

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert not monitor.is_running

    def test_status(self):
        monitor = clipboard_monitor(FakeClipboard())
        status = monitor.status()

        assert status.monitor_type == MonitorType.CLIPBOARD
        assert not status.is_running
        assert status.has_permission
        assert status.message == "Not running"
        assert status.to_dict()["running"] is False


class TestTextFieldMonitor:

    def make_monitor(self, snapshot, permission=None, **settings):
        return TextFieldMonitor(
            MonitorSettings(poll_interval=0.05, **settings),
            focused_field=lambda: snapshot,
            permission=permission or FakePermission(),
        )

    @pytest.mark.asyncio
    async def test_start_without_permission(self):
        monitor = self.make_monitor(None, permission=FakePermission(granted=False))

        with pytest.raises(MonitorPermissionError) as exc_info:
            await monitor.start(CaptureChannel(10))

        assert "Privacy & Security > Accessibility" in exc_info.value.instructions
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_start_after_permission_granted(self):
        """Test a failed start followed by a stop leaves the monitor startable."""
        permission = FakePermission(granted=False)
        monitor = self.make_monitor(FieldSnapshot("draft reply"), permission=permission)
        channel = CaptureChannel(10)

        with pytest.raises(MonitorPermissionError):
            await monitor.start(channel)
        monitor.stop()

        permission.granted = True
        task = asyncio.create_task(monitor.start(channel))
        capture = await asyncio.wait_for(channel.receive(), timeout=1.0)
        assert capture.content == "draft reply"

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)

    def test_status_without_permission(self):
        monitor = self.make_monitor(None, permission=FakePermission(granted=False))
        status = monitor.status()

        assert status.monitor_type == MonitorType.ACCESSIBILITY
        assert not status.has_permission
        assert status.message == "Accessibility permission required"

    def test_captures_focused_field(self):
        monitor = self.make_monitor(FieldSnapshot("draft email", source_app="Mail"))
        capture = monitor.check_for_changes()

        assert capture.capture_type == CaptureType.TEXT_FIELD
        assert capture.content == "draft email"
        assert capture.source_app == "Mail"

    def test_password_field_skipped(self):
        monitor = self.make_monitor(FieldSnapshot("hunter2", is_password=True))

        assert monitor.check_for_changes() is None

    def test_password_field_kept_when_allowed(self):
        monitor = self.make_monitor(
            FieldSnapshot("hunter2", is_password=True), skip_password_fields=False
        )

        assert monitor.check_for_changes().content == "hunter2"

    @pytest.mark.asyncio
    async def test_permission_revoked_stops_monitor(self, log_messages):
        permission = FakePermission(granted=True)
        monitor = self.make_monitor(FieldSnapshot("typing..."), permission=permission)
        channel = CaptureChannel(10)
        task = asyncio.create_task(monitor.start(channel))

        await asyncio.wait_for(channel.receive(), timeout=1.0)
        assert monitor.status().message == "Monitoring text fields"

        permission.granted = False
        await asyncio.wait_for(task, timeout=1.0)
        assert not monitor.is_running
        assert any("lost permission" in m for m in log_messages)
