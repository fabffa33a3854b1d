"""Tests for daemon wiring and logging setup."""

import asyncio

import pytest
from loguru import logger

from flightrecorder.daemon.config import Config
from flightrecorder.daemon.main import FlightRecorderDaemon, build_monitors, setup_logging
from flightrecorder.daemon.monitors import ClipboardMonitor, MonitorSettings, MonitorType


@pytest.fixture
def test_config(temp_dir):
    """Create test configuration."""
    return Config(
        storage={"database_path": str(temp_dir / "captures.db")},
        logging={"file": None},
    )


def test_build_monitors_respects_flags(test_config):
    monitors = build_monitors(test_config)
    assert [m.monitor_type for m in monitors] == [MonitorType.CLIPBOARD, MonitorType.ACCESSIBILITY]
    assert monitors[0].settings.poll_interval == 0.5

    test_config.capture.text_field_enabled = False
    assert [m.monitor_type for m in build_monitors(test_config)] == [MonitorType.CLIPBOARD]


@pytest.mark.asyncio
async def test_daemon_start_status_stop(test_config):
    clipboard = {"value": "captured by daemon"}
    monitor = ClipboardMonitor(
        MonitorSettings(poll_interval=0.02),
        read_clipboard=lambda: clipboard["value"],
        foreground_app=lambda: "Editor",
    )
    daemon = FlightRecorderDaemon(test_config, monitors=[monitor])

    await daemon.start()
    for _ in range(100):
        if daemon.store.count():
            break
        await asyncio.sleep(0.01)

    status = daemon.get_status()
    assert status["status"] == "running"
    assert status["captures"]["stored"] == 1
    assert status["storage"]["total_captures"] == 1
    assert status["monitors"][0]["monitor_type"] == "clipboard"
    assert status["process"]["memory_mb"] > 0

    await daemon.stop()
    assert not daemon.coordinator.is_running
    assert not daemon.retention.running


def test_setup_logging_file_sink(temp_dir):
    log_file = temp_dir / "logs" / "daemon.log"

    setup_logging("INFO", log_file)
    logger.debug("written to file only")
    logger.remove()

    assert log_file.exists()
    assert "written to file only" in log_file.read_text()
