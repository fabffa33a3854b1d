"""Shared fixtures for flightrecorder tests."""

import tempfile
from pathlib import Path

import pytest
from loguru import logger

from flightrecorder.daemon.store import CaptureStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test data."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def memory_store():
    """In-memory capture store, closed after the test."""
    store = CaptureStore.open_in_memory()
    yield store
    store.close()


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during the test."""
    messages = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="TRACE")
    yield messages
    logger.remove(handler_id)
