"""Pytest configuration and shared fixtures"""
import pytest

from staysync.clock import VirtualClock
from staysync.config import Settings
from staysync.memory import MemoryStore
from staysync.notifications import Notifier


@pytest.fixture
def test_settings(tmp_path):
    """Test settings override"""
    return Settings(
        base_url="http://staysync.test",
        api_token="test-token",
        feed_poll_interval_seconds=0.01,
        queue_path=str(tmp_path / "queue.json"),
    )


@pytest.fixture
def clock():
    """Virtual clock starting at 2025-01-01 12:00 UTC"""
    return VirtualClock()


@pytest.fixture
def store(clock):
    """In-memory store sharing the virtual clock"""
    return MemoryStore(clock, admins={"admin"})


@pytest.fixture
def notifier():
    return Notifier()
