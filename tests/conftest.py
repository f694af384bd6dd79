"""
Pytest fixtures: an in-memory reactor and a log event collector.
"""
import pytest
from twisted.internet.testing import MemoryReactor
from twisted.logger import formatEvent, globalLogPublisher


@pytest.fixture
def reactor():
    return MemoryReactor()


@pytest.fixture
def log_events():
    events = []
    observer = events.append
    globalLogPublisher.addObserver(observer)
    yield events
    globalLogPublisher.removeObserver(observer)


@pytest.fixture
def log_messages(log_events):
    """Formatted text of every captured log event."""
    def messages():
        return [formatEvent(e) for e in log_events]
    return messages
