"""
pytest configuration for chat link tests.

This file is automatically loaded by pytest before test collection begins.
It puts src/ and the project root on the path so tests run from a plain
checkout, and provides the shared fixtures.
"""

import sys
import os

# Calculate paths relative to this file's location
tests_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(tests_dir)
src_dir = os.path.join(project_root, 'src')

for path in (src_dir, project_root):
    if path not in sys.path:
        sys.path.insert(0, path)

import pytest
import RNS

from btchat import ChatService
from tests.mock_transport import MockTransport, NotificationRecorder

# Keep test output readable; failures still show up in assertions
RNS.loglevel = RNS.LOG_WARNING


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def transport():
    """In-memory transport whose blocking calls really block."""
    return MockTransport()


@pytest.fixture
def service(transport):
    """ChatService on the mock transport, detached after the test."""
    chat = ChatService(transport, {"name": "Test", "accept_retry_delay": 0.01})
    yield chat
    chat.detach()


@pytest.fixture
def recorder(service):
    """Records every notification the service delivers."""
    return NotificationRecorder(service)


@pytest.fixture
def sample_peers():
    """Bluetooth addresses used across tests."""
    return {
        "a": "AA:AA:AA:AA:AA:01",
        "b": "BB:BB:BB:BB:BB:02",
        "c": "CC:CC:CC:CC:CC:03",
    }
