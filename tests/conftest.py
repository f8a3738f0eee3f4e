# tests/conftest.py
"""Pytest configuration and fixtures"""
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Settings are read at import time; keep the test run independent of a local .env
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-bot-token")

from callrelay.core.domain import CallSnapshot, NotificationRecord  # noqa: E402


class FakeClock:
    """Manually advanced time source for the trackers"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """Notification store double: empty queue, no call data."""
    mock = AsyncMock()
    mock.is_ready = MagicMock(return_value=True)
    mock.fetch_pending_notifications.return_value = []
    mock.fetch_call.return_value = None
    mock.fetch_transcripts.return_value = []
    mock.fetch_dtmf_entries.return_value = []
    mock.fetch_call_inputs.return_value = []
    mock.fetch_latest_call_state.return_value = None
    return mock


@pytest.fixture
def transport():
    mock = AsyncMock()
    mock.send.return_value = {"ok": True, "result": {"message_id": 1}}
    mock.get_me.return_value = {"id": 42, "username": "relay_bot", "first_name": "Relay"}
    return mock


@pytest.fixture
def call_sid():
    return "CA1234567890abcdef"


@pytest.fixture
def chat_id():
    return "-1001234567890"


@pytest.fixture
def make_record(call_sid, chat_id):
    """Factory for pending notification records"""
    counter = {"n": 0}

    def _make(notification_type: str, **overrides) -> NotificationRecord:
        counter["n"] += 1
        fields = {
            "id": str(counter["n"]),
            "call_sid": call_sid,
            "notification_type": notification_type,
            "chat_id": chat_id,
        }
        fields.update(overrides)
        return NotificationRecord(**fields)

    return _make


@pytest.fixture
def make_call(call_sid):
    def _make(**overrides) -> CallSnapshot:
        fields = {"call_sid": call_sid, "phone_number": "+15551234567"}
        fields.update(overrides)
        return CallSnapshot(**fields)

    return _make
