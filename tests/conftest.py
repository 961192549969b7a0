"""Shared test fixtures for herald tests."""

import asyncio
from datetime import datetime, timezone

import pytest

from herald import db
from herald.channels import ChannelSender, SendResult
from herald.config import Config, UserConfig
from herald.events import Channel, ProactiveLevel
from herald.generator import GeneratedMessage, GenerationError, TextGenerator


class StubGenerator(TextGenerator):
    """Deterministic generator that records calls and can be told to fail."""

    def __init__(self, title="Stub Title", body="Stub **body** text", fail_times=0):
        self.title = title
        self.body = body
        self.fail_times = fail_times
        self.calls = []

    async def generate(self, event_type, context):
        self.calls.append((event_type, context))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise GenerationError("generator unavailable")
        return GeneratedMessage(title=self.title, body=self.body)


class FakeSender(ChannelSender):
    """Channel transport double: records sends, can fail, raise, or hang."""

    def __init__(self, channel, fail_with=None, raise_exc=None, delay=0.0):
        self.channel = Channel(channel)
        self.fail_with = fail_with
        self.raise_exc = raise_exc
        self.delay = delay
        self.sent = []

    async def send(self, destination, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_exc is not None:
            raise self.raise_exc
        self.sent.append((destination, message))
        if self.fail_with:
            return SendResult(ok=False, error=self.fail_with)
        return SendResult(ok=True)


@pytest.fixture
def now():
    """A fixed instant: Wednesday 2025-01-15 15:00 UTC (10:00 America/New_York)."""
    return datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(tmp_path):
    """Factory fixture that creates Config instances with tmp paths."""
    def _make_config(**overrides):
        defaults = {
            "db_path": tmp_path / "test.db",
            "lock_path": tmp_path / "scheduler.lock",
        }
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


@pytest.fixture
def make_user_config():
    """Factory fixture that creates UserConfig instances with defaults."""
    def _make_user_config(**overrides):
        defaults = {
            "display_name": "Test User",
            "email_addresses": [],
            "timezone": "UTC",
            "digests": [],
        }
        defaults.update(overrides)
        return UserConfig(**defaults)
    return _make_user_config


@pytest.fixture
def make_prefs():
    """Factory fixture for UserPreferences with proactive notifications on."""
    def _make_prefs(user_id="alice", **overrides):
        defaults = {
            "user_id": user_id,
            "proactive_enabled": True,
            "proactive_level": ProactiveLevel.HIGH,
            "email_enabled": True,
            "email_address": f"{user_id}@example.com",
        }
        defaults.update(overrides)
        return db.UserPreferences(**defaults)
    return _make_prefs


@pytest.fixture
def stub_generator():
    return StubGenerator()


@pytest.fixture
def fake_senders():
    """One healthy fake transport per external channel."""
    return {
        channel: FakeSender(channel)
        for channel in (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP, Channel.TELEGRAM)
    }


@pytest.fixture
def make_sender():
    """Factory fixture for FakeSender transports."""
    return FakeSender


@pytest.fixture
def make_generator():
    """Factory fixture for StubGenerator instances."""
    return StubGenerator
