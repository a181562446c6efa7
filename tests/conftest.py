"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.database import Database
from models.enums import ChannelType
from utils.http_client import APIError

START = 1_700_000_000.0


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    os.unlink(db_path)


class FakeClock:
    """Callable epoch-seconds clock that only moves when told to."""

    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSink:
    """Records delivered batches; kinds listed in ``failing`` raise APIError."""

    def __init__(self):
        self.sent = {"errors": [], "metrics": [], "actions": []}
        self.calls = []
        self.failing = set()
        self.base_url = "http://sink.test"

    def send(self, kind, items):
        self.calls.append((kind, list(items)))
        if kind in self.failing:
            raise APIError(f"{kind} endpoint down", status_code=503)
        self.sent[kind].extend(items)

    def send_errors(self, errors):
        self.send("errors", [e.to_dict() for e in errors])

    def sent_ids(self, kind="errors"):
        return [item["id"] for item in self.sent[kind]]


class RecordingChannel:
    """Alert channel double: remembers alerts, optionally raises."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.recovered = []

    def send(self, alert, config):
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append(alert)
        return True

    def send_recovery(self, alert, config):
        if self.fail:
            raise RuntimeError("channel down")
        self.recovered.append(alert)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def recording_channels():
    return {t: RecordingChannel() for t in ChannelType}


@pytest.fixture
def failing_channel():
    return RecordingChannel(fail=True)
