"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone

from models.database import Database
from models.alerts import AlertRule
from models.enums import Operator
from utils.clock import ManualClock


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


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


class RecordingSink:
    """MessageSink that remembers every delivery. Targets listed in ``fail`` raise."""

    def __init__(self, fail=(), refuse=()):
        self.internal = []
        self.emails = []
        self.fail = set(fail)
        self.refuse = set(refuse)

    def _check(self, target):
        if target in self.fail:
            raise ConnectionError(f"cannot reach {target}")
        return target not in self.refuse

    def deliver_internal(self, recipient, message):
        if not self._check(recipient.id):
            return False
        self.internal.append((recipient, message))
        return True

    def deliver_email(self, address, message):
        if not self._check(address):
            return False
        self.emails.append((address, message))
        return True

    @property
    def severities(self):
        return [m.severity.value for _, m in self.internal + self.emails]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_rule():
    """Build an unsaved rule with sensible defaults."""
    def _make(**kwargs):
        defaults = dict(
            scope="dash-1",
            metric_key="active_users",
            operator=Operator.GT,
            warning_threshold=80.0,
            critical_threshold=95.0,
        )
        defaults.update(kwargs)
        return AlertRule(**defaults)
    return _make


@pytest.fixture
def test_config(tmp_path):
    """Configuration dict pointing every file at the temp directory."""
    from config import load_config
    config = load_config()
    config["database"]["path"] = str(tmp_path / "kpiwatch.db")
    config["notifications"]["file_log_path"] = str(tmp_path / "notifications.jsonl")
    config["notifications"]["recipients"] = {
        "dash-1": {"manager": [{"id": "u1", "address": "boss@example.com", "name": "Boss"}]},
    }
    config["notifications"]["admins"] = [{"id": "admin", "address": "admin@example.com"}]
    return config


@pytest.fixture
def sink_factory():
    return RecordingSink
