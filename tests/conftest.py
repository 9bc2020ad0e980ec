"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone

from models.database import Database
from models.alerts import AlertCondition, AlertRule, MetricSample
from models.enums import Severity
from alerts.events import EventBus


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def t0():
    """Fixed clock for time-dependent tests."""
    return T0


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorded_events(events):
    """Every event published on the ``events`` bus, in order."""
    seen = []
    events.subscribe_all(seen.append)
    return seen


def make_rule(id="cpu_high", metric="cpu_percent", operator=">", threshold=90,
              severity=Severity.HIGH, device_id=None, name=None, **kwargs):
    return AlertRule(
        id=id,
        name=name or id.replace("_", " ").title(),
        severity=severity,
        device_id=device_id,
        condition=AlertCondition(metric=metric, operator=operator, threshold=threshold),
        **kwargs,
    )


def make_sample(device_id="D1", at=T0, **values):
    return MetricSample(device_id=device_id, collected_at=at, values=values)
