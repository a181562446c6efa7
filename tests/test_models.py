"""Tests for event and alert dataclasses."""
import dataclasses
import re
import pytest
from datetime import datetime, timezone

from models.alerts import Alert, AlertCondition, InvalidTransitionError
from models.enums import AlertStatus, ConditionType, Severity
from models.events import ErrorEvent, generate_id, utc_from_epoch


def test_generate_id_shape():
    assert re.fullmatch(r"err_1700000000500_[a-z0-9]{9}", generate_id("err", 1_700_000_000.5))
    assert generate_id("alert") != generate_id("alert")


def test_error_event_is_immutable():
    event = ErrorEvent(id="err_1", message="m", context="c")
    with pytest.raises(dataclasses.FrozenInstanceError):
        event.message = "changed"


def test_error_event_wire_shape():
    event = ErrorEvent(id="err_1", message="bad", context="import", severity=Severity.HIGH,
                       error_type="ValueError", timestamp=utc_from_epoch(0), user_id="u1",
                       metadata={"row": 4})
    d = event.to_dict()
    assert d["error"] == {"type": "ValueError", "message": "bad"}
    assert d["severity"] == "high"
    assert d["userId"] == "u1"
    assert d["timestamp"] == "1970-01-01T00:00:00+00:00"
    assert ErrorEvent.from_dict(d) == event


def test_from_dict_accepts_z_suffix():
    event = ErrorEvent.from_dict({"id": "err_2", "error": {"message": "x"},
                                  "timestamp": "2024-03-01T10:00:00Z"})
    assert event.timestamp == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert event.severity == Severity.MEDIUM


def test_alert_transitions():
    alert = Alert(id="a", rule_id="r")
    now = datetime.now(timezone.utc)
    alert.transition(AlertStatus.ACKNOWLEDGED, now, "dana")
    assert alert.is_open
    assert alert.acknowledged_at == now
    alert.transition("resolved", now, "system")
    assert not alert.is_open
    with pytest.raises(InvalidTransitionError):
        alert.transition(AlertStatus.ACKNOWLEDGED, now, "dana")
    with pytest.raises(InvalidTransitionError):
        alert.transition(AlertStatus.ACTIVE, now)


def test_acknowledged_cannot_go_back_to_active():
    alert = Alert(id="a", rule_id="r", status=AlertStatus.ACKNOWLEDGED)
    with pytest.raises(InvalidTransitionError):
        alert.transition(AlertStatus.ACTIVE, datetime.now(timezone.utc))


def test_condition_window_seconds():
    assert AlertCondition(ConditionType.ERROR_RATE, 10, 5).window_seconds == 300
