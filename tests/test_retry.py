"""Tests for the retry executor."""
import pytest
from unittest.mock import MagicMock

from models.enums import Severity
from monitor.retry import retrying, with_retry


class Flaky:
    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"boom {self.calls}")
        return self.result


def test_success_first_try_records_nothing():
    monitoring = MagicMock()
    op = Flaky(0)
    assert with_retry(op, "load contacts", monitoring=monitoring, sleep=lambda s: None) == "ok"
    assert op.calls == 1
    monitoring.report_error.assert_not_called()
    monitoring.record_metric.assert_not_called()


def test_always_failing_runs_max_attempts_and_reraises():
    monitoring = MagicMock()
    sleeps = []
    op = Flaky(10)

    with pytest.raises(ConnectionError, match="boom 3"):
        with_retry(op, "save contact", max_attempts=3, initial_backoff_ms=1000,
                   monitoring=monitoring, sleep=sleeps.append)

    assert op.calls == 3
    assert sleeps == [1.0, 2.0]
    assert monitoring.report_error.call_count == 2
    ctx_names = [c[0][1] for c in monitoring.report_error.call_args_list]
    assert ctx_names == ["save contact - Attempt 1 failed", "save contact - Attempt 2 failed"]
    assert monitoring.report_error.call_args_list[1][0][2] == Severity.MEDIUM
    assert monitoring.report_error.call_args_list[1][0][3]["next_retry_in_ms"] == 2000

    monitoring.build_error_event.assert_called_once()
    args = monitoring.build_error_event.call_args[0]
    assert args[1] == "save contact - Final attempt failed"
    assert args[2] == Severity.HIGH
    assert args[3]["attempts"] == 3
    assert args[3]["total_time_ms"] == 3000
    monitoring.escalate.assert_called_once_with(monitoring.build_error_event.return_value)


def test_success_after_one_failure_records_attempt_count():
    monitoring = MagicMock()
    op = Flaky(1)
    result = with_retry(op, "geocode", monitoring=monitoring, sleep=lambda s: None)
    assert result == "ok"
    monitoring.record_metric.assert_called_once_with("operation_retry_success", 2, {"context": "geocode"})


def test_single_attempt_does_not_sleep():
    sleeps = []
    with pytest.raises(ConnectionError):
        with_retry(Flaky(1), "once", max_attempts=1, sleep=sleeps.append)
    assert sleeps == []


def test_invalid_attempts():
    with pytest.raises(ValueError):
        with_retry(lambda: None, "x", max_attempts=0)


def test_decorator_form():
    monitoring = MagicMock()
    calls = []

    @retrying("sync", max_attempts=2, monitoring=monitoring, sleep=lambda s: None)
    def sync(value):
        calls.append(value)
        if len(calls) == 1:
            raise TimeoutError("slow")
        return value * 2

    assert sync(21) == 42
    assert calls == [21, 21]
    monitoring.record_metric.assert_called_once()
