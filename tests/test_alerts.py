"""Tests for the alert engine, condition matchers, rules manager and lifecycle."""
import pytest
import yaml

from alerts.channels import ChannelError
from alerts.conditions import Evaluation, compare_values, describe_condition
from alerts.engine import AlertEngine
from alerts.manager import AlertManager
from alerts.rules_manager import RulesManager
from models.alerts import AlertChannelConfig, AlertCondition, AlertRule, InvalidTransitionError
from models.enums import AlertSeverity, AlertStatus, ChannelType, Comparison, ConditionType, Severity
from models.events import MetricSample, utc_from_epoch
from monitor.capture import Monitoring
from monitor.fallback import FallbackStore
from monitor.queue import DeliveryQueue
from utils.dispatch import InlineDispatcher


def _rule(rule_id="r1", ctype=ConditionType.ERROR_COUNT, threshold=1, comparison=Comparison.GTE,
          window=5, cooldown=10, severity=AlertSeverity.WARNING, channels=(ChannelType.IN_APP,),
          metadata=None, enabled=True):
    return AlertRule(
        id=rule_id,
        name=rule_id.replace("_", " ").title(),
        condition=AlertCondition(ctype, threshold, window, comparison, metadata or {}),
        severity=severity,
        channels=[AlertChannelConfig(type=c) for c in channels],
        cooldown_minutes=cooldown,
        enabled=enabled,
    )


class Pipeline:
    def __init__(self, db, clock, channels, rules=None, rules_path=None):
        self.db = db
        self.rules = RulesManager(rules_path)
        for r in rules or []:
            self.rules.add_rule(r)
        self.manager = AlertManager(db, self.rules, channels, clock=clock)
        self.manager.load_open_alerts()
        self.engine = AlertEngine(self.rules, db, self.manager, clock=clock)
        self.engine.restore_cooldowns(self.manager.get_active_alerts())
        self.monitoring = Monitoring(
            DeliveryQueue(None, FallbackStore(), clock=clock),
            alert_engine=self.engine, dispatcher=InlineDispatcher(), db=db, clock=clock,
        )

    def error(self, severity=Severity.MEDIUM):
        event = self.monitoring.build_error_event("boom", "contacts", severity)
        self.db.save_error_event(event)
        return self.engine.process_error(event)

    def metric(self, name, value, clock):
        sample = MetricSample(name, value, utc_from_epoch(clock()))
        self.db.save_metric_samples([sample])
        return self.engine.process_metrics([sample])


@pytest.fixture
def make_pipeline(temp_db, clock, recording_channels):
    def make(rules=None, rules_path=None, channels=None):
        return Pipeline(temp_db, clock, channels or recording_channels, rules, rules_path)
    return make


# ── End-to-end scenario with the shipped rules ──────────

def test_high_error_rate_alerts_once(temp_db, clock, recording_channels):
    rules = RulesManager()
    manager = AlertManager(temp_db, rules, recording_channels, clock=clock)
    engine = AlertEngine(rules, temp_db, manager, clock=clock)
    monitoring = Monitoring(DeliveryQueue(None, FallbackStore(), clock=clock), alert_engine=engine,
                            dispatcher=InlineDispatcher(), db=temp_db, clock=clock)

    for i in range(11):
        monitoring.report_error(f"save failed {i}", "contacts", Severity.MEDIUM)
        clock.advance(10)

    [alert] = manager.get_active_alerts()
    assert alert.rule_id == "high_error_rate"
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.title == "High Error Rate: High Error Rate"
    assert [a.id for a in recording_channels[ChannelType.EMAIL].sent] == [alert.id]
    assert [a.id for a in recording_channels[ChannelType.SMS].sent] == [alert.id]
    assert recording_channels[ChannelType.IN_APP].sent == []

    clock.advance(60)
    for i in range(5):
        monitoring.report_error(f"save failed again {i}", "contacts", Severity.MEDIUM)
    assert len(manager.get_active_alerts()) == 1
    assert len(recording_channels[ChannelType.EMAIL].sent) == 1


def test_shipped_rules_loaded():
    rules = RulesManager()
    by_id = {r.id: r for r in rules.get_all_rules()}
    assert set(by_id) == {"high_error_rate", "critical_errors", "slow_api_response"}

    high = by_id["high_error_rate"]
    assert high.condition.type == ConditionType.ERROR_RATE
    assert high.condition.threshold == 10
    assert high.condition.time_window_minutes == 5
    assert [c.type for c in high.channels] == [ChannelType.EMAIL, ChannelType.SMS]
    assert high.cooldown_minutes == 15

    critical = by_id["critical_errors"]
    assert critical.condition.comparison == Comparison.GTE
    assert critical.condition.metadata == {"severity": "critical"}

    slow = by_id["slow_api_response"]
    assert slow.severity == AlertSeverity.WARNING
    assert slow.condition.metadata["metric_name"] == "api_call_duration"


# ── Engine / conditions ──────────────────────────────────

def test_cooldown_boundary(make_pipeline, clock):
    p = make_pipeline([_rule(cooldown=10)])
    assert len(p.error()) == 1
    clock.advance(599)
    assert p.error() == []
    assert p.engine.is_in_cooldown("r1")
    clock.advance(1)
    assert len(p.error()) == 1


def test_cooldown_carries_over_to_new_pipeline(make_pipeline, clock):
    first = make_pipeline([_rule(cooldown=10)])
    [alert] = first.error()

    clock.advance(60)
    second = make_pipeline([_rule(cooldown=10)])
    assert second.engine.is_in_cooldown("r1")
    assert second.engine.cooldown_remaining("r1") == pytest.approx(540)
    assert second.error() == []
    assert [a.id for a in second.manager.get_active_alerts()] == [alert.id]

    clock.advance(540)
    assert len(second.error()) == 1


def test_restore_cooldowns_ignores_unknown_rules(make_pipeline, temp_db, clock):
    p = make_pipeline([_rule("gone")])
    p.error()
    p.rules.remove_rule("gone")
    fresh = AlertEngine(p.rules, temp_db, p.manager, clock=clock)
    assert fresh.restore_cooldowns(p.manager.get_active_alerts()) == 0
    assert not fresh.is_in_cooldown("gone")


def test_cooldown_is_per_rule(make_pipeline):
    p = make_pipeline([_rule("a"), _rule("b")])
    assert {a.rule_id for a in p.error()} == {"a", "b"}
    assert p.error() == []


def test_error_count_respects_severity(make_pipeline):
    p = make_pipeline([_rule(threshold=2, metadata={"severity": "critical"})])
    for _ in range(5):
        assert p.error(Severity.MEDIUM) == []
    assert p.error(Severity.CRITICAL) == []
    assert len(p.error(Severity.CRITICAL)) == 1


def test_errors_outside_window_not_counted(make_pipeline, clock):
    p = make_pipeline([_rule(threshold=3, window=1)])
    p.error()
    p.error()
    clock.advance(61)
    assert p.error() == []


def test_error_rate_per_minute(make_pipeline):
    p = make_pipeline([_rule(ctype=ConditionType.ERROR_RATE, threshold=2, comparison=Comparison.GT,
                             metadata={"rate_unit": "minute"})])
    results = [p.error() for _ in range(11)]
    assert all(r == [] for r in results[:10])
    assert results[10][0].metadata["context"]["observed_value"] == pytest.approx(2.2)


def test_performance_threshold_averages_window(make_pipeline, clock):
    p = make_pipeline([_rule(ctype=ConditionType.PERFORMANCE_THRESHOLD, threshold=5000,
                             comparison=Comparison.GT,
                             metadata={"metric_name": "api_call_duration"})])
    assert p.metric("api_call_duration", 3000, clock) == []
    clock.advance(1)
    assert p.metric("api_call_duration", 6000, clock) == []
    clock.advance(1)
    assert p.metric("page_load", 99999, clock) == []
    [alert] = p.metric("api_call_duration", 9000, clock)
    assert alert.title == "Performance Degradation: R1"


def test_errors_do_not_evaluate_metric_rules(make_pipeline, clock):
    p = make_pipeline([_rule(ctype=ConditionType.PERFORMANCE_THRESHOLD, threshold=0,
                             comparison=Comparison.GT, metadata={"metric_name": "x"})])
    p.metric("x", 5, clock)
    p.engine.reset_cooldown("r1")
    assert p.error() == []


def test_uptime_defaults_to_uptime_metric(make_pipeline, clock):
    p = make_pipeline([_rule(ctype=ConditionType.UPTIME, threshold=99, comparison=Comparison.LT)])
    assert p.metric("uptime", 100, clock) == []
    [alert] = p.metric("uptime", 90, clock)
    assert alert.title == "Uptime Degraded: R1"


def test_custom_matcher(make_pipeline):
    p = make_pipeline([_rule(ctype=ConditionType.CUSTOM, metadata={"matcher": "vip_user"})])
    assert p.error() == []
    p.engine.register_matcher("vip_user", lambda cond, ctx: ctx.event is not None
                              and ctx.event.context == "contacts")
    assert len(p.error()) == 1


def test_custom_matcher_may_return_evaluation(make_pipeline):
    p = make_pipeline([_rule(ctype=ConditionType.CUSTOM, metadata={"matcher": "m"})])
    p.engine.register_matcher("m", lambda cond, ctx: Evaluation(True, 7.0))
    [alert] = p.error()
    assert alert.metadata["context"]["observed_value"] == 7.0


def test_disabled_rule_ignored(make_pipeline):
    p = make_pipeline([_rule(enabled=False)])
    assert p.error() == []


def test_broken_matcher_does_not_stop_other_rules(make_pipeline):
    p = make_pipeline([
        _rule("bad", ctype=ConditionType.CUSTOM, metadata={"matcher": "explodes"}),
        _rule("good"),
    ])

    def explodes(cond, ctx):
        raise RuntimeError("bug")

    p.engine.register_matcher("explodes", explodes)
    assert [a.rule_id for a in p.error()] == ["good"]


def test_compare_values():
    assert compare_values(5, 5, Comparison.GTE)
    assert not compare_values(5, 5, Comparison.GT)
    assert compare_values(4, 5, "lt")
    assert compare_values(5, 5, Comparison.EQ)
    assert not compare_values(None, 5, Comparison.LT)


def test_describe_condition():
    cond = AlertCondition(ConditionType.ERROR_RATE, 10, 5, Comparison.GT)
    assert describe_condition(cond) == "error_rate > 10 over 5m"


def test_test_rules_ignores_cooldown(make_pipeline):
    p = make_pipeline([_rule()])
    p.error()
    [result] = p.engine.test_rules()
    assert result["would_fire"] is True
    assert result["in_cooldown"] is True
    assert result["current_value"] == 1


# ── Lifecycle ────────────────────────────────────────────

def test_trigger_builds_and_persists(make_pipeline, temp_db):
    p = make_pipeline([_rule("critical_errors", threshold=1)])
    [alert] = p.error()
    assert alert.id.startswith("alert_")
    assert alert.title == "Error Threshold Exceeded: Critical Errors"
    assert alert.description.startswith("Alert condition 'Critical Errors' has been triggered")
    assert alert.metadata["rule"] == "Critical Errors"
    assert alert.metadata["condition"]["type"] == "error_count"
    assert alert.metadata["context"]["error_context"] == "contacts"

    stored = temp_db.get_alert(alert.id)
    assert stored.status == AlertStatus.ACTIVE
    assert stored.rule_id == "critical_errors"


def test_acknowledge_then_resolve(make_pipeline, temp_db, recording_channels):
    p = make_pipeline([_rule()])
    [alert] = p.error()

    acked = p.manager.acknowledge_alert(alert.id, "dana")
    assert acked.status == AlertStatus.ACKNOWLEDGED
    assert acked.acknowledged_by == "dana"
    assert temp_db.get_alert(alert.id).status == AlertStatus.ACKNOWLEDGED
    assert len(p.manager.get_active_alerts()) == 1

    resolved = p.manager.resolve_alert(alert.id, "dana")
    assert resolved.status == AlertStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert p.manager.get_active_alerts() == []
    assert temp_db.get_alert(alert.id).resolved_by == "dana"
    assert recording_channels[ChannelType.IN_APP].recovered == [resolved]


def test_resolved_alert_cannot_be_acknowledged(make_pipeline):
    p = make_pipeline([_rule()])
    [alert] = p.error()
    p.manager.resolve_alert(alert.id)
    with pytest.raises(InvalidTransitionError):
        p.manager.acknowledge_alert(alert.id, "dana")


def test_unknown_alert_returns_none(make_pipeline):
    p = make_pipeline()
    assert p.manager.acknowledge_alert("alert_nope", "x") is None
    assert p.manager.resolve_alert("alert_nope") is None


def test_failing_channel_does_not_block_others(make_pipeline, recording_channels, failing_channel):
    channels = dict(recording_channels)
    channels[ChannelType.EMAIL] = failing_channel
    p = make_pipeline([_rule(channels=(ChannelType.EMAIL, ChannelType.SLACK, ChannelType.IN_APP))],
                      channels=channels)
    [alert] = p.error()
    assert channels[ChannelType.SLACK].sent == [alert]
    assert channels[ChannelType.IN_APP].sent == [alert]


def test_misconfigured_and_disabled_channels_skipped(make_pipeline, recording_channels):
    class Unconfigured:
        def send(self, alert, config):
            raise ChannelError("no url")

    channels = dict(recording_channels)
    channels[ChannelType.WEBHOOK] = Unconfigured()
    rule = _rule(channels=(ChannelType.WEBHOOK, ChannelType.SLACK, ChannelType.IN_APP))
    rule.channels[1].enabled = False
    p = make_pipeline([rule], channels=channels)
    [alert] = p.error()
    assert recording_channels[ChannelType.SLACK].sent == []
    assert recording_channels[ChannelType.IN_APP].sent == [alert]


def test_auto_resolution(make_pipeline, clock, recording_channels):
    p = make_pipeline([_rule(threshold=2, window=5)])
    p.error()
    [alert] = p.error()

    assert p.engine.check_auto_resolution() == []
    clock.advance(301)
    [resolved] = p.engine.check_auto_resolution()
    assert resolved.id == alert.id
    assert resolved.resolved_by == "system"
    assert recording_channels[ChannelType.IN_APP].recovered == [resolved]
    assert p.manager.get_active_alerts() == []


def test_auto_resolution_skips_removed_rules(make_pipeline, clock):
    p = make_pipeline([_rule()])
    p.error()
    p.rules.remove_rule("r1")
    clock.advance(3600)
    assert p.engine.check_auto_resolution() == []
    assert len(p.manager.get_active_alerts()) == 1


def test_open_alerts_restored(make_pipeline, temp_db, clock):
    p = make_pipeline([_rule()])
    [alert] = p.error()

    fresh = AlertManager(temp_db, p.rules, {}, clock=clock)
    assert fresh.load_open_alerts() == 1
    assert fresh.get_active_alerts()[0].id == alert.id


def test_history_newest_first(make_pipeline, clock):
    p = make_pipeline([_rule(cooldown=0)])
    first = p.error()[0]
    clock.advance(1)
    second = p.error()[0]
    assert [a.id for a in p.manager.get_alert_history()] == [second.id, first.id]


# ── Rules manager ────────────────────────────────────────

def test_invalid_rules_skipped(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(yaml.safe_dump({"rules": [
        {"id": "ok", "condition": {"type": "error_count", "threshold": 1}},
        {"id": "bad_type", "condition": {"type": "nonsense"}},
        {"id": "no_condition"},
        {"id": "ok", "condition": {"type": "error_rate"}},
        {"id": "bad_window", "condition": {"type": "error_count", "time_window_minutes": 0}},
    ]}))
    rules = RulesManager(path)
    assert [r.id for r in rules.get_all_rules()] == ["ok"]


def test_missing_rules_file(tmp_path):
    assert RulesManager(tmp_path / "missing.yaml").get_all_rules() == []


def test_add_update_remove():
    rules = RulesManager(None)
    rules.add_rule(_rule("x"))
    with pytest.raises(ValueError):
        rules.add_rule(_rule("x"))
    rules.update_rule("x", enabled=False)
    assert rules.get_enabled_rules() == []
    with pytest.raises(ValueError):
        rules.update_rule("x", nonsense=1)
    assert rules.remove_rule("x") is True
    assert rules.remove_rule("x") is False
    assert rules.get_rule("x") is None
