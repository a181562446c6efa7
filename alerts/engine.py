"""Alert evaluation engine."""
import time
import logging
import threading

from alerts.conditions import (
    ERROR_CONDITIONS, METRIC_CONDITIONS, EvaluationContext, describe_condition, evaluate_condition,
)

logger = logging.getLogger("telemon.alerts.engine")


class AlertEngine:
    """Matches incoming errors and metric batches against the enabled rules.

    Events reach the engine already persisted by the capture surface, so
    window queries see them. A rule that matches outside its cooldown asks
    the manager for a new alert, and the cooldown for that rule starts at the
    trigger time.
    """

    def __init__(self, rules_manager, db, manager, clock=time.time):
        self.rules_manager = rules_manager
        self.db = db
        self.manager = manager
        self._clock = clock
        self._cooldown_until = {}
        self._lock = threading.Lock()
        self.custom_matchers = {}

    def register_matcher(self, name, matcher):
        """Make ``matcher(condition, ctx)`` available to ``custom`` rules as ``name``."""
        self.custom_matchers[name] = matcher

    # --- Entry points ---

    def process_error(self, event):
        return self._evaluate(
            ERROR_CONDITIONS,
            event=event,
            context={
                "type": "error",
                "error_id": event.id,
                "error_context": event.context,
                "severity": event.severity.value,
            },
        )

    def process_metrics(self, samples):
        samples = list(samples)
        if not samples:
            return []
        return self._evaluate(
            METRIC_CONDITIONS,
            samples=samples,
            context={"type": "metrics", "metric_names": sorted({s.name for s in samples})},
        )

    def _evaluate(self, kinds, event=None, samples=None, context=None):
        triggered = []
        now = self._clock()

        for rule in self.rules_manager.get_enabled_rules():
            if rule.condition.type not in kinds:
                continue

            ctx = EvaluationContext(self.db, now, event, samples, self.custom_matchers)
            try:
                evaluation = evaluate_condition(rule.condition, ctx)
            except Exception as e:
                logger.error(f"Rule {rule.id} evaluation failed: {e}")
                continue
            if not evaluation.matched:
                continue

            with self._lock:
                if self.is_in_cooldown(rule.id, now):
                    logger.debug(f"Rule {rule.id} matched but is cooling down")
                    continue
                self._cooldown_until[rule.id] = now + rule.cooldown_seconds

            alert_context = dict(context or {})
            alert_context["observed_value"] = evaluation.value
            try:
                triggered.append(self.manager.trigger(rule, alert_context))
            except Exception as e:
                logger.error(f"Failed to trigger alert for rule {rule.id}: {e}")

        return triggered

    # --- Cooldown ---

    def is_in_cooldown(self, rule_id, now=None):
        until = self._cooldown_until.get(rule_id)
        if until is None:
            return False
        return (now if now is not None else self._clock()) < until

    def cooldown_remaining(self, rule_id):
        until = self._cooldown_until.get(rule_id)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    def reset_cooldown(self, rule_id):
        with self._lock:
            self._cooldown_until.pop(rule_id, None)

    def restore_cooldowns(self, alerts):
        """Carry cooldowns over from alerts a previous run left open."""
        restored = 0
        with self._lock:
            for alert in alerts:
                rule = self.rules_manager.get_rule(alert.rule_id)
                if rule is None or alert.triggered_at is None:
                    continue
                until = alert.triggered_at.timestamp() + rule.cooldown_seconds
                if until > self._cooldown_until.get(rule.id, 0):
                    self._cooldown_until[rule.id] = until
                    restored += 1
        return restored

    # --- Re-checks ---

    def is_condition_satisfied(self, rule):
        """Re-evaluate ``rule`` against stored history only (auto-resolution)."""
        ctx = EvaluationContext(self.db, self._clock(), custom_matchers=self.custom_matchers)
        return evaluate_condition(rule.condition, ctx).matched

    def check_auto_resolution(self):
        return self.manager.check_auto_resolution(self.is_condition_satisfied)

    def test_rules(self):
        """Evaluate ALL rules against stored history, ignoring cooldowns."""
        now = self._clock()
        results = []
        for rule in self.rules_manager.get_all_rules():
            ctx = EvaluationContext(self.db, now, custom_matchers=self.custom_matchers)
            try:
                evaluation = evaluate_condition(rule.condition, ctx)
            except Exception as e:
                logger.warning(f"Rule {rule.id} evaluation failed: {e}")
                evaluation = None
            results.append({
                "rule_id": rule.id,
                "name": rule.name,
                "condition": describe_condition(rule.condition),
                "current_value": evaluation.value if evaluation else None,
                "would_fire": bool(evaluation and evaluation.matched),
                "in_cooldown": self.is_in_cooldown(rule.id, now),
                "severity": rule.severity.value,
                "enabled": rule.enabled,
            })
        return results
