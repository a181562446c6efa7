"""Alert rules loading and management."""
import logging
import threading
import yaml
from pathlib import Path

from models.alerts import AlertChannelConfig, AlertCondition, AlertRule
from models.enums import AlertSeverity, ChannelType, Comparison, ConditionType

logger = logging.getLogger("telemon.alerts.rules")

DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "config" / "alerts_rules.yaml"


def parse_rule(raw):
    """Build an AlertRule from its YAML/dict form. Raises ValueError when invalid."""
    if not raw.get("id"):
        raise ValueError("rule is missing an id")
    cond = raw.get("condition") or {}
    try:
        condition = AlertCondition(
            type=ConditionType(cond["type"]),
            threshold=float(cond.get("threshold", 0)),
            time_window_minutes=float(cond.get("time_window_minutes", 5)),
            comparison=Comparison(cond.get("comparison", "gt")),
            metadata=dict(cond.get("metadata") or {}),
        )
        channels = [
            AlertChannelConfig(
                type=ChannelType(c["type"]),
                config=dict(c.get("config") or {}),
                enabled=c.get("enabled", True),
            )
            for c in raw.get("channels") or []
        ]
        severity = AlertSeverity(raw.get("severity", "warning"))
    except KeyError as e:
        raise ValueError(f"rule {raw['id']} is missing {e}") from e
    if condition.time_window_minutes <= 0:
        raise ValueError(f"rule {raw['id']} needs a positive time window")

    return AlertRule(
        id=raw["id"],
        name=raw.get("name", raw["id"]),
        condition=condition,
        severity=severity,
        channels=channels,
        cooldown_minutes=float(raw.get("cooldown_minutes", 15)),
        enabled=raw.get("enabled", True),
    )


class RulesManager:
    def __init__(self, rules_path=DEFAULT_RULES_PATH):
        self.rules_path = Path(rules_path) if rules_path else None
        self.rules = []
        self._lock = threading.Lock()
        self.load()

    def load(self):
        if self.rules_path is None:
            return
        if not self.rules_path.exists():
            logger.warning(f"Alert rules file not found: {self.rules_path}")
            return
        with open(self.rules_path) as f:
            data = yaml.safe_load(f) or {}
        rules = self._parse_rules(data.get("rules", []))
        with self._lock:
            self.rules = rules
        logger.info(f"Loaded {len(rules)} alert rules")

    def _parse_rules(self, raw_rules):
        rules = []
        seen = set()
        for r in raw_rules:
            try:
                rule = parse_rule(r)
            except ValueError as e:
                logger.warning(f"Invalid alert rule {r.get('id')}: {e}")
                continue
            if rule.id in seen:
                logger.warning(f"Duplicate alert rule id {rule.id}, keeping the first")
                continue
            seen.add(rule.id)
            rules.append(rule)
        return rules

    def add_rule(self, rule):
        with self._lock:
            if any(r.id == rule.id for r in self.rules):
                raise ValueError(f"Alert rule {rule.id} already exists")
            self.rules.append(rule)
        return rule

    def update_rule(self, rule_id, **changes):
        with self._lock:
            for r in self.rules:
                if r.id == rule_id:
                    for key, value in changes.items():
                        if not hasattr(r, key):
                            raise ValueError(f"Unknown rule field: {key}")
                        setattr(r, key, value)
                    return r
        return None

    def remove_rule(self, rule_id):
        with self._lock:
            before = len(self.rules)
            self.rules = [r for r in self.rules if r.id != rule_id]
            return len(self.rules) < before

    def get_enabled_rules(self):
        with self._lock:
            return [r for r in self.rules if r.enabled]

    def get_rule(self, rule_id):
        with self._lock:
            for r in self.rules:
                if r.id == rule_id:
                    return r
        return None

    def get_all_rules(self):
        with self._lock:
            return list(self.rules)
