"""Alert lifecycle: creation, dispatch, acknowledgement and resolution."""
import time
import logging
import threading

from alerts.channels import ChannelError
from alerts.conditions import describe_condition
from models.alerts import Alert
from models.enums import AlertStatus, ConditionType
from models.events import generate_id, utc_from_epoch

logger = logging.getLogger("telemon.alerts.manager")

SYSTEM_ACTOR = "system"

TITLE_PREFIXES = {
    ConditionType.ERROR_RATE: "High Error Rate",
    ConditionType.ERROR_COUNT: "Error Threshold Exceeded",
    ConditionType.PERFORMANCE_THRESHOLD: "Performance Degradation",
    ConditionType.UPTIME: "Uptime Degraded",
}


def alert_title(rule):
    prefix = TITLE_PREFIXES.get(rule.condition.type)
    return f"{prefix}: {rule.name}" if prefix else rule.name


def alert_description(rule, context):
    observed = context.get("observed_value")
    observed_text = f", observed {observed:g}" if isinstance(observed, (int, float)) else ""
    return (
        f"Alert condition '{rule.name}' has been triggered "
        f"({describe_condition(rule.condition)}{observed_text}). "
        "Check the monitoring dashboard for details."
    )


class AlertManager:
    """Owns the active-alert set and every alert state transition.

    Each transition is persisted with an upsert so the alerts table always
    mirrors the in-memory state. ``channels`` maps ChannelType to a channel
    object with ``send(alert, config)`` and ``send_recovery(alert, config)``.
    """

    def __init__(self, db, rules_manager, channels=None, clock=time.time):
        self.db = db
        self.rules_manager = rules_manager
        self.channels = channels or {}
        self._clock = clock
        self._active = {}
        self._lock = threading.RLock()

    def load_open_alerts(self):
        """Rebuild the active set from alerts left open by a previous run."""
        with self._lock:
            for alert in self.db.get_open_alerts():
                self._active[alert.id] = alert
            count = len(self._active)
        if count:
            logger.info(f"Restored {count} open alert(s)")
        return count

    # --- Creation ---

    def trigger(self, rule, context=None):
        context = dict(context or {})
        now = self._clock()
        alert = Alert(
            id=generate_id("alert", now),
            rule_id=rule.id,
            title=alert_title(rule),
            description=alert_description(rule, context),
            severity=rule.severity,
            status=AlertStatus.ACTIVE,
            triggered_at=utc_from_epoch(now),
            metadata={
                "rule": rule.name,
                "condition": rule.condition.to_dict(),
                "context": context,
            },
        )

        with self._lock:
            self._active[alert.id] = alert
        self._persist(alert)
        logger.warning(f"Alert triggered [{alert.severity.value.upper()}] {alert.title} ({alert.id})")

        self._dispatch(alert, rule.channels, recovery=False)
        return alert

    # --- Transitions ---

    def acknowledge_alert(self, alert_id, acknowledged_by):
        """Mark an open alert acknowledged. Returns None for unknown ids.

        Raises InvalidTransitionError for an alert that is already resolved.
        """
        with self._lock:
            alert = self._find(alert_id)
            if alert is None:
                return None
            alert.transition(AlertStatus.ACKNOWLEDGED, utc_from_epoch(self._clock()), acknowledged_by)
        self._persist(alert)
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return alert

    def resolve_alert(self, alert_id, resolved_by=None):
        with self._lock:
            alert = self._find(alert_id)
            if alert is None:
                return None
            alert.transition(AlertStatus.RESOLVED, utc_from_epoch(self._clock()), resolved_by)
            self._active.pop(alert_id, None)
        self._persist(alert)
        logger.info(f"Alert {alert_id} resolved by {resolved_by or 'unknown'}")

        rule = self.rules_manager.get_rule(alert.rule_id)
        if rule is not None:
            self._dispatch(alert, rule.channels, recovery=True)
        return alert

    def check_auto_resolution(self, condition_checker):
        """Resolve active alerts whose rule condition no longer holds.

        ``condition_checker(rule)`` returns True while the condition is still
        satisfied. Alerts whose rule has been removed are left alone.
        """
        resolved = []
        for alert in self.get_active_alerts():
            rule = self.rules_manager.get_rule(alert.rule_id)
            if rule is None:
                continue
            try:
                still_firing = condition_checker(rule)
            except Exception as e:
                logger.error(f"Auto-resolution check failed for {alert.id}: {e}")
                continue
            if still_firing:
                continue
            result = self.resolve_alert(alert.id, SYSTEM_ACTOR)
            if result is not None:
                resolved.append(result)
        if resolved:
            logger.info(f"Auto-resolved {len(resolved)} alert(s)")
        return resolved

    # --- Queries ---

    def get_active_alerts(self):
        with self._lock:
            return sorted(self._active.values(), key=lambda a: a.triggered_at)

    def get_alert(self, alert_id):
        with self._lock:
            alert = self._active.get(alert_id)
        return alert or self.db.get_alert(alert_id)

    def get_alert_rules(self):
        return self.rules_manager.get_all_rules()

    def get_alert_history(self, limit=50):
        return self.db.get_alert_history(limit)

    # --- Internals ---

    def _find(self, alert_id):
        alert = self._active.get(alert_id)
        if alert is None:
            alert = self.db.get_alert(alert_id)
        return alert

    def _persist(self, alert):
        try:
            self.db.save_alert(alert)
        except Exception as e:
            logger.error(f"Failed to persist alert {alert.id}: {e}")

    def _dispatch(self, alert, channel_configs, recovery):
        """Send through each enabled channel; one failing never stops the rest."""
        sent = []
        for channel_config in channel_configs:
            if not channel_config.enabled:
                continue
            channel = self.channels.get(channel_config.type)
            if channel is None:
                logger.warning(f"No channel registered for {channel_config.type.value}")
                continue
            try:
                if recovery:
                    ok = channel.send_recovery(alert, channel_config.config)
                else:
                    ok = channel.send(alert, channel_config.config)
            except ChannelError as e:
                logger.warning(f"Skipping {channel_config.type.value} for {alert.id}: {e}")
                continue
            except Exception as e:
                logger.error(f"Failed to send {alert.id} via {channel_config.type.value}: {e}")
                continue
            if ok:
                sent.append(channel_config.type)
        return sent
