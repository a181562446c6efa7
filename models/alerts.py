"""Dataclasses for alert rules, conditions, channels and alerts."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import (
    ALLOWED_TRANSITIONS, AlertSeverity, AlertStatus, ChannelType, Comparison, ConditionType,
)


class InvalidTransitionError(ValueError):
    """Raised when an alert is moved to a status its current status does not allow."""


@dataclass
class AlertCondition:
    type: ConditionType = ConditionType.ERROR_COUNT
    threshold: float = 0.0
    time_window_minutes: float = 5.0
    comparison: Comparison = Comparison.GT
    metadata: dict = field(default_factory=dict)

    @property
    def window_seconds(self):
        return self.time_window_minutes * 60

    def to_dict(self):
        return {
            "type": self.type.value,
            "threshold": self.threshold,
            "time_window_minutes": self.time_window_minutes,
            "comparison": self.comparison.value,
            "metadata": dict(self.metadata),
        }


@dataclass
class AlertChannelConfig:
    type: ChannelType = ChannelType.IN_APP
    config: dict = field(default_factory=dict)
    enabled: bool = True


@dataclass
class AlertRule:
    id: str = ""
    name: str = ""
    condition: AlertCondition = field(default_factory=AlertCondition)
    severity: AlertSeverity = AlertSeverity.WARNING
    channels: list = field(default_factory=list)
    cooldown_minutes: float = 15.0
    enabled: bool = True

    @property
    def cooldown_seconds(self):
        return self.cooldown_minutes * 60


@dataclass
class Alert:
    id: str = ""
    rule_id: str = ""
    title: str = ""
    description: str = ""
    severity: AlertSeverity = AlertSeverity.WARNING
    status: AlertStatus = AlertStatus.ACTIVE
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_open(self):
        return self.status != AlertStatus.RESOLVED

    def transition(self, status, when, who=None):
        """Move to ``status`` stamping the matching timestamp and actor."""
        status = AlertStatus(status)
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Alert {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status == AlertStatus.ACKNOWLEDGED:
            self.acknowledged_at = when
            self.acknowledged_by = who
        elif status == AlertStatus.RESOLVED:
            self.resolved_at = when
            self.resolved_by = who

    def to_dict(self):
        def _iso(ts):
            return ts.isoformat() if ts else None

        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "status": self.status.value,
            "triggered_at": _iso(self.triggered_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, d):
        def _dt(value):
            if not value:
                return None
            parsed = datetime.fromisoformat(value)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

        return cls(
            id=d["id"],
            rule_id=d["rule_id"],
            title=d.get("title", ""),
            description=d.get("description", ""),
            severity=AlertSeverity(d.get("severity", "warning")),
            status=AlertStatus(d.get("status", "active")),
            triggered_at=_dt(d.get("triggered_at")),
            acknowledged_at=_dt(d.get("acknowledged_at")),
            acknowledged_by=d.get("acknowledged_by"),
            resolved_at=_dt(d.get("resolved_at")),
            resolved_by=d.get("resolved_by"),
            metadata=d.get("metadata") or {},
        )
