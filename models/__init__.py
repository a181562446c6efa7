"""Data models."""
from models.enums import (
    AlertSeverity, AlertStatus, ChannelType, Comparison, ConditionType, SecurityEventType, Severity,
)
from models.events import ErrorEvent, MetricSample, SecurityEvent, UserActionEvent
from models.alerts import Alert, AlertChannelConfig, AlertCondition, AlertRule, InvalidTransitionError
