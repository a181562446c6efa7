"""Dataclasses for captured telemetry events."""
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import Severity, SecurityEventType

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix, now=None):
    """Build ids shaped like ``err_1718000000000_k3j9x0a2b``."""
    millis = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{millis}_{suffix}"


def utc_from_epoch(seconds):
    return datetime.fromtimestamp(seconds, timezone.utc)


def _parse_timestamp(value):
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return utc_from_epoch(value)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ErrorEvent:
    id: str
    message: str
    context: str
    severity: Severity = Severity.MEDIUM
    error_type: str = "Exception"
    stack_trace: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "error": {"type": self.error_type, "message": self.message},
            "context": self.context,
            "severity": Severity(self.severity).value,
            "stackTrace": self.stack_trace,
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d):
        """Rebuild from the wire shape produced by to_dict."""
        error = d.get("error") or {}
        return cls(
            id=d["id"],
            message=error.get("message", d.get("message", "")),
            error_type=error.get("type", d.get("error_type", "Exception")),
            context=d.get("context", ""),
            severity=Severity(d.get("severity", "medium")),
            stack_trace=d.get("stackTrace", d.get("stack_trace", "")) or "",
            timestamp=_parse_timestamp(d["timestamp"]),
            user_id=d.get("userId", d.get("user_id")),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "name": self.name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            name=d["name"],
            value=float(d["value"]),
            timestamp=_parse_timestamp(d["timestamp"]),
            user_id=d.get("userId", d.get("user_id")),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass(frozen=True)
class UserActionEvent:
    action: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "action": self.action,
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            action=d["action"],
            timestamp=_parse_timestamp(d["timestamp"]),
            user_id=d.get("userId", d.get("user_id")),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SecurityEvent:
    """Audit record written by the rate limiter and other guards."""
    id: str
    type: SecurityEventType
    severity: Severity
    action: str
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    resource: Optional[str] = None


EVENT_TYPES = {
    "errors": ErrorEvent,
    "metrics": MetricSample,
    "actions": UserActionEvent,
}
