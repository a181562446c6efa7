"""Alert notification channels."""
import logging
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from models.enums import AlertSeverity, ChannelType
from models.events import generate_id
from notifications.email_sender import EmailSender
from notifications.sms_sender import SMSSender
from utils.http_client import HTTPClient

logger = logging.getLogger("telemon.alerts.channels")

CHANNEL_TIMEOUT = 5

SLACK_COLORS = {
    AlertSeverity.CRITICAL: "danger",
    AlertSeverity.WARNING: "warning",
    AlertSeverity.INFO: "good",
}


class ChannelError(Exception):
    """A channel is missing configuration it needs to send."""


@runtime_checkable
class AlertChannel(Protocol):
    def send(self, alert, config) -> bool: ...

    def send_recovery(self, alert, config) -> bool: ...


def _iso(ts):
    return ts.isoformat() if ts else None


class EmailChannel:
    """Templated HTML email through SMTP. Recipients come from the rule's
    channel config, falling back to ``email.recipients``."""

    def __init__(self, sender):
        self.sender = sender

    def send(self, alert, config) -> bool:
        if not self.sender.is_configured():
            raise ChannelError("SMTP settings are incomplete")
        return self.sender.send_alert(alert, config.get("recipients"))

    def send_recovery(self, alert, config) -> bool:
        if not self.sender.is_configured():
            raise ChannelError("SMTP settings are incomplete")
        return self.sender.send_recovery(alert, config.get("recipients"))


class SMSChannel:
    """Text messages for critical alerts only."""

    def __init__(self, sender):
        self.sender = sender

    def send(self, alert, config) -> bool:
        if alert.severity != AlertSeverity.CRITICAL:
            logger.debug(f"SMS skipped for {alert.severity.value} alert {alert.id}")
            return False
        if not self.sender.is_configured():
            raise ChannelError("SMS gateway is not configured")
        body = (
            f"CRITICAL: {alert.title}\n\n"
            f"Time: {alert.triggered_at.strftime('%Y-%m-%d %H:%M:%S UTC')}\n\n"
            f"Alert ID: {alert.id}"
        )
        return self.sender.send_message(body, config.get("phone_numbers")) > 0

    def send_recovery(self, alert, config) -> bool:
        if alert.severity != AlertSeverity.CRITICAL:
            return False
        if not self.sender.is_configured():
            raise ChannelError("SMS gateway is not configured")
        return self.sender.send_message(f"RECOVERED: {alert.title}", config.get("phone_numbers")) > 0


class WebhookChannel:
    """POSTs ``{"alert": {...}, "timestamp": ...}`` to the configured URL."""

    def __init__(self, client=None, clock=None):
        self.client = client or HTTPClient(timeout=CHANNEL_TIMEOUT)
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def build_payload(self, alert):
        return {
            "alert": {
                "id": alert.id,
                "title": alert.title,
                "description": alert.description,
                "severity": alert.severity.value,
                "status": alert.status.value,
                "triggeredAt": _iso(alert.triggered_at),
                "resolvedAt": _iso(alert.resolved_at),
                "metadata": alert.metadata,
            },
            "timestamp": self._now().isoformat(),
        }

    def _post(self, alert, config):
        url = config.get("url")
        if not url:
            raise ChannelError("webhook channel has no url")
        self.client.post_json(url, self.build_payload(alert), headers=config.get("headers"))
        return True

    def send(self, alert, config) -> bool:
        return self._post(alert, config)

    def send_recovery(self, alert, config) -> bool:
        return self._post(alert, config)


class SlackChannel:
    """Slack incoming webhook with one attachment of alert fields."""

    def __init__(self, client=None):
        self.client = client or HTTPClient(timeout=CHANNEL_TIMEOUT)

    @staticmethod
    def _webhook_url(config):
        url = config.get("webhook_url") or config.get("webhookUrl")
        if not url:
            raise ChannelError("slack channel has no webhook_url")
        return url

    def build_message(self, alert, config):
        return {
            "channel": config.get("channel", "#alerts"),
            "text": alert.title,
            "attachments": [{
                "color": SLACK_COLORS.get(alert.severity, "warning"),
                "fields": [
                    {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                    {"title": "Time", "value": _iso(alert.triggered_at), "short": True},
                    {"title": "Description", "value": alert.description, "short": False},
                    {"title": "Alert ID", "value": alert.id, "short": True},
                ],
            }],
        }

    def send(self, alert, config) -> bool:
        self.client.post_json(self._webhook_url(config), self.build_message(alert, config))
        return True

    def send_recovery(self, alert, config) -> bool:
        self.client.post_json(self._webhook_url(config), {
            "channel": config.get("channel", "#alerts"),
            "text": f"RECOVERED: {alert.title}",
            "attachments": [{
                "color": "good",
                "fields": [
                    {"title": "Resolved by", "value": alert.resolved_by or "unknown", "short": True},
                    {"title": "Alert ID", "value": alert.id, "short": True},
                ],
            }],
        })
        return True


class InAppChannel:
    """Unread rows in the local ``notifications`` table."""

    def __init__(self, db):
        self.db = db

    def _insert(self, alert, kind, title, message):
        now = datetime.now(timezone.utc)
        self.db.insert_notification({
            "id": generate_id("notif", now.timestamp()),
            "type": kind,
            "title": title,
            "message": message,
            "severity": alert.severity.value,
            "read": False,
            "created_at": now.isoformat(),
            "metadata": {"alert_id": alert.id, "rule_id": alert.rule_id},
        })
        return True

    def send(self, alert, config) -> bool:
        return self._insert(alert, "system_alert", alert.title, alert.description)

    def send_recovery(self, alert, config) -> bool:
        return self._insert(alert, "system_alert_resolved", f"RECOVERED: {alert.title}",
                            f"Resolved by {alert.resolved_by or 'unknown'}")


def build_channels(config, db):
    """One channel instance per ChannelType, built from app config."""
    return {
        ChannelType.EMAIL: EmailChannel(EmailSender(config)),
        ChannelType.SMS: SMSChannel(SMSSender(config)),
        ChannelType.WEBHOOK: WebhookChannel(),
        ChannelType.SLACK: SlackChannel(),
        ChannelType.IN_APP: InAppChannel(db),
    }
