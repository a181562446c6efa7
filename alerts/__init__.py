"""Alert system module."""
from alerts.engine import AlertEngine
from alerts.manager import AlertManager
from alerts.rules_manager import RulesManager
from alerts.channels import (
    ChannelError, EmailChannel, InAppChannel, SlackChannel, SMSChannel, WebhookChannel, build_channels,
)
