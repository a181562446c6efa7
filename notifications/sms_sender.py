"""SMS gateway client for critical alert text messages.

Posts one JSON message per recipient to an HTTP gateway
(``{"to": ..., "from": ..., "body": ...}``) with a bearer API key.
"""
import os
import logging

from utils.http_client import HTTPClient

logger = logging.getLogger("telemon.notifications.sms")


class SMSSender:
    """Thin wrapper around an HTTP SMS gateway.

    Credential resolution: TELEMON_SMS_API_KEY, then config.sms.api_key.
    """

    def __init__(self, config: dict, client=None):
        sms_config = config.get("sms", {})
        self.gateway_url = sms_config.get("gateway_url", "")
        self.from_number = sms_config.get("from_number", "")
        self.default_numbers = list(sms_config.get("phone_numbers") or [])
        self.api_key = os.environ.get("TELEMON_SMS_API_KEY", sms_config.get("api_key", ""))
        self.client = client or HTTPClient(
            timeout=sms_config.get("timeout_seconds", 5),
            headers={"Authorization": f"Bearer {self.api_key}"} if self.api_key else None,
        )

    def is_configured(self) -> bool:
        return bool(self.gateway_url and self.api_key)

    def send_message(self, body, phone_numbers=None) -> int:
        """Send ``body`` to every number. Returns how many were accepted.

        Raises APIError when the gateway rejects the first failing number;
        numbers before it have already been sent.
        """
        numbers = phone_numbers or self.default_numbers
        if not self.is_configured():
            logger.warning("SMS gateway not configured - skipping send")
            return 0
        if not numbers:
            logger.warning("No SMS recipients configured - skipping send")
            return 0

        sent = 0
        for number in numbers:
            self.client.post_json(self.gateway_url, {
                "to": number,
                "from": self.from_number,
                "body": body,
            })
            sent += 1
        logger.info(f"SMS sent to {sent} number(s)")
        return sent
