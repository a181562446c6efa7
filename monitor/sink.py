"""Telemetry sink: the three POST endpoints batches are delivered to."""
import logging

from utils.http_client import HTTPClient

logger = logging.getLogger("telemon.sink")

ENDPOINTS = {
    "errors": "errors",
    "metrics": "metrics",
    "actions": "actions",
}


class TelemetrySink:
    """Posts ``{"errors": [...]}``, ``{"metrics": [...]}`` and ``{"actions": [...]}``.

    Any non-2xx answer or transport failure raises APIError. Without a base
    URL the sink is local-only: sends succeed without leaving the process.
    """

    def __init__(self, base_url="", timeout=10, headers=None, client=None):
        self.base_url = base_url or ""
        self.client = client or HTTPClient(base_url=self.base_url, timeout=timeout, headers=headers)

    @classmethod
    def from_config(cls, config):
        cfg = config.get("sink", {})
        return cls(
            base_url=cfg.get("base_url", ""),
            timeout=cfg.get("timeout_seconds", 10),
            headers=cfg.get("headers") or None,
        )

    @property
    def is_remote(self):
        return bool(self.base_url)

    def send(self, kind, items):
        """Send one batch of already-serialized events."""
        if not items:
            return
        if not self.is_remote:
            logger.debug(f"No sink configured, keeping {len(items)} {kind} local")
            return
        self.client.post_json(ENDPOINTS[kind], {kind: items})
        logger.debug(f"Delivered {len(items)} {kind} to sink")

    def send_errors(self, errors):
        self.send("errors", [e.to_dict() for e in errors])
