"""Per-identifier sliding-window rate limiter with blacklisting, thread-safe."""
import time
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone

from models.enums import SecurityEventType, Severity
from models.events import SecurityEvent, generate_id, utc_from_epoch

logger = logging.getLogger("telemon.ratelimit")


@dataclass
class RateLimitEntry:
    identifier: str
    count: int
    first_request: float  # ms since epoch
    blacklisted: bool = False


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float  # ms since epoch


class RateLimiter:
    """Restart-style window counter keyed by identifier.

    The window starts at an identifier's first request and resets entirely
    once a request arrives after ``window_ms`` has elapsed. Identifiers that
    go past ``blacklist_threshold`` are refused until that reset, however
    often they retry.
    """

    def __init__(self, window_ms=15 * 60 * 1000, max_requests=100, blacklist_threshold=200,
                 enabled=True, db=None, monitoring=None, clock=time.time):
        if blacklist_threshold < max_requests:
            raise ValueError("blacklist_threshold must be >= max_requests")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.blacklist_threshold = blacklist_threshold
        self.enabled = enabled
        self.db = db
        self.monitoring = monitoring
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, **kwargs):
        cfg = config.get("rate_limit", {})
        return cls(
            window_ms=cfg.get("window_ms", 15 * 60 * 1000),
            max_requests=cfg.get("max_requests", 100),
            blacklist_threshold=cfg.get("blacklist_threshold", 200),
            enabled=cfg.get("enabled", True),
            **kwargs,
        )

    def _now_ms(self):
        return self._clock() * 1000

    def check_rate_limit(self, identifier) -> RateLimitResult:
        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=self.max_requests, reset_time=0)

        events = []
        with self._lock:
            now = self._now_ms()
            entry = self._entries.get(identifier)

            if entry is None or now - entry.first_request > self.window_ms:
                self._entries[identifier] = RateLimitEntry(identifier, 1, now)
                return RateLimitResult(True, self.max_requests - 1, now + self.window_ms)

            if entry.blacklisted:
                events.append((Severity.HIGH, "blacklisted_access_attempt", entry.count))
                result = RateLimitResult(False, 0, entry.first_request + self.window_ms)
            else:
                entry.count += 1
                if entry.count > self.max_requests:
                    events.append((Severity.MEDIUM, "rate_limit_exceeded", entry.count))
                    if entry.count > self.blacklist_threshold:
                        entry.blacklisted = True
                        events.append((Severity.HIGH, "identifier_blacklisted", entry.count))
                    result = RateLimitResult(False, 0, entry.first_request + self.window_ms)
                else:
                    result = RateLimitResult(
                        True, self.max_requests - entry.count, entry.first_request + self.window_ms,
                    )

        for severity, action, attempts in events:
            self._log_security_event(severity, action, {"identifier": identifier, "attempts": attempts})
        return result

    def is_blacklisted(self, identifier):
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None or self._now_ms() - entry.first_request > self.window_ms:
                return False
            return entry.blacklisted

    def get_entry(self, identifier):
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None:
                return None
            return RateLimitEntry(entry.identifier, entry.count, entry.first_request, entry.blacklisted)

    def cleanup_expired(self):
        """Drop entries whose window has elapsed. Returns the number removed."""
        with self._lock:
            now = self._now_ms()
            expired = [k for k, e in self._entries.items() if now - e.first_request > self.window_ms]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired rate-limit entries")
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def _log_security_event(self, severity, action, details):
        event = SecurityEvent(
            id=generate_id("sec", self._clock()),
            type=SecurityEventType.RATE_LIMIT,
            severity=severity,
            action=action,
            details=details,
            timestamp=utc_from_epoch(self._clock()),
        )
        log = logger.warning if severity == Severity.HIGH else logger.info
        log(f"Security event {action}: {details}")

        if self.db is not None:
            try:
                self.db.save_security_event(event)
            except Exception as e:
                logger.error(f"Failed to persist security event {action}: {e}")

        if self.monitoring is not None and severity in (Severity.HIGH, Severity.CRITICAL):
            self.monitoring.report_error(
                f"Security event: {action}", "Security Monitoring", severity, details,
            )

    def get_security_metrics(self, hours=24):
        """Counts of security events over the last ``hours``."""
        if self.db is None:
            return {}
        since = self._clock() - hours * 3600
        events = self.db.get_security_events(since)
        by_type = Counter(e["type"] for e in events)
        return {
            "total_events": len(events),
            "critical_events": sum(1 for e in events if e["severity"] == "critical"),
            "high_events": sum(1 for e in events if e["severity"] == "high"),
            "auth_events": by_type.get(SecurityEventType.AUTHENTICATION.value, 0),
            "rate_limit_events": by_type.get(SecurityEventType.RATE_LIMIT.value, 0),
            "suspicious_events": by_type.get(SecurityEventType.SUSPICIOUS_ACTIVITY.value, 0),
            "blacklisted": sum(1 for e in events if e["action"] == "identifier_blacklisted"),
        }


def rate_limit_headers(limiter, result):
    """Response headers advertising the limiter state for one request."""
    reset = datetime.fromtimestamp(result.reset_time / 1000, timezone.utc) if result.reset_time else None
    headers = {
        "X-RateLimit-Limit": str(limiter.max_requests),
        "X-RateLimit-Remaining": str(max(0, result.remaining)),
    }
    if reset is not None:
        headers["X-RateLimit-Reset"] = reset.isoformat()
    if not result.allowed and result.reset_time:
        retry_after = max(0, int((result.reset_time - limiter._now_ms()) / 1000 + 0.999))
        headers["Retry-After"] = str(retry_after)
    return headers
