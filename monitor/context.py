"""Process-wide wiring of the telemetry, rate-limiting and alerting components."""
import time
import logging

from alerts.channels import build_channels
from alerts.engine import AlertEngine
from alerts.manager import AlertManager
from alerts.rules_manager import DEFAULT_RULES_PATH, RulesManager
from models.database import Database
from models.events import utc_from_epoch
from monitor.capture import Monitoring
from monitor.fallback import FallbackStore
from monitor.queue import DeliveryQueue
from monitor.scheduler import TelemetryScheduler
from monitor.sink import TelemetrySink
from notifications.toast import ToastNotifier
from utils.dispatch import ThreadDispatcher
from utils.rate_limiter import RateLimiter

logger = logging.getLogger("telemon.context")

HEALTH_PENALTIES = {"critical": 20, "high": 5, "medium": 1}


def health_score(error_summary):
    """100 minus weighted error counts, clamped to 0..100."""
    penalty = sum(error_summary.get(sev, 0) * weight for sev, weight in HEALTH_PENALTIES.items())
    return max(0, min(100, 100 - penalty))


class TelemetryContext:
    """Owns every component for one process.

    Build it once with ``from_config``, call ``start()`` to install the
    uncaught-error hooks and the scheduler, and ``shutdown()`` before exit so
    buffered events are drained.
    """

    def __init__(self, config, db, sink, fallback, queue, rules, manager, engine,
                 monitoring, rate_limiter, scheduler, dispatcher, clock=time.time):
        self.config = config
        self.db = db
        self.sink = sink
        self.fallback = fallback
        self.queue = queue
        self.rules = rules
        self.manager = manager
        self.engine = engine
        self.monitoring = monitoring
        self.rate_limiter = rate_limiter
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self._clock = clock
        self._started = False

    @classmethod
    def from_config(cls, config, db=None, sink=None, channels=None, dispatcher=None,
                    toast=None, user_provider=None, clock=time.time):
        if db is None:
            db = Database(config["database"]["path"])
            db.connect()
        sink = sink or TelemetrySink.from_config(config)
        fallback = FallbackStore(db)
        queue = DeliveryQueue.from_config(config, sink, fallback, clock=clock)

        alerts_cfg = config.get("alerts", {})
        rules = RulesManager(alerts_cfg.get("rules_path") or DEFAULT_RULES_PATH)
        if channels is None:
            channels = build_channels(config, db)
        manager = AlertManager(db, rules, channels, clock=clock)
        manager.load_open_alerts()
        engine = None
        if alerts_cfg.get("enabled", True):
            engine = AlertEngine(rules, db, manager, clock=clock)
            engine.restore_cooldowns(manager.get_active_alerts())

        if toast is None and config.get("toast", {}).get("enabled", True):
            toast = ToastNotifier(duration=config.get("toast", {}).get("duration_seconds", 5))

        dispatcher = dispatcher or ThreadDispatcher()
        monitoring = Monitoring(
            queue, alert_engine=engine, dispatcher=dispatcher, toast=toast,
            user_provider=user_provider, db=db, clock=clock,
        )
        rate_limiter = RateLimiter.from_config(config, db=db, monitoring=monitoring, clock=clock)
        scheduler = TelemetryScheduler.from_config(config, queue, engine, rate_limiter)

        return cls(config, db, sink, fallback, queue, rules, manager, engine,
                   monitoring, rate_limiter, scheduler, dispatcher, clock=clock)

    def start(self, install_hooks=True):
        if self._started:
            return
        if install_hooks:
            self.monitoring.install_global_hooks()
        self.scheduler.start()
        self._started = True
        logger.info("Telemetry pipeline started")

    def shutdown(self):
        """Stop background work, drain buffered telemetry and close the store."""
        self.scheduler.stop()
        self.monitoring.uninstall_global_hooks()
        self.dispatcher.shutdown(wait=True)
        try:
            if not self.queue.drain():
                logger.warning("Some telemetry could not be delivered; kept in the fallback store")
        except Exception as e:
            logger.error(f"Final flush failed: {e}")
        self.db.close()
        self._started = False
        logger.info("Telemetry pipeline stopped")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown()

    def status(self, hours=24):
        """Snapshot for dashboards and the CLI ``status`` command."""
        since = self._clock() - hours * 3600
        errors = self.db.get_error_summary(since)
        since_iso = utc_from_epoch(since).isoformat()
        return {
            "health_score": health_score(errors),
            "errors": errors,
            "top_contexts": self.db.get_top_error_contexts(since),
            "metrics": self.db.get_metric_summary(since),
            "active_alerts": len(self.manager.get_active_alerts()),
            "alert_stats": self.db.get_alert_stats(since_iso),
            "security": self.rate_limiter.get_security_metrics(hours),
            "queue": self.queue.status(),
            "sink": self.sink.base_url or "local",
        }
