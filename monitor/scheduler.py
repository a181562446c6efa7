"""Background scheduler for the periodic telemetry jobs."""
import logging
import threading
import schedule
import time

logger = logging.getLogger("telemon.scheduler")


class TelemetryScheduler:
    """Runs flush, alert auto-resolution and rate-limit cleanup on a daemon thread.

    Due flush retries (exponential backoff) are checked on every tick.
    """

    def __init__(self, queue, alert_engine=None, rate_limiter=None, flush_interval=30,
                 auto_resolve_interval=60, cleanup_interval=300, tick_seconds=1.0):
        self.queue = queue
        self.alert_engine = alert_engine
        self.rate_limiter = rate_limiter
        self.flush_interval = flush_interval
        self.auto_resolve_interval = auto_resolve_interval
        self.cleanup_interval = cleanup_interval
        self.tick_seconds = tick_seconds
        self._schedule = schedule.Scheduler()
        self._thread = None
        self._stop = threading.Event()
        self._consecutive_failures = 0

    @classmethod
    def from_config(cls, config, queue, alert_engine=None, rate_limiter=None):
        cfg = config.get("scheduler", {})
        return cls(
            queue,
            alert_engine,
            rate_limiter,
            flush_interval=cfg.get("flush_interval_seconds", 30),
            auto_resolve_interval=cfg.get("auto_resolve_interval_seconds", 60),
            cleanup_interval=cfg.get("rate_limit_cleanup_seconds", 300),
        )

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._register_jobs()
        self._thread = threading.Thread(target=self._run_loop, name="telemon-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (flush every {self.flush_interval}s)")

    def stop(self):
        self._stop.set()
        self._schedule.clear()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Scheduler stopped")

    def _register_jobs(self):
        self._schedule.clear()
        self._schedule.every(self.flush_interval).seconds.do(self.flush_job)
        if self.alert_engine is not None:
            self._schedule.every(self.auto_resolve_interval).seconds.do(self.auto_resolve_job)
        if self.rate_limiter is not None:
            self._schedule.every(self.cleanup_interval).seconds.do(self.cleanup_job)

    def _run_loop(self):
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.tick_seconds)

    def tick(self):
        """One pass: due backoff retry, then any due scheduled jobs."""
        try:
            self.queue.run_due_retry()
        except Exception as e:
            logger.error(f"Flush retry failed: {e}")
        self._schedule.run_pending()

    # --- Jobs ---

    def flush_job(self):
        try:
            ok = self.queue.flush()
        except Exception as e:
            ok = False
            logger.error(f"Flush job error: {e}")
        if ok:
            self._consecutive_failures = 0
        elif self.queue.online:
            self._consecutive_failures += 1
            if self._consecutive_failures >= 5:
                logger.critical(f"{self._consecutive_failures} consecutive flush failures")

    def auto_resolve_job(self):
        try:
            self.alert_engine.check_auto_resolution()
        except Exception as e:
            logger.error(f"Auto-resolution sweep failed: {e}")

    def cleanup_job(self):
        try:
            removed = self.rate_limiter.cleanup_expired()
            if removed:
                logger.debug(f"Removed {removed} expired rate-limit entries")
        except Exception as e:
            logger.error(f"Rate-limit cleanup failed: {e}")
