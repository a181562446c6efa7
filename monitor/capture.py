"""Capture surface: error reports, metrics and user actions.

Every call builds an immutable event, records errors and metrics in the local
store, appends the event to the delivery queue and returns straight away. Rule evaluation and out-of-band delivery of critical
errors run on the dispatcher, off the caller's thread.
"""
import sys
import time
import logging
import threading
import traceback

from models.enums import Severity
from models.events import ErrorEvent, MetricSample, UserActionEvent, generate_id, utc_from_epoch
from monitor.retry import with_retry
from utils.dispatch import ThreadDispatcher

logger = logging.getLogger("telemon.capture")

UNCAUGHT_CONTEXT = "uncaught"


def _describe_error(error):
    """(error_type, message, stack_trace) for an exception or plain message."""
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
        stack = ""
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return type(error).__name__, message, stack
    return "Error", str(error), ""


class Monitoring:
    def __init__(self, queue, alert_engine=None, dispatcher=None, toast=None,
                 user_provider=None, db=None, clock=time.time):
        self.queue = queue
        self.db = db
        self.alert_engine = alert_engine
        self.dispatcher = dispatcher or ThreadDispatcher()
        self.toast = toast
        self.user_provider = user_provider
        self._clock = clock
        self._prev_excepthook = None
        self._prev_threading_hook = None
        self._hooks_installed = False

    # ── core API ─────────────────────────────────────

    def report_error(self, error, context, severity=Severity.MEDIUM, metadata=None):
        """Record an error and return its event id."""
        event = self.build_error_event(error, context, severity or Severity.MEDIUM, metadata)
        self._persist_error(event)
        self.queue.enqueue_error(event)

        if self.alert_engine is not None:
            self.dispatcher.submit(self.alert_engine.process_error, event)

        if event.severity == Severity.CRITICAL:
            self._handle_critical(event)

        log = logger.error if event.severity in (Severity.HIGH, Severity.CRITICAL) else logger.warning
        log(f"[{event.severity.value.upper()}] {context}: {event.message}")
        return event.id

    def record_metric(self, name, value, metadata=None):
        sample = MetricSample(
            name=name,
            value=float(value),
            timestamp=utc_from_epoch(self._clock()),
            user_id=self._current_user(),
            metadata=dict(metadata or {}),
        )
        self._persist_metrics([sample])
        self.queue.enqueue_metric(sample)
        if self.alert_engine is not None:
            self.dispatcher.submit(self.alert_engine.process_metrics, [sample])
        return sample

    def track_action(self, action, metadata=None):
        event = UserActionEvent(
            action=action,
            timestamp=utc_from_epoch(self._clock()),
            user_id=self._current_user(),
            metadata=dict(metadata or {}),
        )
        self.queue.enqueue_action(event)
        return event

    def build_error_event(self, error, context, severity=Severity.MEDIUM, metadata=None):
        now = self._clock()
        error_type, message, stack = _describe_error(error)
        return ErrorEvent(
            id=generate_id("err", now),
            message=message,
            error_type=error_type,
            stack_trace=stack,
            context=context,
            severity=Severity(severity),
            timestamp=utc_from_epoch(now),
            user_id=self._current_user(),
            metadata=dict(metadata or {}),
        )

    def escalate(self, event):
        """Enqueue an already-built error and evaluate alert rules for it right away."""
        self._persist_error(event)
        self.queue.enqueue_error(event)
        logger.error(f"[{event.severity.value.upper()}] {event.context}: {event.message}")
        if self.alert_engine is None:
            return []
        try:
            return self.alert_engine.process_error(event)
        except Exception as e:
            logger.error(f"Failed to trigger alert for {event.id}: {e}")
            return []

    def _persist_error(self, event):
        if self.db is None:
            return
        try:
            self.db.save_error_event(event)
        except Exception as e:
            logger.error(f"Failed to persist error {event.id}: {e}")

    def _persist_metrics(self, samples):
        if self.db is None:
            return
        try:
            self.db.save_metric_samples(samples)
        except Exception as e:
            logger.error(f"Failed to persist {len(samples)} metric sample(s): {e}")

    def with_retry(self, operation, context, max_attempts=3, initial_backoff_ms=1000):
        return with_retry(operation, context, max_attempts, initial_backoff_ms, monitoring=self)

    def monitored_call(self, call, operation_name, **context):
        """Run ``call`` recording its duration; failures are reported as high severity."""
        start = time.perf_counter()
        try:
            result = call()
        except Exception as e:
            duration = (time.perf_counter() - start) * 1000
            self.record_metric("api_call_duration", duration,
                               {"operation": operation_name, "status": "error", **context})
            self.report_error(e, f"API call failed: {operation_name}", Severity.HIGH,
                              {"operation_name": operation_name, "duration_ms": duration, **context})
            raise
        duration = (time.perf_counter() - start) * 1000
        self.record_metric("api_call_duration", duration,
                           {"operation": operation_name, "status": "success", **context})
        return result

    # ── convenience trackers ─────────────────────────

    def track_page_view(self, page, metadata=None):
        return self.track_action("page_view", {"page": page, **(metadata or {})})

    def track_feature_usage(self, feature, metadata=None):
        return self.track_action("feature_usage", {"feature": feature, **(metadata or {})})

    def track_business_metric(self, metric, value, metadata=None):
        return self.record_metric(f"business_{metric}", value, metadata)

    def set_online(self, online):
        """Connectivity change: offline pauses flushing, reconnecting flushes at once."""
        if bool(online) == self.queue.online:
            return
        self.track_action("network_restored" if online else "network_lost")
        self.queue.set_online(online)

    # ── uncaught errors ──────────────────────────────

    def install_global_hooks(self):
        """Route uncaught exceptions (main and worker threads) through report_error."""
        if self._hooks_installed:
            return
        self._prev_excepthook = sys.excepthook
        self._prev_threading_hook = threading.excepthook
        sys.excepthook = self._handle_uncaught
        threading.excepthook = self._handle_thread_exception
        self._hooks_installed = True

    def uninstall_global_hooks(self):
        if not self._hooks_installed:
            return
        sys.excepthook = self._prev_excepthook
        threading.excepthook = self._prev_threading_hook
        self._hooks_installed = False

    def install_asyncio_handler(self, loop):
        """Capture exceptions of tasks nobody awaited on ``loop``."""
        previous = loop.get_exception_handler()

        def handler(loop, ctx):
            error = ctx.get("exception") or ctx.get("message", "Unhandled asyncio error")
            self._report_uncaught(error, {"source": "asyncio", "message": ctx.get("message")})
            if previous is not None:
                previous(loop, ctx)
            else:
                loop.default_exception_handler(ctx)

        loop.set_exception_handler(handler)
        return handler

    def _handle_uncaught(self, exc_type, exc, tb):
        if not issubclass(exc_type, KeyboardInterrupt):
            self._report_uncaught(exc, {"source": "excepthook"})
        if self._prev_excepthook is not None:
            self._prev_excepthook(exc_type, exc, tb)

    def _handle_thread_exception(self, args):
        if args.exc_type is not SystemExit:
            thread_name = args.thread.name if args.thread is not None else None
            self._report_uncaught(args.exc_value, {"source": "thread", "thread": thread_name})
        if self._prev_threading_hook is not None:
            self._prev_threading_hook(args)

    def _report_uncaught(self, error, metadata):
        try:
            self.report_error(error, UNCAUGHT_CONTEXT, Severity.HIGH, metadata)
        except Exception as e:
            logger.error(f"Failed to capture uncaught error: {e}")

    # ── helpers ──────────────────────────────────────

    def _handle_critical(self, event):
        self.dispatcher.submit(self.queue.deliver_now, event)
        if self.toast is not None:
            self.toast.show_error(event)

    def _current_user(self):
        if self.user_provider is None:
            return None
        try:
            return self.user_provider()
        except Exception as e:
            logger.debug(f"User lookup failed: {e}")
            return None
