"""Bounded retry with linear-in-attempt backoff for flaky operations."""
import time
import logging
import functools

from models.enums import Severity

logger = logging.getLogger("telemon.retry")


def with_retry(operation, context, max_attempts=3, initial_backoff_ms=1000,
               monitoring=None, sleep=time.sleep):
    """Call ``operation()`` until it succeeds or ``max_attempts`` is used up.

    Attempt N failing waits ``initial_backoff_ms * N`` before the next try and
    is reported as a medium-severity error. When the last attempt fails a
    high-severity error goes straight to the alert engine and the original
    exception is re-raised. A success after retries is recorded as the
    ``operation_retry_success`` metric with the attempt count as its value.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    started = time.monotonic()
    backoff_total_ms = 0

    for attempt in range(1, max_attempts + 1):
        try:
            result = operation()
        except Exception as e:
            if attempt == max_attempts:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                logger.error(f"{context}: giving up after {attempt} attempts ({elapsed_ms}ms): {e}")
                if monitoring is not None:
                    event = monitoring.build_error_event(
                        e, f"{context} - Final attempt failed", Severity.HIGH,
                        {
                            "attempts": max_attempts,
                            "total_time_ms": backoff_total_ms,
                            "elapsed_ms": elapsed_ms,
                        },
                    )
                    monitoring.escalate(event)
                raise

            delay_ms = initial_backoff_ms * attempt
            if monitoring is not None:
                monitoring.report_error(
                    e, f"{context} - Attempt {attempt} failed", Severity.MEDIUM,
                    {"attempt": attempt, "next_retry_in_ms": delay_ms},
                )
            else:
                logger.warning(f"{context} - Attempt {attempt} failed: {e}; retrying in {delay_ms}ms")
            backoff_total_ms += delay_ms
            sleep(delay_ms / 1000)
            continue

        if attempt > 1 and monitoring is not None:
            monitoring.record_metric("operation_retry_success", attempt, {"context": context})
        return result


def retrying(context, max_attempts=3, initial_backoff_ms=1000, monitoring=None, sleep=time.sleep):
    """Decorator form of with_retry."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return with_retry(
                lambda: func(*args, **kwargs), context, max_attempts, initial_backoff_ms,
                monitoring=monitoring, sleep=sleep,
            )
        return wrapper
    return decorator
