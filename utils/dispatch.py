"""Hand-off of background work from the capture surface."""
import logging
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger("telemon.dispatch")


class ThreadDispatcher:
    """Single background worker; submitted jobs run one at a time, in order."""

    def __init__(self, name="telemon-dispatch"):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._closed = False

    def submit(self, fn, *args, **kwargs):
        if self._closed:
            logger.debug(f"Dispatcher closed, running {getattr(fn, '__name__', fn)} inline")
            return InlineDispatcher().submit(fn, *args, **kwargs)
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError:
            # shutdown() won the race after the _closed check
            return InlineDispatcher().submit(fn, *args, **kwargs)
        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait=True):
        self._closed = True
        self._executor.shutdown(wait=wait)


class InlineDispatcher:
    """Runs jobs immediately on the caller's thread (tests, CLI one-shots)."""

    def submit(self, fn, *args, **kwargs):
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Background job {getattr(fn, '__name__', fn)} failed: {e}")

    def shutdown(self, wait=True):
        pass


def _log_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(f"Background job failed: {exc}")
