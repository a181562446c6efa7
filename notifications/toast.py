"""Transient user-facing notice shown for critical errors."""
import time
import logging
import threading
from collections import deque

from rich.console import Console
from rich.panel import Panel

logger = logging.getLogger("telemon.notifications.toast")


class ToastNotifier:
    """Prints a short panel on stderr and remembers it for ``duration`` seconds."""

    def __init__(self, duration=5.0, console=None, clock=time.monotonic, max_items=20):
        self.duration = duration
        self.console = console or Console(stderr=True)
        self._clock = clock
        self._items = deque(maxlen=max_items)
        self._lock = threading.Lock()

    def show_error(self, event):
        message = (
            "We've been notified and are working on a fix. "
            f"Error ID: {event.id}"
        )
        self.show("Something went wrong", message)

    def show(self, title, message):
        with self._lock:
            self._items.append((title, message, self._clock() + self.duration))
        try:
            self.console.print(Panel(message, title=title, border_style="red"))
        except Exception as e:
            logger.debug(f"Toast render failed: {e}")

    def active(self):
        """Notices that have not yet expired, oldest first."""
        now = self._clock()
        with self._lock:
            while self._items and self._items[0][2] <= now:
                self._items.popleft()
            return [(title, message) for title, message, _ in self._items]
