"""Buffered delivery of captured events to the telemetry sink."""
import time
import logging
import threading
from collections import Counter

logger = logging.getLogger("telemon.queue")

KINDS = ("errors", "metrics", "actions")


class DeliveryQueue:
    """In-memory queues drained to the sink on a timer.

    A flush swaps out each queue, prepends whatever the fallback store holds
    for that kind and posts the combined batch. Kinds are delivered
    independently. A failed batch goes back to the fallback store in full and
    a retry of the flush is scheduled with exponential backoff; a successful
    retry empties the slot, so every event reaches the sink exactly once.
    """

    def __init__(self, sink, fallback, max_flush_retries=3, retry_base_seconds=1.0, clock=time.time):
        self.sink = sink
        self.fallback = fallback
        self.max_flush_retries = max_flush_retries
        self.retry_base_seconds = retry_base_seconds
        self._clock = clock

        self._queues = {kind: [] for kind in KINDS}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

        self.online = True
        self.retry_count = 0
        self.next_retry_at = None
        self.delivered = Counter()
        self.failed_flushes = 0
        self.last_flush_at = None
        self.last_error = None

    @classmethod
    def from_config(cls, config, sink, fallback, **kwargs):
        cfg = config.get("queue", {})
        return cls(
            sink,
            fallback,
            max_flush_retries=cfg.get("max_flush_retries", 3),
            retry_base_seconds=cfg.get("retry_base_seconds", 1.0),
            **kwargs,
        )

    # --- Enqueue ---

    def enqueue(self, kind, event):
        with self._lock:
            self._queues[kind].append(event)

    def enqueue_error(self, event):
        self.enqueue("errors", event)

    def enqueue_metric(self, sample):
        self.enqueue("metrics", sample)

    def enqueue_action(self, action):
        self.enqueue("actions", action)

    def pending(self, kind):
        with self._lock:
            return list(self._queues[kind])

    def pending_counts(self):
        with self._lock:
            return {kind: len(items) for kind, items in self._queues.items()}

    # --- Delivery ---

    def deliver_now(self, event):
        """Send one error out-of-band, ahead of the periodic flush.

        The event is claimed from the error queue first so the next flush
        does not send it again; on failure it is put back.
        """
        with self._lock:
            queue = self._queues["errors"]
            index = next((i for i, e in enumerate(queue) if e.id == event.id), None)
            if index is None:
                # A flush already picked it up.
                return False
            queue.pop(index)

        try:
            self.sink.send_errors([event])
        except Exception as e:
            logger.error(f"Immediate delivery of {event.id} failed: {e}")
            with self._lock:
                self._queues["errors"].append(event)
            return False

        self.delivered["errors"] += 1
        return True

    def flush(self, force=False):
        """Drain every queue to the sink. Returns True when all kinds succeeded."""
        if not self.online and not force:
            logger.debug("Offline, skipping flush")
            return False

        with self._flush_lock:
            results = [self._flush_kind(kind) for kind in KINDS]
            self.last_flush_at = self._clock()

            if all(results):
                self.retry_count = 0
                self.next_retry_at = None
                return True

            self.failed_flushes += 1
            self._schedule_retry()
            return False

    def _flush_kind(self, kind):
        with self._lock:
            batch = self._queues[kind]
            self._queues[kind] = []

        pending = self.fallback.read(kind)
        if not batch and not pending:
            return True

        payload = pending + [item.to_dict() for item in batch]
        try:
            self.sink.send(kind, payload)
        except Exception as e:
            self.last_error = str(e)
            logger.warning(f"Failed to deliver {len(payload)} {kind}, storing locally: {e}")
            self.fallback.write(kind, payload)
            return False

        if pending:
            self.fallback.clear(kind)
            logger.info(f"Recovered {len(pending)} {kind} from fallback store")
        self.delivered[kind] += len(payload)
        return True

    def _schedule_retry(self):
        self.retry_count += 1
        if self.retry_count > self.max_flush_retries:
            self.next_retry_at = None
            logger.error(
                f"Flush failed {self.retry_count} times in a row; "
                "waiting for the next periodic flush"
            )
            return
        delay = self.retry_base_seconds * (2 ** self.retry_count)
        self.next_retry_at = self._clock() + delay
        logger.info(f"Flush retry {self.retry_count}/{self.max_flush_retries} in {delay:.1f}s")

    def run_due_retry(self):
        """Run the scheduled backoff retry if its time has come."""
        if self.next_retry_at is None or self._clock() < self.next_retry_at:
            return None
        self.next_retry_at = None
        return self.flush()

    def set_online(self, online):
        was_online = self.online
        self.online = bool(online)
        if self.online and not was_online:
            logger.info("Connectivity restored, flushing queued telemetry")
            self.flush()
        elif not self.online and was_online:
            logger.warning("Connectivity lost, pausing telemetry flush")

    def drain(self):
        """Final flush before shutdown; whatever fails stays in the fallback store."""
        return self.flush(force=True)

    def status(self):
        return {
            "online": self.online,
            "pending": self.pending_counts(),
            "fallback": self.fallback.counts(),
            "delivered": dict(self.delivered),
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at,
            "failed_flushes": self.failed_flushes,
            "last_error": self.last_error,
        }
