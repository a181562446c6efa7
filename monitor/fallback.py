"""Durable fallback slots for batches the sink could not accept."""
import json
import logging
import threading

logger = logging.getLogger("telemon.fallback")

SLOT_KEYS = {
    "errors": "pendingErrors",
    "metrics": "pendingMetrics",
    "actions": "pendingActions",
}


class FallbackStore:
    """JSON arrays kept in the database key/value table.

    Reads are best-effort: a missing, empty or malformed slot reads as an
    empty list. Without a database the slots live in memory only.
    """

    def __init__(self, db=None):
        self.db = db
        self._memory: dict[str, str] = {}
        self._lock = threading.Lock()

    def _get_raw(self, key):
        if self.db is not None:
            return self.db.kv_get(key)
        return self._memory.get(key)

    def _set_raw(self, key, value):
        if self.db is not None:
            self.db.kv_set(key, value)
        else:
            self._memory[key] = value

    def read(self, kind):
        key = SLOT_KEYS[kind]
        with self._lock:
            try:
                raw = self._get_raw(key)
            except Exception as e:
                logger.warning(f"Could not read fallback slot {key}: {e}")
                return []
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Fallback slot {key} is malformed, treating as empty")
            return []
        if not isinstance(items, list):
            logger.warning(f"Fallback slot {key} does not hold a list, treating as empty")
            return []
        return items

    def write(self, kind, items):
        key = SLOT_KEYS[kind]
        with self._lock:
            try:
                self._set_raw(key, json.dumps(list(items), default=str))
            except Exception as e:
                logger.error(f"Could not write fallback slot {key}: {e}")
                return False
        return True

    def append(self, kind, items):
        return self.write(kind, self.read(kind) + list(items))

    def clear(self, kind):
        return self.write(kind, [])

    def counts(self):
        return {kind: len(self.read(kind)) for kind in SLOT_KEYS}
