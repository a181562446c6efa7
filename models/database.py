"""SQLite store for error/metric history, security events, alerts and notifications."""
import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from models.alerts import Alert
from models.enums import Severity

logger = logging.getLogger("telemon.db")


def _dumps(value):
    return json.dumps(value or {}, default=str)


def _loads(value):
    if not value:
        return {}
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return {}


class Database:
    def __init__(self, db_path="data/telemetry.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.RLock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        return self

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS error_reports (
                id TEXT PRIMARY KEY,
                context TEXT NOT NULL,
                severity TEXT NOT NULL,
                message TEXT,
                error_type TEXT,
                stack_trace TEXT,
                user_id TEXT,
                timestamp TEXT NOT NULL,
                ts REAL NOT NULL,
                metadata TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_errors_ts
                ON error_reports(ts);

            CREATE TABLE IF NOT EXISTS metric_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                value REAL NOT NULL,
                user_id TEXT,
                timestamp TEXT NOT NULL,
                ts REAL NOT NULL,
                metadata TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_metrics_name_ts
                ON metric_samples(name, ts);

            CREATE TABLE IF NOT EXISTS security_events (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                action TEXT NOT NULL,
                resource TEXT,
                user_id TEXT,
                details TEXT,
                timestamp TEXT NOT NULL,
                ts REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS alerts (
                id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                severity TEXT NOT NULL,
                status TEXT NOT NULL,
                triggered_at TEXT NOT NULL,
                acknowledged_at TEXT,
                acknowledged_by TEXT,
                resolved_at TEXT,
                resolved_by TEXT,
                metadata TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_triggered
                ON alerts(triggered_at);

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT,
                severity TEXT,
                read INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                metadata TEXT
            );

            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            );
        """)
        self.conn.commit()

    def _execute(self, sql, params=()):
        with self._lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur

    def _fetchall(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetchone(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # --- Error Reports ---

    def save_error_event(self, event):
        self._execute("""
            INSERT OR IGNORE INTO error_reports
            (id, context, severity, message, error_type, stack_trace, user_id, timestamp, ts, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.id, event.context, Severity(event.severity).value, event.message,
            event.error_type, event.stack_trace, event.user_id,
            event.timestamp.isoformat(), event.timestamp.timestamp(), _dumps(event.metadata),
        ))

    def count_errors(self, since_ts, until_ts=None, severity=None):
        """Count error events with ``since_ts <= ts <= until_ts``."""
        sql = "SELECT COUNT(*) AS cnt FROM error_reports WHERE ts >= ?"
        params = [since_ts]
        if until_ts is not None:
            sql += " AND ts <= ?"
            params.append(until_ts)
        if severity:
            sql += " AND severity = ?"
            params.append(Severity(severity).value)
        return self._fetchone(sql, params)["cnt"]

    def get_recent_errors(self, limit=50):
        rows = self._fetchall("""
            SELECT * FROM error_reports ORDER BY ts DESC LIMIT ?
        """, (limit,))
        out = []
        for r in rows:
            d = dict(r)
            d["metadata"] = _loads(d["metadata"])
            out.append(d)
        return out

    def get_error_summary(self, since_ts):
        rows = self._fetchall("""
            SELECT severity, COUNT(*) AS count FROM error_reports
            WHERE ts >= ? GROUP BY severity
        """, (since_ts,))
        summary = {s.value: 0 for s in Severity}
        summary.update({r["severity"]: r["count"] for r in rows})
        return summary

    def get_top_error_contexts(self, since_ts, limit=5):
        rows = self._fetchall("""
            SELECT context, COUNT(*) AS count FROM error_reports
            WHERE ts >= ? GROUP BY context ORDER BY count DESC LIMIT ?
        """, (since_ts, limit))
        return [(r["context"], r["count"]) for r in rows]

    # --- Metric Samples ---

    def save_metric_samples(self, samples):
        with self._lock:
            self.conn.executemany("""
                INSERT INTO metric_samples (name, value, user_id, timestamp, ts, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (s.name, s.value, s.user_id, s.timestamp.isoformat(),
                 s.timestamp.timestamp(), _dumps(s.metadata))
                for s in samples
            ])
            self.conn.commit()

    def get_metric_values(self, name, since_ts, until_ts=None):
        sql = "SELECT value FROM metric_samples WHERE name = ? AND ts >= ?"
        params = [name, since_ts]
        if until_ts is not None:
            sql += " AND ts <= ?"
            params.append(until_ts)
        return [r["value"] for r in self._fetchall(sql + " ORDER BY ts", params)]

    def get_metric_summary(self, since_ts):
        rows = self._fetchall("""
            SELECT name, COUNT(*) AS count, AVG(value) AS avg, MAX(value) AS max
            FROM metric_samples WHERE ts >= ? GROUP BY name ORDER BY name
        """, (since_ts,))
        return [dict(r) for r in rows]

    # --- Security Events ---

    def save_security_event(self, event):
        self._execute("""
            INSERT OR IGNORE INTO security_events
            (id, type, severity, action, resource, user_id, details, timestamp, ts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.id, event.type.value, event.severity.value, event.action, event.resource,
            event.user_id, _dumps(event.details), event.timestamp.isoformat(),
            event.timestamp.timestamp(),
        ))

    def get_security_events(self, since_ts, action=None):
        sql = "SELECT * FROM security_events WHERE ts >= ?"
        params = [since_ts]
        if action:
            sql += " AND action = ?"
            params.append(action)
        rows = self._fetchall(sql + " ORDER BY ts", params)
        out = []
        for r in rows:
            d = dict(r)
            d["details"] = _loads(d["details"])
            out.append(d)
        return out

    # --- Alerts ---

    def save_alert(self, alert):
        """Insert or update an alert row (every state transition lands here)."""
        d = alert.to_dict()
        self._execute("""
            INSERT INTO alerts
            (id, rule_id, title, description, severity, status, triggered_at,
             acknowledged_at, acknowledged_by, resolved_at, resolved_by, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                acknowledged_at = excluded.acknowledged_at,
                acknowledged_by = excluded.acknowledged_by,
                resolved_at = excluded.resolved_at,
                resolved_by = excluded.resolved_by,
                metadata = excluded.metadata
        """, (
            d["id"], d["rule_id"], d["title"], d["description"], d["severity"], d["status"],
            d["triggered_at"], d["acknowledged_at"], d["acknowledged_by"],
            d["resolved_at"], d["resolved_by"], _dumps(d["metadata"]),
        ))

    def _row_to_alert(self, row):
        d = dict(row)
        d["metadata"] = _loads(d["metadata"])
        return Alert.from_dict(d)

    def get_alert(self, alert_id):
        row = self._fetchone("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return self._row_to_alert(row) if row else None

    def get_alert_history(self, limit=50):
        rows = self._fetchall("""
            SELECT * FROM alerts ORDER BY triggered_at DESC LIMIT ?
        """, (limit,))
        return [self._row_to_alert(r) for r in rows]

    def get_open_alerts(self):
        rows = self._fetchall("""
            SELECT * FROM alerts WHERE status != 'resolved' ORDER BY triggered_at
        """)
        return [self._row_to_alert(r) for r in rows]

    def get_alert_stats(self, since_iso):
        rows = self._fetchall("""
            SELECT severity, COUNT(*) AS count FROM alerts
            WHERE triggered_at >= ? GROUP BY severity
        """, (since_iso,))
        return {r["severity"]: r["count"] for r in rows}

    # --- In-app Notifications ---

    def insert_notification(self, notification):
        self._execute("""
            INSERT OR REPLACE INTO notifications
            (id, type, title, message, severity, read, created_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            notification["id"], notification["type"], notification["title"],
            notification.get("message"), notification.get("severity"),
            int(notification.get("read", False)), notification["created_at"],
            _dumps(notification.get("metadata")),
        ))

    def get_notifications(self, unread_only=False, limit=50):
        sql = "SELECT * FROM notifications"
        if unread_only:
            sql += " WHERE read = 0"
        rows = self._fetchall(sql + " ORDER BY created_at DESC LIMIT ?", (limit,))
        out = []
        for r in rows:
            d = dict(r)
            d["metadata"] = _loads(d["metadata"])
            d["read"] = bool(d["read"])
            out.append(d)
        return out

    def mark_notification_read(self, notification_id):
        self._execute("UPDATE notifications SET read = 1 WHERE id = ?", (notification_id,))

    # --- Key/Value slots ---

    def kv_get(self, key):
        row = self._fetchone("SELECT value FROM kv_store WHERE key = ?", (key,))
        return row["value"] if row else None

    def kv_set(self, key, value):
        self._execute("""
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """, (key, value, datetime.now(timezone.utc).isoformat()))
