"""SQLite storage for alert rules, alert history, metric samples and the notification ledger."""
import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from models.alerts import AlertRule, AlertHistoryEntry, NotificationLedgerEntry
from models.enums import AlertStatus, Operator, Severity
from models.metrics import MetricSample

logger = logging.getLogger("kpiwatch.db")


def to_db_time(dt):
    """Fixed-width UTC ISO string so lexical order matches time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value):
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Database:
    def __init__(self, db_path="data/kpiwatch.db"):
        self.db_path = db_path
        self.conn = None
        # One connection is shared by worker threads; serialise access to it
        self._lock = threading.RLock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
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
            CREATE TABLE IF NOT EXISTS alert_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope TEXT NOT NULL,
                metric_key TEXT NOT NULL,
                operator TEXT NOT NULL,
                warning_threshold REAL,
                critical_threshold REAL,
                check_interval INTEGER NOT NULL DEFAULT 3600,
                cooldown_seconds INTEGER NOT NULL DEFAULT 3600,
                baseline_value REAL,
                baseline_period TEXT DEFAULT 'previous',
                notify_on_warning INTEGER DEFAULT 1,
                notify_on_critical INTEGER DEFAULT 1,
                notify_on_recovery INTEGER DEFAULT 1,
                notify_roles TEXT DEFAULT '[]',
                notify_emails TEXT DEFAULT '',
                notify_message INTEGER DEFAULT 1,
                notify_email INTEGER DEFAULT 0,
                enabled INTEGER DEFAULT 1,
                name TEXT DEFAULT '',
                description TEXT DEFAULT '',
                current_status TEXT NOT NULL DEFAULT 'ok',
                last_checked_at TEXT,
                last_value REAL,
                last_alert_sent_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (scope, metric_key)
            );

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id INTEGER NOT NULL,
                scope TEXT NOT NULL,
                metric_key TEXT NOT NULL,
                previous_status TEXT NOT NULL,
                new_status TEXT NOT NULL,
                metric_value REAL,
                threshold_value REAL,
                threshold_kind TEXT,
                evaluation_details TEXT,
                notified INTEGER DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_history_rule
                ON alert_history(rule_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_history_created
                ON alert_history(created_at);

            CREATE TABLE IF NOT EXISTS metric_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope TEXT NOT NULL,
                series_key TEXT NOT NULL,
                value REAL NOT NULL,
                label TEXT,
                row_count INTEGER DEFAULT 0,
                source TEXT DEFAULT 'report',
                actor TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_samples_series
                ON metric_samples(scope, series_key, created_at);
            CREATE INDEX IF NOT EXISTS idx_samples_created
                ON metric_samples(created_at);

            CREATE TABLE IF NOT EXISTS notification_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope TEXT NOT NULL,
                rule_id INTEGER NOT NULL,
                severity TEXT NOT NULL,
                metric_key TEXT,
                alert_name TEXT,
                triggered_value REAL,
                threshold_value REAL,
                details TEXT,
                confirmed INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE (scope, rule_id, severity)
            );

            CREATE INDEX IF NOT EXISTS idx_ledger_created
                ON notification_ledger(created_at);
        """)
        self.conn.commit()

    # --- Alert Rules ---

    def _rule_params(self, rule):
        return (
            rule.scope, rule.metric_key, Operator(rule.operator).value,
            rule.warning_threshold, rule.critical_threshold,
            rule.check_interval_seconds, rule.cooldown_seconds,
            rule.baseline_value, rule.baseline_period,
            int(rule.notify_on_warning), int(rule.notify_on_critical), int(rule.notify_on_recovery),
            json.dumps(list(rule.notify_roles)), rule.notify_emails,
            int(rule.notify_message), int(rule.notify_email), int(rule.enabled),
            rule.name, rule.description,
            AlertStatus(rule.current_status).value, to_db_time(rule.last_checked_at),
            rule.last_value, to_db_time(rule.last_alert_sent_at),
            to_db_time(rule.created_at), to_db_time(rule.updated_at),
        )

    def insert_rule(self, rule):
        with self._lock:
            cur = self.conn.execute("""
                INSERT INTO alert_rules
                (scope, metric_key, operator, warning_threshold, critical_threshold,
                 check_interval, cooldown_seconds, baseline_value, baseline_period,
                 notify_on_warning, notify_on_critical, notify_on_recovery,
                 notify_roles, notify_emails, notify_message, notify_email, enabled,
                 name, description, current_status, last_checked_at, last_value,
                 last_alert_sent_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._rule_params(rule))
            self.conn.commit()
        logger.debug(f"Inserted rule {cur.lastrowid} for {rule.scope}/{rule.metric_key}")
        return cur.lastrowid

    def update_rule(self, rule):
        with self._lock:
            self.conn.execute("""
                UPDATE alert_rules SET
                    scope = ?, metric_key = ?, operator = ?, warning_threshold = ?,
                    critical_threshold = ?, check_interval = ?, cooldown_seconds = ?,
                    baseline_value = ?, baseline_period = ?, notify_on_warning = ?,
                    notify_on_critical = ?, notify_on_recovery = ?, notify_roles = ?,
                    notify_emails = ?, notify_message = ?, notify_email = ?, enabled = ?,
                    name = ?, description = ?, current_status = ?, last_checked_at = ?,
                    last_value = ?, last_alert_sent_at = ?, created_at = ?, updated_at = ?
                WHERE id = ?
            """, self._rule_params(rule) + (rule.id,))
            self.conn.commit()

    def _row_to_rule(self, row):
        return AlertRule(
            id=row["id"],
            scope=row["scope"],
            metric_key=row["metric_key"],
            operator=Operator(row["operator"]),
            warning_threshold=row["warning_threshold"],
            critical_threshold=row["critical_threshold"],
            check_interval_seconds=row["check_interval"],
            cooldown_seconds=row["cooldown_seconds"],
            baseline_value=row["baseline_value"],
            baseline_period=row["baseline_period"],
            notify_on_warning=bool(row["notify_on_warning"]),
            notify_on_critical=bool(row["notify_on_critical"]),
            notify_on_recovery=bool(row["notify_on_recovery"]),
            notify_roles=json.loads(row["notify_roles"] or "[]"),
            notify_emails=row["notify_emails"] or "",
            notify_message=bool(row["notify_message"]),
            notify_email=bool(row["notify_email"]),
            enabled=bool(row["enabled"]),
            name=row["name"] or "",
            description=row["description"] or "",
            current_status=AlertStatus(row["current_status"]),
            last_checked_at=from_db_time(row["last_checked_at"]),
            last_value=row["last_value"],
            last_alert_sent_at=from_db_time(row["last_alert_sent_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    def get_rule(self, rule_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM alert_rules WHERE id = ?", (rule_id,)
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def find_rule(self, scope, metric_key):
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM alert_rules WHERE scope = ? AND metric_key = ?",
                (scope, metric_key),
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(self, scope=None, enabled_only=False):
        query = "SELECT * FROM alert_rules WHERE 1=1"
        params = []
        if scope is not None:
            query += " AND scope = ?"
            params.append(scope)
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY scope, metric_key"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def list_scopes(self):
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT scope FROM alert_rules ORDER BY scope"
            ).fetchall()
        return [r["scope"] for r in rows]

    def delete_rule(self, rule_id):
        """Delete a rule together with its history and ledger rows."""
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM alert_history WHERE rule_id = ?", (rule_id,))
            self.conn.execute("DELETE FROM notification_ledger WHERE rule_id = ?", (rule_id,))
            cur = self.conn.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
        return cur.rowcount > 0

    def delete_scope(self, scope):
        """Remove everything owned by a scope (block/dashboard instance removed)."""
        with self._lock, self.conn:
            counts = {}
            for table in ("alert_history", "notification_ledger", "metric_samples", "alert_rules"):
                cur = self.conn.execute(f"DELETE FROM {table} WHERE scope = ?", (scope,))
                counts[table] = cur.rowcount
        return counts

    # --- Alert History ---

    def insert_history(self, entry):
        with self._lock:
            cur = self.conn.execute("""
                INSERT INTO alert_history
                (rule_id, scope, metric_key, previous_status, new_status, metric_value,
                 threshold_value, threshold_kind, evaluation_details, notified, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.rule_id, entry.scope, entry.metric_key,
                AlertStatus(entry.previous_status).value, AlertStatus(entry.new_status).value,
                entry.metric_value, entry.threshold_value, entry.threshold_kind,
                entry.evaluation_details, int(entry.notified), to_db_time(entry.created_at),
            ))
            self.conn.commit()
        return cur.lastrowid

    def _row_to_history(self, row):
        return AlertHistoryEntry(
            id=row["id"],
            rule_id=row["rule_id"],
            scope=row["scope"],
            metric_key=row["metric_key"],
            previous_status=AlertStatus(row["previous_status"]),
            new_status=AlertStatus(row["new_status"]),
            metric_value=row["metric_value"],
            threshold_value=row["threshold_value"],
            threshold_kind=row["threshold_kind"],
            evaluation_details=row["evaluation_details"] or "{}",
            notified=bool(row["notified"]),
            created_at=from_db_time(row["created_at"]),
        )

    def get_rule_history(self, rule_id, limit=50):
        with self._lock:
            rows = self.conn.execute("""
                SELECT * FROM alert_history WHERE rule_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, (rule_id, limit)).fetchall()
        return [self._row_to_history(r) for r in rows]

    def get_scope_history(self, scope, limit=50):
        """History rows for a scope joined with the rule's display name."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT h.*, a.name AS alert_name
                FROM alert_history h
                JOIN alert_rules a ON h.rule_id = a.id
                WHERE h.scope = ?
                ORDER BY h.created_at DESC, h.id DESC LIMIT ?
            """, (scope, limit)).fetchall()
        result = []
        for r in rows:
            entry = self._row_to_history(r)
            result.append((entry, r["alert_name"] or entry.metric_key))
        return result

    def count_history(self, rule_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM alert_history WHERE rule_id = ?", (rule_id,)
            ).fetchone()
        return row["cnt"]

    def trim_history(self, rule_id, keep):
        """Keep only the newest `keep` history rows of a rule."""
        with self._lock:
            cur = self.conn.execute("""
                DELETE FROM alert_history
                WHERE rule_id = ? AND id NOT IN (
                    SELECT id FROM alert_history WHERE rule_id = ?
                    ORDER BY created_at DESC, id DESC LIMIT ?
                )
            """, (rule_id, rule_id, keep))
            self.conn.commit()
        return cur.rowcount

    def mark_history_notified(self, history_id):
        with self._lock:
            self.conn.execute(
                "UPDATE alert_history SET notified = 1 WHERE id = ?", (history_id,)
            )
            self.conn.commit()

    def delete_history_before(self, cutoff):
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM alert_history WHERE created_at < ?", (to_db_time(cutoff),)
            )
            self.conn.commit()
        return cur.rowcount

    # --- Metric Samples ---

    def insert_sample(self, sample):
        with self._lock:
            cur = self.conn.execute("""
                INSERT INTO metric_samples
                (scope, series_key, value, label, row_count, source, actor, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                sample.scope, sample.series_key, sample.value, sample.label,
                sample.row_count, sample.source, sample.actor, to_db_time(sample.created_at),
            ))
            self.conn.commit()
        return cur.lastrowid

    def _row_to_sample(self, row):
        return MetricSample(
            id=row["id"],
            scope=row["scope"],
            series_key=row["series_key"],
            value=row["value"],
            label=row["label"],
            row_count=row["row_count"] or 0,
            source=row["source"],
            actor=row["actor"],
            created_at=from_db_time(row["created_at"]),
        )

    def get_latest_samples(self, scope, series_key, limit=10, offset=0):
        """Samples of one series, newest first."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT * FROM metric_samples
                WHERE scope = ? AND series_key = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
            """, (scope, series_key, limit, offset)).fetchall()
        return [self._row_to_sample(r) for r in rows]

    def count_samples(self, scope, series_key):
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM metric_samples WHERE scope = ? AND series_key = ?",
                (scope, series_key),
            ).fetchone()
        return row["cnt"]

    def trim_samples(self, scope, series_key, keep):
        """Keep only the newest `keep` samples of a series."""
        with self._lock:
            cur = self.conn.execute("""
                DELETE FROM metric_samples
                WHERE scope = ? AND series_key = ? AND id NOT IN (
                    SELECT id FROM metric_samples WHERE scope = ? AND series_key = ?
                    ORDER BY created_at DESC, id DESC LIMIT ?
                )
            """, (scope, series_key, scope, series_key, keep))
            self.conn.commit()
        return cur.rowcount

    def get_series_stats(self, scope, series_key):
        with self._lock:
            row = self.conn.execute("""
                SELECT
                    COUNT(*) AS count,
                    MIN(value) AS min_value,
                    MAX(value) AS max_value,
                    AVG(value) AS avg_value,
                    MIN(created_at) AS first_recorded,
                    MAX(created_at) AS last_recorded
                FROM metric_samples
                WHERE scope = ? AND series_key = ?
            """, (scope, series_key)).fetchone()
        return dict(row)

    def list_series(self, scope):
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT series_key FROM metric_samples WHERE scope = ? ORDER BY series_key",
                (scope,),
            ).fetchall()
        return [r["series_key"] for r in rows]

    def delete_samples_before(self, cutoff):
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM metric_samples WHERE created_at < ?", (to_db_time(cutoff),)
            )
            self.conn.commit()
        return cur.rowcount

    # --- Notification Ledger ---

    def _row_to_ledger(self, row):
        return NotificationLedgerEntry(
            id=row["id"],
            scope=row["scope"],
            rule_id=row["rule_id"],
            severity=Severity(row["severity"]),
            metric_key=row["metric_key"] or "",
            alert_name=row["alert_name"] or "",
            triggered_value=row["triggered_value"],
            threshold_value=row["threshold_value"],
            details=row["details"] or "",
            confirmed=bool(row["confirmed"]),
            created_at=from_db_time(row["created_at"]),
        )

    def ledger_exists(self, scope, rule_id, severity):
        with self._lock:
            row = self.conn.execute("""
                SELECT 1 FROM notification_ledger
                WHERE scope = ? AND rule_id = ? AND severity = ?
            """, (scope, rule_id, Severity(severity).value)).fetchone()
        return row is not None

    def insert_ledger_if_absent(self, entry):
        """Atomic insert on (scope, rule_id, severity). True if this call created the row."""
        with self._lock:
            cur = self.conn.execute("""
                INSERT OR IGNORE INTO notification_ledger
                (scope, rule_id, severity, metric_key, alert_name, triggered_value,
                 threshold_value, details, confirmed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._ledger_params(entry))
            self.conn.commit()
        return cur.rowcount == 1

    def _ledger_params(self, entry):
        return (
            entry.scope, entry.rule_id, Severity(entry.severity).value, entry.metric_key,
            entry.alert_name, entry.triggered_value, entry.threshold_value,
            entry.details, int(entry.confirmed), to_db_time(entry.created_at),
        )

    def record_ledger_fire(self, entry, clear_severities):
        """Delete the opposite-class rows and upsert the confirmed row in one transaction."""
        with self._lock, self.conn:
            placeholders = ", ".join("?" for _ in clear_severities)
            if clear_severities:
                self.conn.execute(f"""
                    DELETE FROM notification_ledger
                    WHERE scope = ? AND rule_id = ? AND severity IN ({placeholders})
                """, (entry.scope, entry.rule_id, *[Severity(s).value for s in clear_severities]))
            cur = self.conn.execute("""
                INSERT OR IGNORE INTO notification_ledger
                (scope, rule_id, severity, metric_key, alert_name, triggered_value,
                 threshold_value, details, confirmed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._ledger_params(entry))
            inserted = cur.rowcount == 1
            if not inserted:
                # Row came from a claim; confirm it in place
                self.conn.execute("""
                    UPDATE notification_ledger
                    SET confirmed = 1, details = ?, triggered_value = ?, threshold_value = ?
                    WHERE scope = ? AND rule_id = ? AND severity = ? AND confirmed = 0
                """, (entry.details, entry.triggered_value, entry.threshold_value,
                      entry.scope, entry.rule_id, Severity(entry.severity).value))
        return inserted

    def delete_ledger(self, scope, rule_id, severity=None, unconfirmed_only=False):
        query = "DELETE FROM notification_ledger WHERE scope = ? AND rule_id = ?"
        params = [scope, rule_id]
        if severity is not None:
            query += " AND severity = ?"
            params.append(Severity(severity).value)
        if unconfirmed_only:
            query += " AND confirmed = 0"
        with self._lock:
            cur = self.conn.execute(query, params)
            self.conn.commit()
        return cur.rowcount

    def get_ledger(self, scope, rule_id=None):
        query = "SELECT * FROM notification_ledger WHERE scope = ?"
        params = [scope]
        if rule_id is not None:
            query += " AND rule_id = ?"
            params.append(rule_id)
        query += " ORDER BY created_at ASC, id ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_ledger(r) for r in rows]

    def delete_ledger_before(self, cutoff, protect_active=False):
        query = "DELETE FROM notification_ledger WHERE created_at < ?"
        if protect_active:
            # Keep breach rows whose rule has not recovered yet
            query += """
                AND NOT (
                    severity IN ('warning', 'critical')
                    AND rule_id IN (SELECT id FROM alert_rules WHERE current_status != 'ok')
                )
            """
        with self._lock:
            cur = self.conn.execute(query, (to_db_time(cutoff),))
            self.conn.commit()
        return cur.rowcount
