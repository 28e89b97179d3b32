# storage.py
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import timedelta

from models import (
    IN_PROGRESS,
    MUTABLE_STATUSES,
    SCHEDULED,
    STATUSES,
    ScheduledJob,
    to_iso,
    utcnow,
)

DEFAULT_DB_PATH = "scheduler.db"

DEFAULT_CONFIG = {
    "poll_interval": "60",
    "batch_size": "50",
    "max_attempts": "3",
    "lease_seconds": "600",
    "retry_backoff_seconds": "30",
    "send_timeout": "30",
    "concurrency": "4",
    "link_ttl_seconds": str(7 * 24 * 3600),
}

JOB_COLUMNS = (
    "id", "owner_id", "content_ref", "recipient_contact_id", "recipient_phone",
    "recipient_email", "channels", "scheduled_for", "status", "attempts",
    "max_attempts", "next_attempt_at", "last_attempt_at", "delivered_at",
    "last_error", "metadata", "worker_id", "lease_until", "created_at", "updated_at",
)

# Columns callers may change through update_pending / finish
_UPDATABLE = {
    "scheduled_for", "channels", "status", "attempts", "next_attempt_at",
    "last_attempt_at", "delivered_at", "last_error",
}


def _db_value(value):
    if hasattr(value, "isoformat"):
        return to_iso(value)
    return value


class Storage:
    def __init__(self, db_path=DEFAULT_DB_PATH):
        self.db_path = db_path
        # Autocommit; multi-statement work goes through transaction()
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Better concurrency for multiple workers
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=30000;")

        self._init_schema()

    def close(self):
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE takes the write lock up front, so a read-then-write is atomic."""
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def _init_schema(self):
        with self._lock:
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                content_ref TEXT NOT NULL,
                recipient_contact_id TEXT,
                recipient_phone TEXT,
                recipient_email TEXT,
                channels TEXT NOT NULL,
                scheduled_for TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                next_attempt_at TEXT,
                last_attempt_at TEXT,
                delivered_at TEXT,
                last_error TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                worker_id TEXT,
                lease_until TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs (status, scheduled_for, id)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs (owner_id, scheduled_for)")

            # Transition history written by the audit sink
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS job_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                old_status TEXT,
                new_status TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                error TEXT,
                worker_id TEXT,
                created_at TEXT NOT NULL
            )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events (job_id, id)")

            # Config table
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    # ---------------- Jobs ----------------
    def insert_job(self, job):
        row = job.to_dict()
        row["metadata"] = json.dumps(job.metadata or {})
        placeholders = ", ".join("?" for _ in JOB_COLUMNS)
        with self._lock:
            self.conn.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in JOB_COLUMNS),
            )
        return job.id

    def get_job(self, job_id):
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return ScheduledJob.from_row(row) if row else None

    def _filters(self, owner_id, status, search):
        clauses, params = [], []
        if owner_id:
            clauses.append("owner_id=?")
            params.append(owner_id)
        if status and status != "all":
            clauses.append("status=?")
            params.append(status)
        if search:
            clauses.append("(content_ref LIKE ? OR metadata LIKE ? OR recipient_email LIKE ? OR recipient_phone LIKE ?)")
            params.extend([f"%{search}%"] * 4)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_jobs(self, owner_id=None, status=None, search=None, limit=50, offset=0, newest_first=False):
        where, params = self._filters(owner_id, status, search)
        order = "created_at DESC" if newest_first else "scheduled_for ASC, id ASC"
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY {order} LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [ScheduledJob.from_row(r) for r in rows]

    def count_jobs(self, owner_id=None, status=None, search=None):
        where, params = self._filters(owner_id, status, search)
        with self._lock:
            return self.conn.execute(f"SELECT COUNT(*) AS c FROM jobs {where}", params).fetchone()["c"]

    def update_pending(self, job_id, fields, now=None):
        """Apply fields only while the job is still scheduled or paused."""
        return self._guarded_update(
            job_id, fields, now,
            f"status IN ({', '.join('?' for _ in MUTABLE_STATUSES)})", MUTABLE_STATUSES,
        )

    def finish(self, job_id, worker_id, fields, now=None):
        """Commit a final transition; False if the claim is no longer ours."""
        fields = dict(fields, worker_id=None, lease_until=None)
        return self._guarded_update(job_id, fields, now, "status=? AND worker_id=?", (IN_PROGRESS, worker_id))

    def _guarded_update(self, job_id, fields, now, guard, guard_params):
        unknown = set(fields) - _UPDATABLE - {"worker_id", "lease_until"}
        if unknown:
            raise ValueError(f"not updatable: {', '.join(sorted(unknown))}")
        fields = dict(fields, updated_at=now or utcnow())
        assignments = ", ".join(f"{k}=?" for k in fields)
        values = tuple(_db_value(v) for v in fields.values())
        with self._lock:
            updated = self.conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id=? AND {guard}",
                (*values, job_id, *guard_params),
            ).rowcount
        return updated == 1

    # ---------------- Claims ----------------
    def claim_due(self, worker_id, limit, now, lease_seconds):
        """
        Atomically claim up to `limit` due jobs:
        - status = 'scheduled' and scheduled_for <= now
        - attempts below max_attempts
        - backoff gate (next_attempt_at) absent or passed
        Earliest scheduled_for first, ties by id.
        """
        now_iso = to_iso(now)
        lease_until = to_iso(now + timedelta(seconds=lease_seconds))
        claimed = []
        with self.transaction() as conn:
            rows = conn.execute("""
                SELECT id FROM jobs
                WHERE status=?
                  AND scheduled_for <= ?
                  AND attempts < max_attempts
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                ORDER BY scheduled_for ASC, id ASC
                LIMIT ?
            """, (SCHEDULED, now_iso, now_iso, limit)).fetchall()

            for row in rows:
                updated = conn.execute("""
                    UPDATE jobs
                    SET status=?, worker_id=?, lease_until=?, updated_at=?
                    WHERE id=? AND status=?
                """, (IN_PROGRESS, worker_id, lease_until, now_iso, row["id"], SCHEDULED)).rowcount
                if updated == 1:
                    claimed.append(row["id"])

            jobs = [
                ScheduledJob.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone())
                for job_id in claimed
            ]
        return jobs

    def renew_lease(self, job_id, worker_id, now, lease_seconds):
        """Extend our claim; False if the job was taken over or finished meanwhile."""
        with self._lock:
            updated = self.conn.execute("""
                UPDATE jobs SET lease_until=?, updated_at=?
                WHERE id=? AND status=? AND worker_id=?
            """, (to_iso(now + timedelta(seconds=lease_seconds)), to_iso(now),
                  job_id, IN_PROGRESS, worker_id)).rowcount
        return updated == 1

    def claim_stale(self, worker_id, limit, now, lease_seconds):
        """Take over in-progress jobs whose claim lease has run out."""
        now_iso = to_iso(now)
        lease_until = to_iso(now + timedelta(seconds=lease_seconds))
        with self.transaction() as conn:
            rows = conn.execute("""
                SELECT * FROM jobs
                WHERE status=? AND lease_until IS NOT NULL AND lease_until <= ?
                ORDER BY lease_until ASC, id ASC
                LIMIT ?
            """, (IN_PROGRESS, now_iso, limit)).fetchall()

            jobs = []
            for row in rows:
                updated = conn.execute("""
                    UPDATE jobs
                    SET worker_id=?, lease_until=?, updated_at=?
                    WHERE id=? AND status=? AND lease_until <= ?
                """, (worker_id, lease_until, now_iso, row["id"], IN_PROGRESS, now_iso)).rowcount
                if updated == 1:
                    job = ScheduledJob.from_row(row)
                    job.worker_id = worker_id
                    jobs.append(job)
        return jobs

    # ---------------- Events ----------------
    def add_event(self, event):
        with self._lock:
            self.conn.execute("""
                INSERT INTO job_events (job_id, old_status, new_status, attempts, error, worker_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (event.job_id, event.old_status, event.new_status, event.attempts,
                  event.error, event.worker_id, to_iso(event.at)))

    def list_events(self, job_id):
        with self._lock:
            return self.conn.execute(
                "SELECT * FROM job_events WHERE job_id=? ORDER BY id", (job_id,)
            ).fetchall()

    # ---------------- Stats ----------------
    def stats(self, owner_id=None, now=None):
        now_iso = to_iso(now or utcnow())
        where, params = self._filters(owner_id, None, None)
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(f"SELECT status, COUNT(*) AS c FROM jobs {where} GROUP BY status", params)
            by_status = {row["status"]: row["c"] for row in cur.fetchall()}
            cur.execute(f"SELECT channels, COUNT(*) AS c FROM jobs {where} GROUP BY channels", params)
            by_channels = {row["channels"]: row["c"] for row in cur.fetchall()}
            upcoming_where = f"{where} AND" if where else "WHERE"
            cur.execute(
                f"SELECT COUNT(*) AS c FROM jobs {upcoming_where} status=? AND scheduled_for > ?",
                (*params, SCHEDULED, now_iso),
            )
            upcoming = cur.fetchone()["c"]

        result = {"total": sum(by_status.values()), "upcoming": upcoming, "channels": by_channels}
        for status in STATUSES:
            result[status] = by_status.get(status, 0)
        return result

    def delivery_metrics(self):
        """Average attempts and scheduled-to-delivered latency over delivered jobs."""
        with self._lock:
            row = self.conn.execute("""
                SELECT AVG(attempts) AS avg_attempts,
                       AVG((julianday(delivered_at) - julianday(scheduled_for)) * 86400.0) AS avg_latency
                FROM jobs WHERE status='delivered'
            """).fetchone()
        return {"avg_attempts": row["avg_attempts"], "avg_latency": row["avg_latency"]}

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(utcnow())
        with self._lock:
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        with self._lock:
            return self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()

    def get_setting(self, key, cast=int):
        """Config value with the engine default as fallback."""
        value = self.get_config(key, default=DEFAULT_CONFIG.get(key))
        return cast(value) if value is not None else None
