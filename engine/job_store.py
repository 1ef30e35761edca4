import json
import logging
import os
import sqlite3
import time
from dataclasses import asdict, dataclass

from engine.clock import DEFAULT_CLOCK, timestamp_from_epoch

JOB_STATUSES = (
    "queued",
    "starting",
    "downloading",
    "paused",
    "completed",
    "failed",
    "canceled",
    "deleted",
)
ACTIVE_STATUSES = ("starting", "downloading", "paused")
_CANCELABLE_STATUSES = ("queued", "starting", "downloading", "paused")
_RETRYABLE_STATUSES = ("failed", "canceled")
_DEFAULT_PRIORITY = 100
_DEFAULT_FETCH_LIMIT = 25


def _job_log(level, *, job_id, provider_id, event, **fields):
    payload = {
        "event": event,
        "job_id": job_id,
        "provider_id": provider_id,
        **fields,
    }
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def _placeholders(values):
    return ", ".join("?" for _ in values)


def ensure_schema(conn):
    cur = conn.cursor()
    statuses = ", ".join(f"'{status}'" for status in JOB_STATUSES)
    cur.execute(
        f"""
        CREATE TABLE IF NOT EXISTS jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 0,
            provider_id INTEGER NOT NULL,
            external_id TEXT NOT NULL,
            title TEXT NOT NULL,
            source_url TEXT NOT NULL DEFAULT '',
            category TEXT,
            status TEXT NOT NULL DEFAULT 'queued' CHECK (status IN ({statuses})),
            progress INTEGER NOT NULL DEFAULT 0,
            speed_bps INTEGER,
            eta_seconds INTEGER,
            priority INTEGER NOT NULL DEFAULT 100,
            position INTEGER NOT NULL DEFAULT 0,
            aria2_gid TEXT,
            tmp_path TEXT,
            final_path TEXT,
            error_text TEXT,
            file_size_bytes INTEGER,
            deleted_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    existing = {row[1] for row in cur.execute("PRAGMA table_info(jobs)").fetchall()}
    columns = {
        "category": "category TEXT",
        "speed_bps": "speed_bps INTEGER",
        "eta_seconds": "eta_seconds INTEGER",
        "priority": "priority INTEGER NOT NULL DEFAULT 100",
        "position": "position INTEGER NOT NULL DEFAULT 0",
        "aria2_gid": "aria2_gid TEXT",
        "tmp_path": "tmp_path TEXT",
        "final_path": "final_path TEXT",
        "error_text": "error_text TEXT",
        "file_size_bytes": "file_size_bytes INTEGER",
        "deleted_at": "deleted_at TIMESTAMP",
    }
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE jobs ADD COLUMN {ddl}")
            logging.warning("Migrated jobs: added column %s", name)

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS providers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            key TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            config_json TEXT NOT NULL DEFAULT '{}',
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT,
            type TEXT NOT NULL DEFAULT 'string',
            updated_at TIMESTAMP
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            action TEXT NOT NULL,
            subject_type TEXT NOT NULL,
            subject_id TEXT,
            payload_json TEXT,
            created_at TIMESTAMP NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            job_id INTEGER,
            type TEXT NOT NULL,
            payload_json TEXT,
            read_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            created_at TIMESTAMP NOT NULL
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_provider ON jobs (provider_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_order ON jobs (priority, position)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_subject ON audit_log (subject_type, subject_id)")
    conn.commit()


@dataclass(frozen=True)
class Job:
    id: int
    user_id: int
    provider_id: int
    external_id: str
    title: str
    source_url: str
    category: str | None
    status: str
    progress: int
    speed_bps: int | None
    eta_seconds: int | None
    priority: int
    position: int
    aria2_gid: str | None
    tmp_path: str | None
    final_path: str | None
    error_text: str | None
    file_size_bytes: int | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            provider_id=row["provider_id"],
            external_id=row["external_id"],
            title=row["title"],
            source_url=row["source_url"] or "",
            category=row["category"],
            status=row["status"],
            progress=row["progress"] or 0,
            speed_bps=row["speed_bps"],
            eta_seconds=row["eta_seconds"],
            priority=row["priority"],
            position=row["position"],
            aria2_gid=row["aria2_gid"],
            tmp_path=row["tmp_path"],
            final_path=row["final_path"],
            error_text=row["error_text"],
            file_size_bytes=row["file_size_bytes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self):
        return asdict(self)


def clamp_progress(value):
    try:
        value = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


class JobStore:
    def __init__(self, db_path, *, clock=None, audit=None):
        self.db_path = db_path
        self.clock = clock or DEFAULT_CLOCK
        self.audit = audit
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            ensure_schema(conn)

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _now(self):
        return self.clock.now_string()

    def create_job(
        self,
        *,
        user_id,
        provider_id,
        external_id,
        title,
        source_url="",
        category=None,
        priority=None,
        position=None,
    ):
        if not external_id:
            raise ValueError("external_id is required")
        if not title:
            raise ValueError("title is required")
        now = self._now()
        priority = _DEFAULT_PRIORITY if priority is None else int(priority)
        with self._connect() as conn:
            if position is None:
                row = conn.execute("SELECT COALESCE(MAX(position), 0) + 1 FROM jobs").fetchone()
                position = row[0]
            cur = conn.execute(
                """
                INSERT INTO jobs (
                    user_id, provider_id, external_id, title, source_url, category,
                    status, progress, priority, position, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?)
                """,
                (
                    int(user_id),
                    int(provider_id),
                    str(external_id),
                    title,
                    source_url or "",
                    category,
                    priority,
                    int(position),
                    now,
                    now,
                ),
            )
            job_id = cur.lastrowid
        _job_log("info", job_id=job_id, provider_id=provider_id, event="job_created", status="queued")
        return job_id

    def get_job(self, job_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
            if not row:
                return None
            return Job.from_row(row)

    def claim_next(self, skip_provider_ids=()):
        skip = sorted({int(provider_id) for provider_id in skip_provider_ids or ()})
        query = "SELECT * FROM jobs WHERE status='queued'"
        if skip:
            query += f" AND provider_id NOT IN ({_placeholders(skip)})"
        query += " ORDER BY priority ASC, position ASC, created_at ASC LIMIT 1"
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            row = cur.execute(query, skip).fetchone()
            if not row:
                conn.commit()
                return None
            now = self._now()
            cur.execute(
                """
                UPDATE jobs
                SET status='starting', error_text=NULL, speed_bps=NULL, eta_seconds=NULL, updated_at=?
                WHERE id=? AND status='queued'
                """,
                (now, row["id"]),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            data = dict(row)
            data.update(status="starting", error_text=None, speed_bps=None, eta_seconds=None, updated_at=now)
            job = Job.from_row(data)
            if self.audit is not None:
                self.audit.record(
                    job.user_id,
                    "job.starting",
                    "job",
                    job.id,
                    {"title": job.title, "provider_id": job.provider_id},
                    conn=conn,
                )
            conn.commit()
        _job_log("info", job_id=job.id, provider_id=job.provider_id, event="job_claimed", status="starting")
        return job

    def count_active(self):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE status IN ('starting', 'downloading')"
            ).fetchone()
            return int(row[0])

    def mark_downloading(self, job, gid, source_url):
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET status='downloading', aria2_gid=?, source_url=?, error_text=NULL, updated_at=?
                WHERE id=? AND status='starting'
                """,
                (gid, source_url, now, job.id),
            )
            if cur.rowcount != 1:
                return False
        _job_log(
            "info",
            job_id=job.id,
            provider_id=job.provider_id,
            event="job_downloading",
            status="downloading",
            gid=gid,
        )
        return True

    def return_to_queue(self, job, reason=None):
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET status='queued', aria2_gid=NULL, speed_bps=NULL, eta_seconds=NULL,
                    error_text=COALESCE(?, error_text), updated_at=?
                WHERE id=? AND status='starting'
                """,
                (reason, now, job.id),
            )
            if cur.rowcount != 1:
                return False
        _job_log(
            "info",
            job_id=job.id,
            provider_id=job.provider_id,
            event="job_returned_to_queue",
            status="queued",
            reason=reason,
        )
        return True

    def requeue_orphans(self, age_seconds):
        """Returns jobs stuck in starting without a handle back to the queue."""
        cutoff = timestamp_from_epoch(time.time() - max(0, age_seconds))
        requeued = []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status='starting' AND aria2_gid IS NULL AND updated_at < ?
                ORDER BY updated_at ASC
                """,
                (cutoff,),
            ).fetchall()
            for row in rows:
                now = self._now()
                cur = conn.execute(
                    """
                    UPDATE jobs
                    SET status='queued', speed_bps=NULL, eta_seconds=NULL, updated_at=?
                    WHERE id=? AND status='starting' AND aria2_gid IS NULL
                    """,
                    (now, row["id"]),
                )
                if cur.rowcount == 1:
                    data = dict(row)
                    data.update(status="queued", updated_at=now)
                    requeued.append(Job.from_row(data))
        for job in requeued:
            _job_log("warning", job_id=job.id, provider_id=job.provider_id, event="job_orphan_requeued", status="queued")
        return requeued

    def _finish(self, job, status, reason, from_statuses, *, level, event):
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status=?, error_text=?, aria2_gid=NULL, speed_bps=NULL, eta_seconds=NULL,
                    final_path=NULL, updated_at=?
                WHERE id=? AND status IN ({_placeholders(from_statuses)})
                """,
                (status, reason, now, job.id, *from_statuses),
            )
            if cur.rowcount != 1:
                return False
        _job_log(level, job_id=job.id, provider_id=job.provider_id, event=event, status=status, reason=reason)
        return True

    def fail_job(self, job, reason):
        """Fails a job the scheduler still holds in starting."""
        return self._finish(job, "failed", reason, ("starting",), level="error", event="job_failed")

    def mark_failed(self, job, reason):
        return self._finish(job, "failed", reason, ACTIVE_STATUSES, level="error", event="job_failed")

    def mark_canceled(self, job, reason):
        return self._finish(job, "canceled", reason, ACTIVE_STATUSES, level="warning", event="job_canceled")

    def fetch_active(self, limit=_DEFAULT_FETCH_LIMIT):
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM jobs
                WHERE status IN ({_placeholders(ACTIVE_STATUSES)}) AND aria2_gid IS NOT NULL
                ORDER BY updated_at ASC
                LIMIT ?
                """,
                (*ACTIVE_STATUSES, int(limit)),
            ).fetchall()
            return [Job.from_row(row) for row in rows]

    def update_progress(
        self,
        job,
        *,
        status,
        progress,
        speed_bps=None,
        eta_seconds=None,
        tmp_path=None,
        file_size_bytes=None,
    ):
        if status not in ("downloading", "paused"):
            raise ValueError(f"Invalid progress status: {status}")
        if status != "downloading" or not speed_bps:
            speed_bps = None
            eta_seconds = None
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status=?, progress=?, speed_bps=?, eta_seconds=?,
                    tmp_path=COALESCE(?, tmp_path), file_size_bytes=COALESCE(?, file_size_bytes),
                    updated_at=?
                WHERE id=? AND aria2_gid=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                """,
                (
                    status,
                    clamp_progress(progress),
                    speed_bps,
                    eta_seconds,
                    tmp_path,
                    file_size_bytes,
                    now,
                    job.id,
                    job.aria2_gid,
                    *ACTIVE_STATUSES,
                ),
            )
            return cur.rowcount == 1

    def mark_completed(self, job, final_path):
        if not final_path:
            raise ValueError("final_path is required")
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status='completed', progress=100, final_path=?, tmp_path=NULL, aria2_gid=NULL,
                    speed_bps=NULL, eta_seconds=NULL, error_text=NULL, updated_at=?
                WHERE id=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                """,
                (final_path, now, job.id, *ACTIVE_STATUSES),
            )
            if cur.rowcount != 1:
                return False
        _job_log(
            "info",
            job_id=job.id,
            provider_id=job.provider_id,
            event="job_completed",
            status="completed",
            final_path=final_path,
        )
        return True

    def record_restart(self, job, new_gid):
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status='downloading', aria2_gid=?, error_text=NULL, speed_bps=NULL, eta_seconds=NULL,
                    updated_at=?
                WHERE id=? AND aria2_gid=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                """,
                (new_gid, now, job.id, job.aria2_gid, *ACTIVE_STATUSES),
            )
            if cur.rowcount != 1:
                return False
        _job_log(
            "warning",
            job_id=job.id,
            provider_id=job.provider_id,
            event="job_restarted",
            status="downloading",
            old_gid=job.aria2_gid,
            new_gid=new_gid,
        )
        return True

    def request_cancel(self, job_id, reason="Canceled by operator."):
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status='canceled', error_text=?, aria2_gid=NULL, speed_bps=NULL, eta_seconds=NULL,
                    updated_at=?
                WHERE id=? AND status IN ({_placeholders(_CANCELABLE_STATUSES)})
                """,
                (reason, now, job_id, *_CANCELABLE_STATUSES),
            )
            return cur.rowcount == 1

    def request_retry(self, job_id):
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status='queued', error_text=NULL, progress=0, aria2_gid=NULL, speed_bps=NULL,
                    eta_seconds=NULL, tmp_path=NULL, final_path=NULL, updated_at=?
                WHERE id=? AND status IN ({_placeholders(_RETRYABLE_STATUSES)})
                """,
                (now, job_id, *_RETRYABLE_STATUSES),
            )
            return cur.rowcount == 1

    def stats(self):
        counts = {status: 0 for status in JOB_STATUSES}
        with self._connect() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"):
                counts[row["status"]] = int(row["total"])
        return counts

    def create_provider(self, key, name, config_json="{}", enabled=True):
        now = self._now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO providers (key, name, enabled, config_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    name=excluded.name, enabled=excluded.enabled,
                    config_json=excluded.config_json, updated_at=excluded.updated_at
                """,
                (key, name, 1 if enabled else 0, config_json, now, now),
            )
            row = conn.execute("SELECT id FROM providers WHERE key=?", (key,)).fetchone()
            return int(row["id"])

    def get_provider(self, provider_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM providers WHERE id=?", (provider_id,)).fetchone()
            return dict(row) if row else None

    def provider_id_for_key(self, key):
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM providers WHERE key=?", (key,)).fetchone()
            return int(row["id"]) if row else None

    def list_providers(self, *, enabled_only=False):
        query = "SELECT * FROM providers"
        if enabled_only:
            query += " WHERE enabled=1"
        query += " ORDER BY name ASC, id ASC"
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query).fetchall()]
