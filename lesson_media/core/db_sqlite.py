"""
SQLite database layer for LessonMedia.
Durable queue of transcription jobs. Thread-safe via
check_same_thread=False + explicit locking.
"""

import sqlite3
import uuid
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from lesson_media.core.constants import DB_PATH, JobStatus, TERMINAL_STATUSES
from lesson_media.core.models_sqlite import TranscriptionJob

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS transcription_jobs (
    id TEXT PRIMARY KEY,
    lesson_id TEXT NOT NULL,
    video_path TEXT NOT NULL,
    user_id TEXT,
    course_id TEXT,
    source TEXT DEFAULT 'upload',
    status TEXT NOT NULL DEFAULT 'QUEUED',
    error_code TEXT,
    error_message TEXT,
    transcript_url TEXT,
    transcript_json_url TEXT,
    created_at TEXT,
    updated_at TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tjobs_status_created ON transcription_jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_tjobs_lesson_id ON transcription_jobs(lesson_id);
"""


class Database:
    """SQLite database wrapper for the transcription queue."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            with self._lock:
                self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> TranscriptionJob:
        return TranscriptionJob(**dict(row))

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, lesson_id: str, video_path: str,
                   user_id: str | None = None, course_id: str | None = None,
                   source: str = "upload") -> TranscriptionJob:
        now = self._now()
        job = TranscriptionJob(
            id=str(uuid.uuid4()),
            lesson_id=str(lesson_id),
            video_path=str(video_path),
            user_id=None if user_id is None else str(user_id),
            course_id=None if course_id is None else str(course_id),
            source=source,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                """INSERT INTO transcription_jobs
                   (id, lesson_id, video_path, user_id, course_id, source,
                    status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.lesson_id, job.video_path, job.user_id,
                 job.course_id, job.source, job.status,
                 job.created_at, job.updated_at),
            )
            self.conn.commit()
        return job

    def get_job(self, job_id: str) -> TranscriptionJob | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM transcription_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def get_jobs_for_lesson(self, lesson_id: str) -> list[TranscriptionJob]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM transcription_jobs WHERE lesson_id = ? ORDER BY created_at ASC",
                (str(lesson_id),),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def get_queued_jobs(self) -> list[TranscriptionJob]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM transcription_jobs WHERE status = ? ORDER BY created_at ASC",
                (JobStatus.QUEUED,),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def count_queued(self) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM transcription_jobs WHERE status = ?",
                (JobStatus.QUEUED,),
            ).fetchone()
        return row[0]

    def claim_next_job(self) -> TranscriptionJob | None:
        """
        Atomically move the oldest QUEUED job to PROCESSING and return it.
        Returns None when the queue is empty.
        """
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM transcription_jobs WHERE status = ? "
                "ORDER BY created_at ASC, rowid ASC LIMIT 1",
                (JobStatus.QUEUED,),
            ).fetchone()
            if not row:
                return None
            now = self._now()
            self.conn.execute(
                "UPDATE transcription_jobs SET status=?, started_at=?, updated_at=? WHERE id=?",
                (JobStatus.PROCESSING, now, now, row['id']),
            )
            self.conn.commit()
            job = self._row_to_job(row)
        job.status = JobStatus.PROCESSING
        job.started_at = now
        job.updated_at = now
        return job

    def mark_job_started(self, job_id: str) -> str:
        now = self._now()
        with self._lock:
            self.conn.execute(
                "UPDATE transcription_jobs SET started_at=?, updated_at=? WHERE id=? AND status=?",
                (now, now, job_id, JobStatus.PROCESSING),
            )
            self.conn.commit()
        return now

    def update_job(self, job_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE transcription_jobs SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def update_job_status(self, job_id: str, status: str, **extra) -> bool:
        """
        Move a job to `status`. Terminal rows are never modified again.
        Returns False if the job was already terminal.
        """
        fields = {'status': status, 'updated_at': self._now()}
        if status in TERMINAL_STATUSES:
            fields['completed_at'] = fields['updated_at']
        fields.update(extra)
        sets = ', '.join(f"{k} = ?" for k in fields)
        placeholders = ', '.join('?' for _ in TERMINAL_STATUSES)
        vals = list(fields.values()) + [job_id, *sorted(TERMINAL_STATUSES)]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE transcription_jobs SET {sets} "
                f"WHERE id = ? AND status NOT IN ({placeholders})",
                vals,
            )
            self.conn.commit()
        return cur.rowcount > 0

    def supersede_queued_jobs(self, lesson_id: str, message: str) -> list[str]:
        """Cancel every QUEUED job for a lesson. Returns the affected job ids."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id FROM transcription_jobs WHERE lesson_id = ? AND status = ?",
                (str(lesson_id), JobStatus.QUEUED),
            ).fetchall()
            ids = [r['id'] for r in rows]
            if ids:
                now = self._now()
                self.conn.executemany(
                    "UPDATE transcription_jobs SET status=?, error_message=?, "
                    "completed_at=?, updated_at=? WHERE id=?",
                    [(JobStatus.CANCELLED, message, now, now, i) for i in ids],
                )
                self.conn.commit()
        return ids

    def requeue_interrupted_jobs(self) -> int:
        """Reset PROCESSING rows left over from a previous run back to QUEUED."""
        with self._lock:
            cur = self.conn.execute(
                "UPDATE transcription_jobs SET status=?, started_at=NULL, updated_at=? "
                "WHERE status = ?",
                (JobStatus.QUEUED, self._now(), JobStatus.PROCESSING),
            )
            self.conn.commit()
        return cur.rowcount

    def delete_job(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM transcription_jobs WHERE id = ?", (job_id,))
            self.conn.commit()
