"""
Transcription Job Manager and worker pool.

Jobs live in the durable SQLite queue; a bounded pool of worker threads
claims them and runs the recognizer CLI once per job. At most one
recognizer process runs per lesson: a new request for a lesson cancels
the running one, and the new job only spawns after the old job has been
finalized.
"""

import logging
import os
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from lesson_media.core.config import AppConfig
from lesson_media.core.constants import (
    JobStatus, ErrorCode, TRANSCRIPT_EXT, TRANSCRIPT_JSON_EXT,
    WORKER_POLL_SEC, MAX_ERROR_MESSAGE_LEN,
)
from lesson_media.core.db_sqlite import Database
from lesson_media.core.models_sqlite import TranscriptionJob
from lesson_media.core.error_codes import JobError, JobCancelled
from lesson_media.core.captions_parse import convert_srt_file
from lesson_media.core.cleanup import delete_transcript_files
from lesson_media.core.lesson_client import LessonRepository
from lesson_media.core.output_writer import (
    transcript_dir, transcript_url, write_segments_json,
)
from lesson_media.core.process_outcome import (
    Outcome, Completed, Failed, Cancelled, SpawnError, classify_exit,
)
from lesson_media.core.security_utils import spawn_process

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    job_id: str
    lesson_id: str
    transcript_url: Optional[str] = None
    transcript_json_url: Optional[str] = None
    transcript_path: Optional[Path] = None
    segment_count: int = 0
    source: str = "upload"


class JobHandle:
    """Returned by enqueue(). `future` resolves when the job reaches a terminal state."""

    def __init__(self, job_id: str, lesson_id: str, future: Future):
        self.job_id = job_id
        self.lesson_id = lesson_id
        self.future = future

    def result(self, timeout: float | None = None) -> TranscriptionResult:
        """Block for the job's result; raises JobError (JobCancelled) on failure."""
        return self.future.result(timeout)

    def done(self) -> bool:
        """True once the job has reached a terminal state."""
        return self.future.done()

    def __repr__(self):
        return f"JobHandle(job_id={self.job_id!r}, lesson_id={self.lesson_id!r})"


@dataclass
class _ActiveProcess:
    job_id: str
    process: object
    timed_out: bool = False
    started: float = field(default_factory=time.monotonic)


class TranscriptionJobManager:
    """
    Owns the transcription queue, the worker pool and the table of
    running recognizer processes (lesson id → process).
    """

    def __init__(self, db: Database, lessons: LessonRepository,
                 config: AppConfig | None = None,
                 spawn: Callable = spawn_process,
                 poll_interval: float = WORKER_POLL_SEC):
        self.db = db
        self.lessons = lessons
        self.config = config or AppConfig()
        self._spawn = spawn
        self._poll_interval = poll_interval

        self._lock = threading.Lock()
        self._enqueue_lock = threading.Lock()
        self._work_available = threading.Condition()
        self._stop_event = threading.Event()
        self._workers: list[threading.Thread] = []

        # All guarded by self._lock
        self._active: dict[str, _ActiveProcess] = {}
        self._futures: dict[str, Future] = {}
        self._latest_job: dict[str, str] = {}
        self._lesson_gates: dict[str, threading.Event] = {}
        self._running_count = 0

        # Callbacks
        self.on_job_updated: Optional[Callable[[TranscriptionJob], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def default_output_dir(self) -> Path:
        """Where transcripts go for jobs without a course."""
        out = Path(self.config.get('whisper_output_dir'))
        return out if out.is_absolute() else self.config.base_dir / out

    def resolve_video_path(self, video_path: str) -> Path:
        """Absolute path of a job video; relative paths are under base_dir."""
        path = Path(video_path)
        if not path.is_absolute():
            path = self.config.base_dir / path
        return Path(os.path.abspath(path))

    def output_dir_for(self, job: TranscriptionJob) -> Path:
        """Transcript directory for a job."""
        return transcript_dir(self.config.uploads_root, job.course_id, self.default_output_dir)

    def build_command(self, video_path: Path, output_dir: Path) -> list[str]:
        """Recognizer argument array for one input file."""
        cfg = self.config
        args = [
            cfg.get('whisper_command'),
            str(video_path),
            '--model', cfg.get('whisper_model'),
            '--task', cfg.get('whisper_task'),
            '--output_format', cfg.get('whisper_output_format'),
            '--output_dir', str(output_dir),
            '--verbose', 'False',
        ]
        if cfg.get('whisper_language'):
            args.extend(['--language', cfg.get('whisper_language')])
        if not cfg.get('whisper_fp16'):
            args.extend(['--fp16', 'False'])
        return args

    # ── Queue management ──────────────────────────────────────────────

    def enqueue(self, lesson_id, video_path, user_id=None, course_id=None,
                source: str = "upload") -> JobHandle:
        """
        Queue a transcription for a lesson. Any running or queued job for
        the same lesson is cancelled first.
        """
        if lesson_id is None or lesson_id == '' or not video_path:
            raise JobError(ErrorCode.INVALID_REQUEST,
                           "lesson_id and video_path are required")
        if not self.config.whisper_enabled:
            raise JobError(ErrorCode.TRANSCRIPTION_DISABLED,
                           "Transcription is disabled by configuration")

        lesson_key = str(lesson_id)
        with self._enqueue_lock:
            if self.cancel(lesson_key):
                logger.info("Cancelled running transcription for lesson %s before re-queueing",
                            lesson_key)

            for old_id in self.db.supersede_queued_jobs(
                    lesson_key, "Superseded by a newer transcription request"):
                logger.info("Removed queued job %s for lesson %s", old_id, lesson_key)
                self._reject(old_id, JobCancelled("Transcription job superseded by a new request"))

            future = Future()
            with self._lock:
                job = self.db.create_job(lesson_key, str(video_path), user_id, course_id, source)
                self._futures[job.id] = future
                self._latest_job[lesson_key] = job.id

        logger.info("Queued transcription job %s for lesson %s (%d in queue)",
                    job.id, lesson_key, self.db.count_queued())
        with self._work_available:
            self._work_available.notify()
        return JobHandle(job.id, lesson_key, future)

    def cancel(self, lesson_id) -> bool:
        """
        Terminate the recognizer running for a lesson.
        Returns False if no process is tracked for it.
        """
        lesson_key = str(lesson_id)
        with self._lock:
            entry = self._active.pop(lesson_key, None)
        if entry is None:
            return False

        logger.info("Cancelling recognizer for lesson %s (job %s, pid %s)",
                    lesson_key, entry.job_id, getattr(entry.process, 'pid', None))
        self._terminate(entry.process, lesson_key)
        return True

    def get_queue_status(self) -> dict:
        """Snapshot of running lessons, queue depth and pool size."""
        with self._lock:
            active = list(self._active.keys())
            running = self._running_count
        return {
            'activeJobs': active,
            'queueLength': self.db.count_queued(),
            'running': running,
            'maxConcurrent': self.config.max_concurrent,
        }

    # ── Worker pool lifecycle ─────────────────────────────────────────

    def start(self):
        """Start the worker threads. Jobs interrupted by a previous run are re-queued."""
        if self._workers:
            return
        requeued = self.db.requeue_interrupted_jobs()
        if requeued:
            logger.info("Re-queued %d interrupted transcription job(s)", requeued)

        self._stop_event.clear()
        for i in range(self.config.max_concurrent):
            worker = threading.Thread(target=self._worker_loop,
                                      name=f"transcriber-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)
        logger.info("Started %d transcription worker(s)", len(self._workers))

    def stop(self, wait: bool = True, cancel_running: bool = False,
             timeout: float | None = None):
        """Stop the workers after their current job (or cancel it)."""
        self._stop_event.set()
        with self._work_available:
            self._work_available.notify_all()

        if cancel_running:
            with self._lock:
                lessons = list(self._active.keys())
            for lesson_key in lessons:
                self.cancel(lesson_key)

        if wait:
            for worker in self._workers:
                worker.join(timeout)
        self._workers = []

    def is_running(self) -> bool:
        """True while the worker pool is started and not stopping."""
        return bool(self._workers) and not self._stop_event.is_set()

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until nothing is queued or running. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                idle = self._running_count == 0 and self.db.count_queued() == 0
            if idle:
                return True
            time.sleep(0.05)
        return False

    # ── Worker loop ───────────────────────────────────────────────────

    def _worker_loop(self):
        while not self._stop_event.is_set():
            gate = threading.Event()
            previous = None
            try:
                # A claimed job is counted as running and takes its place in
                # the lesson's gate chain before the lock is released
                with self._lock:
                    job = self.db.claim_next_job()
                    if job is not None:
                        self._running_count += 1
                        previous = self._lesson_gates.get(job.lesson_id)
                        self._lesson_gates[job.lesson_id] = gate
            except Exception as e:
                logger.error("Failed to claim transcription job: %s", e, exc_info=True)
                job = None

            if job is None:
                with self._work_available:
                    self._work_available.wait(self._poll_interval)
                continue

            self._run_job(job, previous, gate)

    def _run_job(self, job: TranscriptionJob, previous: threading.Event | None,
                 gate: threading.Event):
        """Run one claimed job once the lesson's previous job (if any) is finalized."""
        lesson_key = job.lesson_id
        try:
            if previous is not None:
                # Previous generation for this lesson is still being finalized
                previous.wait()
                job.started_at = self.db.mark_job_started(job.id)
            self._notify_job_updated(job.id)
            outcome = self._execute(job)
            self._finish(job, outcome)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job.id, e, exc_info=True)
            self.db.update_job_status(
                job.id, JobStatus.FAILED,
                error_code="ERR_UNEXPECTED",
                error_message=str(e)[:MAX_ERROR_MESSAGE_LEN],
            )
            self._update_lesson(lesson_key, transcript_status=JobStatus.FAILED)
            self._reject(job.id, e)
            self._notify_job_updated(job.id)
        finally:
            with self._lock:
                self._running_count -= 1
                if self._lesson_gates.get(lesson_key) is gate:
                    del self._lesson_gates[lesson_key]
            gate.set()

    def _is_superseded(self, job: TranscriptionJob) -> bool:
        with self._lock:
            return self._latest_job.get(job.lesson_id, job.id) != job.id

    # ── Recognizer process ────────────────────────────────────────────

    def _execute(self, job: TranscriptionJob) -> Outcome:
        """Run the recognizer for one job and classify how it ended."""
        lesson_key = job.lesson_id
        if self._is_superseded(job):
            return Cancelled("SUPERSEDED")

        video_path = self.resolve_video_path(job.video_path)
        output_dir = self.output_dir_for(job)
        output_dir.mkdir(parents=True, exist_ok=True)
        expected = output_dir / f"{video_path.stem}{TRANSCRIPT_EXT}"
        # Captions from an earlier run must not pass for new output
        delete_transcript_files(output_dir, expected.name)

        args = self.build_command(video_path, output_dir)
        logger.info("Starting recognizer for lesson %s (job %s, user %s, source %s)",
                    lesson_key, job.id, job.user_id, job.source)

        try:
            process = self._spawn(args)
        except OSError as e:
            logger.error("Recognizer process failed to start for lesson %s: %s", lesson_key, e)
            return SpawnError(f"Failed to start recognizer {args[0]!r}: {e}")

        entry = _ActiveProcess(job.id, process)
        with self._lock:
            self._active[lesson_key] = entry
            superseded = self._latest_job.get(lesson_key, job.id) != job.id
        if superseded:
            # A newer request arrived between claim and spawn
            self._release(lesson_key, entry)
            self._terminate(process, lesson_key)

        timer = None
        if self.config.timeout_sec > 0:
            timer = threading.Timer(self.config.timeout_sec, self._on_timeout,
                                    args=(lesson_key, entry))
            timer.daemon = True
            timer.start()

        try:
            self._drain_output(process, lesson_key)
            returncode = process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            self._release(lesson_key, entry)

        logger.debug("Recognizer for lesson %s exited with %s", lesson_key, returncode)
        return classify_exit(returncode, expected, timed_out=entry.timed_out)

    @staticmethod
    def _drain_output(process, lesson_key: str):
        stream = getattr(process, 'stdout', None)
        if stream is None:
            return
        with stream:
            for line in stream:
                logger.debug("[recognizer %s] %s", lesson_key, line.rstrip())

    def _release(self, lesson_key: str, entry: _ActiveProcess):
        with self._lock:
            if self._active.get(lesson_key) is entry:
                del self._active[lesson_key]

    def _terminate(self, process, lesson_key: str):
        """SIGTERM now, SIGKILL after the grace period if still alive."""
        try:
            process.terminate()
        except OSError as e:
            logger.error("Failed to send SIGTERM to recognizer for lesson %s: %s", lesson_key, e)

        timer = threading.Timer(self.config.cancel_grace_sec, self._force_kill,
                                args=(process, lesson_key))
        timer.daemon = True
        timer.start()

    @staticmethod
    def _force_kill(process, lesson_key: str):
        if process.poll() is not None:
            return
        try:
            process.kill()
            logger.warning("Force killed recognizer for lesson %s after SIGTERM timeout", lesson_key)
        except OSError as e:
            logger.error("Failed to force kill recognizer for lesson %s: %s", lesson_key, e)

    def _on_timeout(self, lesson_key: str, entry: _ActiveProcess):
        entry.timed_out = True
        logger.warning("Recognizer for lesson %s exceeded %.0fs — terminating",
                       lesson_key, self.config.timeout_sec)
        self._release(lesson_key, entry)
        self._terminate(entry.process, lesson_key)

    # ── Outcome persistence ───────────────────────────────────────────

    def _finish(self, job: TranscriptionJob, outcome: Outcome):
        """Persist a job's terminal state and settle its future."""
        if isinstance(outcome, Completed):
            self._finish_completed(job, outcome)
        elif isinstance(outcome, Cancelled):
            logger.info("Transcription cancelled for lesson %s (%s)", job.lesson_id, outcome.signal_name)
            self.db.update_job_status(job.id, JobStatus.CANCELLED,
                                      error_code=ErrorCode.CANCELLED,
                                      error_message=f"Cancelled ({outcome.signal_name})")
            self._update_lesson(job.lesson_id, transcript_status=JobStatus.CANCELLED)
            self._reject(job.id, JobCancelled("Transcription cancelled"))
        elif isinstance(outcome, Failed):
            logger.error("Transcription failed for lesson %s: %s", job.lesson_id, outcome.message)
            self.db.update_job_status(job.id, JobStatus.FAILED,
                                      error_code=outcome.code,
                                      error_message=outcome.message[:MAX_ERROR_MESSAGE_LEN])
            self._update_lesson(job.lesson_id, transcript_status=JobStatus.FAILED)
            self._reject(job.id, JobError(outcome.code, outcome.message))
        elif isinstance(outcome, SpawnError):
            self.db.update_job_status(job.id, JobStatus.FAILED,
                                      error_code=ErrorCode.RECOGNIZER_SPAWN,
                                      error_message=outcome.message[:MAX_ERROR_MESSAGE_LEN])
            self._update_lesson(job.lesson_id, transcript_status=JobStatus.FAILED)
            self._reject(job.id, JobError(ErrorCode.RECOGNIZER_SPAWN, outcome.message))
        else:
            raise TypeError(f"Unknown recognizer outcome: {outcome!r}")
        self._notify_job_updated(job.id)

    def _finish_completed(self, job: TranscriptionJob, outcome: Completed):
        result = TranscriptionResult(job_id=job.id, lesson_id=job.lesson_id, source=job.source)

        if outcome.transcript_path is None:
            logger.warning("Recognizer finished but transcript file missing for lesson %s",
                           job.lesson_id)
            self.db.update_job_status(job.id, JobStatus.COMPLETED)
            self._update_lesson(job.lesson_id, transcript_url=None, transcript_json_url=None,
                                transcript_status=JobStatus.COMPLETED)
            self._resolve(job.id, result)
            return

        srt_path = outcome.transcript_path
        result.transcript_path = srt_path
        result.transcript_url = transcript_url(job.course_id, srt_path.name)
        self.db.update_job_status(job.id, JobStatus.COMPLETED,
                                  transcript_url=result.transcript_url)
        self._update_lesson(job.lesson_id, transcript_url=result.transcript_url,
                            transcript_json_url=None, transcript_status=JobStatus.COMPLETED)

        # Structured segments are optional: a failure leaves the job COMPLETED
        try:
            segments = convert_srt_file(srt_path)
            json_name = f"{srt_path.stem}{TRANSCRIPT_JSON_EXT}"
            write_segments_json(segments, srt_path.with_name(json_name))
        except Exception as e:
            logger.error("[%s] Failed to convert transcript to JSON for lesson %s: %s",
                         ErrorCode.SUBTITLE_CONVERT, job.lesson_id, e)
        else:
            result.transcript_json_url = transcript_url(job.course_id, json_name)
            result.segment_count = len(segments)
            self.db.update_job(job.id, transcript_json_url=result.transcript_json_url)
            self._update_lesson(job.lesson_id, transcript_json_url=result.transcript_json_url)

        logger.info("Transcription completed for lesson %s: %s", job.lesson_id, result.transcript_url)
        self._resolve(job.id, result)

    def _update_lesson(self, lesson_id: str, **fields):
        try:
            self.lessons.update(lesson_id, **fields)
        except JobError as e:
            logger.error("Failed to update lesson %s: %s", lesson_id, e)

    # ── Listener plumbing ─────────────────────────────────────────────

    def _pop_future(self, job_id: str) -> Future | None:
        with self._lock:
            return self._futures.pop(job_id, None)

    def _resolve(self, job_id: str, result: TranscriptionResult):
        future = self._pop_future(job_id)
        if future is not None and not future.done():
            future.set_result(result)

    def _reject(self, job_id: str, error: Exception):
        future = self._pop_future(job_id)
        if future is not None and not future.done():
            future.set_exception(error)

    def _notify_job_updated(self, job_id: str):
        if self.on_job_updated:
            job = self.db.get_job(job_id)
            if job:
                self.on_job_updated(job)
