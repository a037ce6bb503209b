#!/usr/bin/env python3
"""
Tests for the transcription job manager.
A small shell script stands in for the recognizer CLI; its behaviour is
picked by FAKE_RECOGNIZER_MODE or by the input file name.
"""

import os
import sys
import json
import stat
import time
import tempfile
import threading
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from lesson_media.core.constants import JobStatus, ErrorCode, TERMINAL_STATUSES
from lesson_media.core.config import AppConfig
from lesson_media.core.db_sqlite import Database
from lesson_media.core.error_codes import JobError, JobCancelled
from lesson_media.core.job_queue import TranscriptionJobManager
from lesson_media.core.lesson_client import LessonRepository


FAKE_RECOGNIZER = r"""#!/bin/sh
input="$1"
shift
out="."
while [ $# -gt 0 ]; do
  case "$1" in
    --output_dir) out="$2"; shift 2 ;;
    *) shift ;;
  esac
done
base=$(basename "$input")
base="${base%.*}"
mode="${FAKE_RECOGNIZER_MODE:-$base}"
case "$mode" in
  slow*) exec sleep 30 ;;
  fail*) echo "model crashed"; exit 2 ;;
  silent*) exit 0 ;;
esac
i=1
while [ $i -le 10 ]; do
  s=$(( (i - 1) * 2 ))
  e=$(( i * 2 ))
  printf '%d\n00:00:%02d,000 --> 00:00:%02d,000\nCue number %d\n\n' "$i" "$s" "$e" "$i"
  i=$((i + 1))
done > "$out/$base.srt"
echo "done"
"""

RESULT_TIMEOUT = 15


class RecordingLessons(LessonRepository):
    """Keeps every lesson update in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.updates = []
        self.state = {}

    def update(self, lesson_id, **fields):
        with self._lock:
            self.updates.append((lesson_id, dict(fields)))
            self.state.setdefault(lesson_id, {}).update(fields)

    def fields_written(self, lesson_id) -> set:
        with self._lock:
            return {k for lid, fields in self.updates if lid == lesson_id for k in fields}


def _wait_for(predicate, timeout=RESULT_TIMEOUT, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


class ManagerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.script = self.root / "fake-whisper"
        self.script.write_text(FAKE_RECOGNIZER)
        self.script.chmod(self.script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        self.db = Database(self.root / "media.db")
        self.lessons = RecordingLessons()
        self.manager = None

    def tearDown(self):
        if self.manager is not None:
            self.manager.stop(wait=True, cancel_running=True, timeout=10)
        self.db.close()
        self.tmpdir.cleanup()

    def make_manager(self, start=True, **overrides) -> TranscriptionJobManager:
        values = {
            'base_dir': str(self.root),
            'uploads_root': 'uploads',
            'whisper_command': str(self.script),
            'whisper_cancel_grace_sec': 0.5,
            'whisper_max_concurrent': 2,
        }
        values.update(overrides)
        config = AppConfig(self.root / "config.json", environ={}, overrides=values)
        self.manager = TranscriptionJobManager(self.db, self.lessons, config, poll_interval=0.05)
        if start:
            self.manager.start()
        return self.manager

    def wait_active(self, lesson_id):
        self.assertTrue(_wait_for(
            lambda: lesson_id in self.manager.get_queue_status()['activeJobs']))

    def transcripts_dir(self, course_id="7") -> Path:
        return self.root / "uploads" / "courses" / course_id / "transcripts"


class TestTranscriptionOutcomes(ManagerTestCase):
    """One job per test, checked from enqueue to terminal state."""

    def test_completed_with_segments(self):
        manager = self.make_manager()
        handle = manager.enqueue(42, "lessons/42/raw.mp4", user_id=5, course_id=7)
        result = handle.result(timeout=RESULT_TIMEOUT)

        self.assertEqual(result.segment_count, 10)
        self.assertEqual(result.transcript_url, "/uploads/courses/7/transcripts/raw.srt")
        self.assertEqual(result.transcript_json_url, "/uploads/courses/7/transcripts/raw.json")

        lesson = self.lessons.state["42"]
        self.assertEqual(lesson['transcript_status'], JobStatus.COMPLETED)
        self.assertEqual(lesson['transcript_url'], result.transcript_url)
        self.assertEqual(lesson['transcript_json_url'], result.transcript_json_url)

        segments = json.loads((self.transcripts_dir() / "raw.json").read_text())
        self.assertEqual(len(segments), 10)
        self.assertEqual([s['index'] for s in segments], list(range(1, 11)))
        self.assertEqual(segments[0], {'index': 1, 'start': 0.0, 'end': 2.0, 'text': 'Cue number 1'})

        job = self.db.get_job(handle.job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertIsNotNone(job.started_at)
        self.assertIsNotNone(job.completed_at)
        self.assertEqual(job.transcript_json_url, result.transcript_json_url)

    def test_missing_transcript_is_completed_without_urls(self):
        manager = self.make_manager()
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'silent'}):
            handle = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
            result = handle.result(timeout=RESULT_TIMEOUT)

        self.assertIsNone(result.transcript_url)
        self.assertIsNone(result.transcript_json_url)
        lesson = self.lessons.state["42"]
        self.assertEqual(lesson['transcript_status'], JobStatus.COMPLETED)
        self.assertIsNone(lesson['transcript_url'])
        self.assertIsNone(lesson['transcript_json_url'])
        self.assertEqual(self.db.get_job(handle.job_id).status, JobStatus.COMPLETED)

    def test_stale_transcript_is_not_reused(self):
        out = self.transcripts_dir()
        out.mkdir(parents=True)
        (out / "raw.srt").write_text("1\n00:00:00,000 --> 00:00:01,000\nOld run\n")
        (out / "raw.json").write_text("[]")

        manager = self.make_manager()
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'silent'}):
            result = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7).result(RESULT_TIMEOUT)
        self.assertIsNone(result.transcript_url)
        self.assertFalse((out / "raw.srt").exists())
        self.assertFalse((out / "raw.json").exists())

    def test_nonzero_exit_fails(self):
        manager = self.make_manager()
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'fail'}):
            handle = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
            with self.assertRaises(JobError) as ctx:
                handle.result(timeout=RESULT_TIMEOUT)

        self.assertEqual(ctx.exception.code, ErrorCode.RECOGNIZER_EXIT)
        job = self.db.get_job(handle.job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("2", job.error_message)
        self.assertEqual(self.lessons.state["42"]['transcript_status'], JobStatus.FAILED)
        self.assertNotIn('transcript_url', self.lessons.fields_written("42"))

    def test_spawn_failure(self):
        manager = self.make_manager(whisper_command=str(self.root / "no-such-recognizer"))
        handle = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
        with self.assertRaises(JobError) as ctx:
            handle.result(timeout=RESULT_TIMEOUT)

        self.assertEqual(ctx.exception.code, ErrorCode.RECOGNIZER_SPAWN)
        job = self.db.get_job(handle.job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error_code, ErrorCode.RECOGNIZER_SPAWN)
        self.assertEqual(manager.get_queue_status()['activeJobs'], [])

    def test_json_conversion_failure_keeps_job_completed(self):
        # A directory where the JSON file should go makes the write fail
        (self.transcripts_dir() / "blocked.json").mkdir(parents=True)

        manager = self.make_manager()
        result = manager.enqueue(42, "lessons/42/blocked.mp4", course_id=7).result(RESULT_TIMEOUT)

        self.assertEqual(result.transcript_url, "/uploads/courses/7/transcripts/blocked.srt")
        self.assertIsNone(result.transcript_json_url)
        lesson = self.lessons.state["42"]
        self.assertEqual(lesson['transcript_status'], JobStatus.COMPLETED)
        self.assertIsNone(lesson['transcript_json_url'])

    def test_job_without_course_uses_default_output_dir(self):
        manager = self.make_manager()
        result = manager.enqueue(42, "lessons/42/raw.mp4").result(RESULT_TIMEOUT)
        self.assertEqual(result.transcript_url, "/uploads/transcripts/raw.srt")
        self.assertTrue((self.root / "uploads" / "transcripts" / "raw.srt").exists())

    def test_timeout_fails_job(self):
        manager = self.make_manager(whisper_timeout_sec=0.5)
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'slow'}):
            handle = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
            with self.assertRaises(JobError) as ctx:
                handle.result(timeout=RESULT_TIMEOUT)

        self.assertNotIsInstance(ctx.exception, JobCancelled)
        self.assertEqual(ctx.exception.code, ErrorCode.RECOGNIZER_TIMEOUT)
        self.assertEqual(self.db.get_job(handle.job_id).status, JobStatus.FAILED)


class TestCancellation(ManagerTestCase):
    """Cancel and cancel-then-start behaviour."""

    def test_cancel_running_job(self):
        manager = self.make_manager()
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'slow'}):
            handle = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
            self.wait_active("42")

            self.assertTrue(manager.cancel(42))
            self.assertNotIn("42", manager.get_queue_status()['activeJobs'])
            with self.assertRaises(JobCancelled):
                handle.result(timeout=RESULT_TIMEOUT)

        job = self.db.get_job(handle.job_id)
        self.assertEqual(job.status, JobStatus.CANCELLED)
        self.assertIsNone(job.transcript_url)
        self.assertEqual(self.lessons.state["42"]['transcript_status'], JobStatus.CANCELLED)
        self.assertNotIn('transcript_url', self.lessons.fields_written("42"))

    def test_cancel_unknown_lesson(self):
        manager = self.make_manager()
        self.assertFalse(manager.cancel("nope"))

    def test_new_request_replaces_running_job(self):
        manager = self.make_manager()
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'slow'}):
            first = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
            self.wait_active("42")
            first_pid = manager._active["42"].process.pid

            second = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
            with self.assertRaises(JobCancelled):
                first.result(timeout=RESULT_TIMEOUT)

            def replaced():
                entry = manager._active.get("42")
                return entry is not None and entry.process.pid != first_pid

            self.assertTrue(_wait_for(replaced))
            self.assertEqual(manager.get_queue_status()['activeJobs'], ["42"])
            self.assertEqual(manager._active["42"].job_id, second.job_id)

            old = self.db.get_job(first.job_id)
            new = self.db.get_job(second.job_id)
            self.assertEqual(old.status, JobStatus.CANCELLED)
            self.assertEqual(new.status, JobStatus.PROCESSING)
            self.assertLessEqual(old.completed_at, new.started_at)

            manager.cancel(42)
            with self.assertRaises(JobCancelled):
                second.result(timeout=RESULT_TIMEOUT)

    def test_replaced_job_finalizes_before_replacement(self):
        manager = self.make_manager(start=False)
        run_job = manager._run_job
        paused = []

        def pause_first_job(job, previous, gate):
            # Worker stalls between claiming the first job and running it
            if not paused:
                paused.append(job.id)
                time.sleep(0.5)
            run_job(job, previous, gate)

        manager._run_job = pause_first_job
        manager.start()

        first = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
        self.assertTrue(_wait_for(lambda: paused))
        second = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)

        with self.assertRaises(JobCancelled):
            first.result(timeout=RESULT_TIMEOUT)
        result = second.result(timeout=RESULT_TIMEOUT)
        self.assertTrue(manager.wait_idle(timeout=RESULT_TIMEOUT))

        self.assertEqual(result.segment_count, 10)
        lesson = self.lessons.state["42"]
        self.assertEqual(lesson['transcript_status'], JobStatus.COMPLETED)
        self.assertEqual(lesson['transcript_url'], result.transcript_url)

        old = self.db.get_job(first.job_id)
        new = self.db.get_job(second.job_id)
        self.assertEqual(old.status, JobStatus.CANCELLED)
        self.assertLessEqual(old.completed_at, new.started_at)

    def test_queued_job_is_superseded(self):
        manager = self.make_manager(start=False)
        first = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)
        second = manager.enqueue(42, "lessons/42/raw.mp4", course_id=7)

        self.assertTrue(first.done())
        with self.assertRaises(JobCancelled):
            first.result(timeout=0)
        self.assertEqual(self.db.get_job(first.job_id).status, JobStatus.CANCELLED)
        self.assertEqual(manager.get_queue_status()['queueLength'], 1)

        manager.start()
        result = second.result(timeout=RESULT_TIMEOUT)
        self.assertEqual(result.segment_count, 10)


class TestManagerBasics(ManagerTestCase):
    """Validation, command line and queue bookkeeping."""

    def test_enqueue_requires_lesson_and_video(self):
        manager = self.make_manager(start=False)
        for lesson_id, video in ((None, "a.mp4"), ("", "a.mp4"), (42, None), (42, "")):
            with self.assertRaises(JobError) as ctx:
                manager.enqueue(lesson_id, video)
            self.assertEqual(ctx.exception.code, ErrorCode.INVALID_REQUEST)
        self.assertEqual(self.db.count_queued(), 0)

    def test_enqueue_when_disabled(self):
        manager = self.make_manager(start=False, whisper_enabled=False)
        with self.assertRaises(JobError) as ctx:
            manager.enqueue(42, "a.mp4")
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIPTION_DISABLED)

    def test_build_command(self):
        manager = self.make_manager(start=False, whisper_language="en", whisper_model="base")
        args = manager.build_command(Path("/videos/raw.mp4"), Path("/out"))
        self.assertEqual(args[:2], [str(self.script), "/videos/raw.mp4"])
        self.assertEqual(args[args.index("--model") + 1], "base")
        self.assertEqual(args[args.index("--task") + 1], "transcribe")
        self.assertEqual(args[args.index("--output_format") + 1], "srt")
        self.assertEqual(args[args.index("--output_dir") + 1], "/out")
        self.assertEqual(args[args.index("--language") + 1], "en")
        self.assertEqual(args[args.index("--fp16") + 1], "False")

    def test_build_command_without_language_with_fp16(self):
        manager = self.make_manager(start=False, whisper_fp16=True)
        args = manager.build_command(Path("/videos/raw.mp4"), Path("/out"))
        self.assertNotIn("--language", args)
        self.assertNotIn("--fp16", args)

    def test_queue_status(self):
        manager = self.make_manager(start=False)
        manager.enqueue(1, "a.mp4")
        manager.enqueue(2, "b.mp4")
        status = manager.get_queue_status()
        self.assertEqual(status, {'activeJobs': [], 'queueLength': 2,
                                  'running': 0, 'maxConcurrent': 2})

    def test_pool_size_caps_running_recognizers(self):
        manager = self.make_manager(whisper_max_concurrent=1)
        with mock.patch.dict(os.environ, {'FAKE_RECOGNIZER_MODE': 'slow'}):
            first = manager.enqueue(1, "lessons/1/raw.mp4", course_id=7)
            second = manager.enqueue(2, "lessons/2/raw.mp4", course_id=7)
            self.wait_active("1")

            time.sleep(0.3)
            status = manager.get_queue_status()
            self.assertEqual(status['running'], 1)
            self.assertEqual(status['activeJobs'], ["1"])
            self.assertEqual(status['queueLength'], 1)
            self.assertEqual(self.db.get_job(second.job_id).status, JobStatus.QUEUED)

            manager.cancel(1)
            with self.assertRaises(JobCancelled):
                first.result(timeout=RESULT_TIMEOUT)
            self.wait_active("2")
            status = manager.get_queue_status()
            self.assertEqual(status['activeJobs'], ["2"])
            self.assertEqual(status['queueLength'], 0)

            manager.cancel(2)
            with self.assertRaises(JobCancelled):
                second.result(timeout=RESULT_TIMEOUT)

    def test_interrupted_job_is_requeued_on_start(self):
        job = self.db.create_job("42", "lessons/42/raw.mp4", course_id="7")
        self.db.claim_next_job()

        manager = self.make_manager()
        self.assertTrue(manager.wait_idle(timeout=RESULT_TIMEOUT))
        self.assertTrue(_wait_for(
            lambda: self.db.get_job(job.id).status in TERMINAL_STATUSES))
        self.assertEqual(self.db.get_job(job.id).status, JobStatus.COMPLETED)
        self.assertEqual(self.lessons.state["42"]['transcript_status'], JobStatus.COMPLETED)

    def test_job_updated_callback(self):
        manager = self.make_manager(start=False)
        seen = []
        manager.on_job_updated = lambda job: seen.append(job.status)
        manager.start()
        manager.enqueue(42, "lessons/42/raw.mp4", course_id=7).result(RESULT_TIMEOUT)
        self.assertTrue(_wait_for(lambda: seen and seen[-1] == JobStatus.COMPLETED))
        self.assertEqual(seen[0], JobStatus.PROCESSING)


if __name__ == "__main__":
    unittest.main()
