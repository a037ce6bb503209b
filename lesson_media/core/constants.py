"""
Shared constants for LessonMedia.
Single source of truth — imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "LessonMedia"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DATA_DIR = pathlib.Path(os.environ.get("LESSON_MEDIA_HOME", HOME / ".lesson-media"))
DB_PATH = DATA_DIR / "media.db"
CONFIG_PATH = DATA_DIR / "config.json"
LOG_DIR = DATA_DIR / "logs"

DEFAULT_UPLOADS_ROOT = "uploads"
UPLOADS_URL_PREFIX = "/uploads"

# ── Transcription job status values ───────────────────────────────────
class JobStatus:
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_REQUEST = "ERR_INVALID_REQUEST"
    TRANSCRIPTION_DISABLED = "ERR_TRANSCRIPTION_DISABLED"
    RECOGNIZER_SPAWN = "ERR_RECOGNIZER_SPAWN"
    RECOGNIZER_EXIT = "ERR_RECOGNIZER_EXIT"
    RECOGNIZER_TIMEOUT = "ERR_RECOGNIZER_TIMEOUT"
    CANCELLED = "ERR_CANCELLED"
    SUBTITLE_CONVERT = "ERR_SUBTITLE_CONVERT"
    UNSUPPORTED_TRANSCRIPT = "ERR_UNSUPPORTED_TRANSCRIPT"
    FFMPEG_ENCODE = "ERR_FFMPEG_ENCODE"

    # Retryable
    LESSON_UPDATE = "ERR_LESSON_UPDATE"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"

RETRYABLE_ERRORS = {
    ErrorCode.LESSON_UPDATE,
    ErrorCode.NETWORK_TRANSIENT,
}

# ── Recognizer (Whisper CLI) defaults ─────────────────────────────────
WHISPER_COMMAND = "whisper"
WHISPER_MODEL = "small"
WHISPER_TASK = "transcribe"
WHISPER_OUTPUT_FORMAT = "srt"
WHISPER_OUTPUT_DIR = "uploads/transcripts"
WHISPER_MAX_CONCURRENT = 2
TRANSCRIPT_EXT = ".srt"
TRANSCRIPT_JSON_EXT = ".json"

# Termination escalation: SIGTERM, then SIGKILL after the grace period
CANCEL_GRACE_SEC = 2.0
# 0 disables the wall-clock ceiling on recognizer processes
WHISPER_TIMEOUT_SEC = 0

# Idle workers re-check the durable queue at this interval
WORKER_POLL_SEC = 1.0

# ── HLS ───────────────────────────────────────────────────────────────
FFMPEG_COMMAND = "ffmpeg"
HLS_SEGMENT_SEC = 6
HLS_GOP_SIZE = 48
HLS_MASTER_PLAYLIST = "master.m3u8"
HLS_VARIANT_PLAYLIST = "index.m3u8"
HLS_SEGMENT_PATTERN = "segment_%03d.ts"
HLS_MASTER_HEADER = ("#EXTM3U", "#EXT-X-VERSION:3")

# ── Misc ──────────────────────────────────────────────────────────────
MAX_ERROR_MESSAGE_LEN = 2000
LESSON_API_TIMEOUT_SEC = 15
