"""
Output writer: artifact locations and transcript JSON files.

Layout under the uploads root:
    courses/<course_id>/transcripts/<base>.srt|.json
    courses/<course_id>/hls/<lesson_id>/master.m3u8
Transcripts for jobs without a course go to the configured recognizer
output directory and are served from /uploads/transcripts/.
"""

import json
import logging
from pathlib import Path

from lesson_media.core.constants import UPLOADS_URL_PREFIX, HLS_MASTER_PLAYLIST
from lesson_media.core.models_sqlite import TranscriptSegment
from lesson_media.core.security_utils import safe_child

logger = logging.getLogger(__name__)


def course_dir(uploads_root: Path, course_id) -> Path:
    return safe_child(uploads_root, 'courses', str(course_id))


def transcript_dir(uploads_root: Path, course_id, fallback_dir: Path) -> Path:
    if course_id is None:
        return fallback_dir
    return course_dir(uploads_root, course_id) / 'transcripts'


def transcript_url(course_id, filename: str) -> str:
    if course_id is None:
        return f"{UPLOADS_URL_PREFIX}/transcripts/{filename}"
    return f"{UPLOADS_URL_PREFIX}/courses/{course_id}/transcripts/{filename}"


def hls_dir(uploads_root: Path, course_id, lesson_id) -> Path:
    return safe_child(course_dir(uploads_root, course_id), 'hls', str(lesson_id))


def hls_playlist_url(course_id, lesson_id) -> str:
    return f"{UPLOADS_URL_PREFIX}/courses/{course_id}/hls/{lesson_id}/{HLS_MASTER_PLAYLIST}"


def write_segments_json(segments: list[TranscriptSegment], output_path: Path) -> Path:
    """Write transcript segments as a pretty-printed JSON array."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump([s.to_dict() for s in segments], f, indent=2, ensure_ascii=False)

    logger.info("Wrote transcript JSON (%d segments): %s", len(segments), output_path)
    return output_path
