"""
Adaptive bitrate HLS renditions using ffmpeg.

One encode per variant, run sequentially, then a master playlist that
lists every variant. The output directory either ends up complete or
does not exist at all.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from lesson_media.core.cleanup import remove_tree, reset_dir
from lesson_media.core.constants import (
    ErrorCode, FFMPEG_COMMAND, HLS_SEGMENT_SEC, HLS_GOP_SIZE,
    HLS_MASTER_PLAYLIST, HLS_VARIANT_PLAYLIST, HLS_SEGMENT_PATTERN,
    HLS_MASTER_HEADER,
)
from lesson_media.core.error_codes import JobError
from lesson_media.core.output_writer import hls_dir, hls_playlist_url
from lesson_media.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HLSVariant:
    name: str
    width: int
    height: int
    bandwidth: int          # bits/s advertised in the master playlist
    video_bitrate: str      # ffmpeg rate, e.g. "5000k"
    audio_bitrate: str


# Best quality first
DEFAULT_VARIANTS = (
    HLSVariant("high", 1920, 1080, 5_000_000, "4500k", "192k"),
    HLSVariant("medium", 1280, 720, 2_800_000, "2500k", "128k"),
    HLSVariant("low", 854, 480, 1_400_000, "1200k", "96k"),
)


def build_variant_args(input_path: Path, variant_dir: Path, variant: HLSVariant,
                       ffmpeg_command: str = FFMPEG_COMMAND) -> list[str]:
    return [
        ffmpeg_command,
        "-y",
        "-i", str(input_path),
        "-vf", f"scale={variant.width}:{variant.height}",
        "-c:v", "libx264",
        "-b:v", variant.video_bitrate,
        "-c:a", "aac",
        "-b:a", variant.audio_bitrate,
        # Keyframe on every segment boundary
        "-g", str(HLS_GOP_SIZE),
        "-keyint_min", str(HLS_GOP_SIZE),
        "-sc_threshold", "0",
        "-hls_time", str(HLS_SEGMENT_SEC),
        "-hls_list_size", "0",
        "-hls_segment_filename", str(variant_dir / HLS_SEGMENT_PATTERN),
        str(variant_dir / HLS_VARIANT_PLAYLIST),
    ]


def build_master_playlist(variants) -> str:
    lines = list(HLS_MASTER_HEADER)
    for v in variants:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={v.bandwidth},RESOLUTION={v.width}x{v.height}")
        lines.append(f"{v.name}/{HLS_VARIANT_PLAYLIST}")
    return "\n".join(lines) + "\n"


def _encode_variant(input_path: Path, output_dir: Path, variant: HLSVariant,
                    ffmpeg_command: str, runner: Callable):
    variant_dir = output_dir / variant.name
    variant_dir.mkdir(parents=True, exist_ok=True)
    args = build_variant_args(input_path, variant_dir, variant, ffmpeg_command)

    logger.info("Encoding HLS variant %s (%dx%d) for %s",
                variant.name, variant.width, variant.height, input_path)
    result = runner(args)

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise JobError(ErrorCode.FFMPEG_ENCODE,
                       f"ffmpeg failed for variant {variant.name} "
                       f"(rc={result.returncode}): {stderr[-300:]}")


def convert_to_hls(input_path: Path, output_dir: Path,
                   master_playlist_name: str = HLS_MASTER_PLAYLIST,
                   variants=DEFAULT_VARIANTS,
                   ffmpeg_command: str = FFMPEG_COMMAND,
                   runner: Callable = run_subprocess_capture) -> Path:
    """
    Encode every variant of `input_path` into `output_dir` and write the
    master playlist. Returns the master playlist path.

    On any error the whole output_dir is removed and the error re-raised.
    """
    variants = list(variants)
    if not variants:
        raise JobError(ErrorCode.INVALID_REQUEST, "At least one HLS variant is required")

    input_path = Path(input_path)
    output_dir = Path(output_dir)

    try:
        reset_dir(output_dir)

        for variant in variants:
            _encode_variant(input_path, output_dir, variant, ffmpeg_command, runner)

        master_path = output_dir / master_playlist_name
        master_path.write_text(build_master_playlist(variants), encoding='utf-8')
    except Exception:
        logger.error("HLS conversion failed for %s — removing %s", input_path, output_dir)
        remove_tree(output_dir)
        raise

    logger.info("HLS conversion complete: %s", master_path)
    return master_path


class HlsBuildService:
    """
    Per-lesson HLS builds under the uploads tree. Builds for the same
    lesson are serialized because convert_to_hls resets its directory.
    """

    def __init__(self, config, runner: Callable = run_subprocess_capture,
                 variants=DEFAULT_VARIANTS):
        self.config = config
        self.runner = runner
        self.variants = variants
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lesson_lock(self, lesson_id) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(str(lesson_id), threading.Lock())

    def build_for_lesson(self, lesson_id, course_id, video_path) -> str:
        """Build renditions for a lesson video. Returns the master playlist URL."""
        if lesson_id is None or course_id is None or not video_path:
            raise JobError(ErrorCode.INVALID_REQUEST,
                           "lesson_id, course_id and video_path are required")

        video = Path(video_path)
        if not video.is_absolute():
            video = self.config.base_dir / video
        output_dir = hls_dir(self.config.uploads_root, course_id, lesson_id)

        with self._lesson_lock(lesson_id):
            convert_to_hls(video, output_dir,
                           variants=self.variants,
                           ffmpeg_command=self.config.get('ffmpeg_command'),
                           runner=self.runner)
        return hls_playlist_url(course_id, lesson_id)

    def delete_lesson_hls(self, lesson_id, course_id) -> bool:
        """Remove a lesson's renditions, e.g. after its video was replaced."""
        if lesson_id is None or course_id is None:
            return False
        with self._lesson_lock(lesson_id):
            return remove_tree(hls_dir(self.config.uploads_root, course_id, lesson_id))
