#!/usr/bin/env python3
"""
LessonMedia v1.0.0 — Main entry point.

    python main.py worker                         run the transcription worker pool
    python main.py transcribe LESSON VIDEO [--course C] [--user U] [--wait]
    python main.py hls INPUT OUTPUT_DIR           build HLS renditions
    python main.py hls-lesson LESSON COURSE VIDEO build renditions under uploads/
    python main.py parse-transcript PATH [--output OUT]  transcript file to JSON
    python main.py status                         show queue status
    python main.py diagnostics                    show tool versions
"""

import sys
import os
import json
import signal
import logging
import argparse
import threading
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lesson_media.core.constants import APP_NAME, APP_VERSION, LOG_DIR

logger = logging.getLogger("lesson-media")


def setup_logging(verbose: bool = False):
    """Log to <data dir>/logs/app.log and stderr."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_DIR / "app.log", encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def check_prerequisites(config, need_recognizer=False, need_ffmpeg=False):
    """Exit with a message if a required external tool is missing."""
    import shutil
    missing = []
    if need_recognizer and not shutil.which(config.get('whisper_command')):
        missing.append(f"{config.get('whisper_command')} (install with: pip install openai-whisper)")
    if need_ffmpeg and not shutil.which(config.get('ffmpeg_command')):
        missing.append(f"{config.get('ffmpeg_command')} (install ffmpeg)")

    if missing:
        logger.error("Missing tools. PATH = %s", os.environ.get("PATH", ""))
        print("Missing required tools:\n  " + "\n  ".join(missing), file=sys.stderr)
        sys.exit(1)


def _build_manager(config):
    from lesson_media.core.db_sqlite import Database
    from lesson_media.core.job_queue import TranscriptionJobManager
    from lesson_media.core.lesson_client import build_lesson_repository

    db = Database(config.db_path)
    return TranscriptionJobManager(db, build_lesson_repository(config), config)


def cmd_worker(args, config):
    check_prerequisites(config, need_recognizer=True)
    manager = _build_manager(config)
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received %s — stopping workers", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    manager.start()
    stop.wait()
    manager.stop(wait=True, cancel_running=args.cancel_running)
    manager.db.close()
    return 0


def cmd_transcribe(args, config):
    from lesson_media.core.error_codes import JobError

    if args.wait:
        check_prerequisites(config, need_recognizer=True)
    manager = _build_manager(config)
    handle = manager.enqueue(args.lesson, args.video, args.user, args.course, source="cli")
    print(f"Queued job {handle.job_id} for lesson {handle.lesson_id}")
    if not args.wait:
        manager.db.close()
        return 0

    manager.start()
    try:
        result = handle.result()
    except JobError as e:
        print(f"Transcription failed: {e}", file=sys.stderr)
        return 1
    finally:
        manager.stop(wait=True)
        manager.db.close()
    print(json.dumps({
        "transcriptUrl": result.transcript_url,
        "transcriptJsonUrl": result.transcript_json_url,
        "segments": result.segment_count,
    }, indent=2))
    return 0


def cmd_hls(args, config):
    from lesson_media.core.hls_builder import convert_to_hls

    check_prerequisites(config, need_ffmpeg=True)
    master = convert_to_hls(Path(args.input), Path(args.output_dir),
                            master_playlist_name=args.master,
                            ffmpeg_command=config.get('ffmpeg_command'))
    print(master)
    return 0


def cmd_hls_lesson(args, config):
    from lesson_media.core.hls_builder import HlsBuildService

    check_prerequisites(config, need_ffmpeg=True)
    print(HlsBuildService(config).build_for_lesson(args.lesson, args.course, args.video))
    return 0


def cmd_parse_transcript(args, config):
    """Parse an uploaded .srt/.vtt/.txt transcript into JSON segments."""
    from lesson_media.core.captions_parse import parse_transcript_file
    from lesson_media.core.output_writer import write_segments_json

    segments = parse_transcript_file(Path(args.path))
    if args.output:
        print(write_segments_json(segments, Path(args.output)))
    else:
        print(json.dumps([s.to_dict() for s in segments], indent=2, ensure_ascii=False))
    return 0


def cmd_status(args, config):
    manager = _build_manager(config)
    print(json.dumps(manager.get_queue_status(), indent=2))
    manager.db.close()
    return 0


def cmd_diagnostics(args, config):
    from lesson_media.core.diagnostics import get_diagnostics
    print(json.dumps(get_diagnostics(config), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lesson-media", description=f"{APP_NAME} media pipeline")
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("worker", help="run the transcription worker pool")
    p.add_argument("--cancel-running", action="store_true",
                   help="cancel running recognizers on shutdown")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("transcribe", help="queue a lesson transcription")
    p.add_argument("lesson")
    p.add_argument("video")
    p.add_argument("--course")
    p.add_argument("--user")
    p.add_argument("--wait", action="store_true", help="process the job and wait for it")
    p.set_defaults(func=cmd_transcribe)

    p = sub.add_parser("hls", help="build HLS renditions for a video file")
    p.add_argument("input")
    p.add_argument("output_dir")
    p.add_argument("--master", default="master.m3u8")
    p.set_defaults(func=cmd_hls)

    p = sub.add_parser("hls-lesson", help="build HLS renditions for a lesson video")
    p.add_argument("lesson")
    p.add_argument("course")
    p.add_argument("video")
    p.set_defaults(func=cmd_hls_lesson)

    p = sub.add_parser("parse-transcript", help="convert a transcript file to JSON segments")
    p.add_argument("path")
    p.add_argument("--output", help="write the segments to this JSON file")
    p.set_defaults(func=cmd_parse_transcript)

    p = sub.add_parser("status", help="show transcription queue status")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("diagnostics", help="show external tool information")
    p.set_defaults(func=cmd_diagnostics)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Project root: %s", PROJECT_ROOT)
    logger.info("=" * 60)

    from lesson_media.core.config import AppConfig
    config = AppConfig(args.config) if args.config else AppConfig()

    try:
        return args.func(args, config)
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
