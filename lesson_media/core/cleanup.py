"""
Cleanup: best-effort removal of generated media artifacts.
"""

import shutil
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def remove_tree(path: Path) -> bool:
    """
    Recursively delete `path`. Failures are logged and swallowed.
    Returns True if nothing is left at `path`.
    """
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
        logger.debug("Deleted: %s", path)
    except Exception as e:
        logger.warning("Failed to delete %s: %s", path, e)
    return not path.exists()


def reset_dir(path: Path):
    """Delete `path` if present and recreate it empty. Errors propagate."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def delete_transcript_files(transcript_dir: Path, transcript_filename: str,
                            json_filename: str | None = None):
    """
    Delete a lesson's caption file and its JSON segments.
    When json_filename is not given the JSON is located by base name.
    """
    srt_path = transcript_dir / Path(transcript_filename).name
    if json_filename:
        json_path = transcript_dir / Path(json_filename).name
    else:
        json_path = srt_path.with_suffix('.json')

    for path in (srt_path, json_path):
        try:
            if path.exists():
                path.unlink()
                logger.info("Deleted transcript file: %s", path)
        except Exception as e:
            logger.error("Failed to delete transcript file %s: %s", path, e)
