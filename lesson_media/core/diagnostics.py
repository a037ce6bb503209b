"""
Diagnostics: external tool detection and version reporting.
"""

import shutil
import logging

from lesson_media.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)


def get_ffmpeg_version(command: str = "ffmpeg") -> str:
    """Return ffmpeg version string, or error message."""
    try:
        result = run_subprocess_capture([command, "-version"], timeout=10)
        if result.returncode == 0:
            first_line = result.stdout.strip().splitlines()[0]
            return first_line
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def check_recognizer(command: str = "whisper") -> dict:
    """Locate the recognizer executable on PATH."""
    path = shutil.which(command)
    return {"command": command, "found": path is not None, "path": path}


def get_diagnostics(config) -> dict:
    """Gather all diagnostic information."""
    return {
        "ffmpeg_version": get_ffmpeg_version(config.get('ffmpeg_command')),
        "recognizer": check_recognizer(config.get('whisper_command')),
        "whisper_enabled": config.whisper_enabled,
        "uploads_root": str(config.uploads_root),
        "db_path": str(config.db_path),
    }
