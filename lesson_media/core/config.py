"""
Application configuration manager.
Stores settings in a JSON file under the data directory; environment
variables override whatever the file says.
"""

import json
import logging
import os
from pathlib import Path

from lesson_media.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_UPLOADS_ROOT,
    WHISPER_COMMAND, WHISPER_MODEL, WHISPER_TASK, WHISPER_OUTPUT_FORMAT,
    WHISPER_OUTPUT_DIR, WHISPER_MAX_CONCURRENT, WHISPER_TIMEOUT_SEC,
    CANCEL_GRACE_SEC, FFMPEG_COMMAND,
)

# Validation bounds
_MAX_CONCURRENT_MIN = 1
_MAX_CONCURRENT_MAX = 16
_GRACE_MIN = 0.1
_GRACE_MAX = 60.0

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'whisper_enabled': True,
    'whisper_command': WHISPER_COMMAND,
    'whisper_model': WHISPER_MODEL,
    'whisper_task': WHISPER_TASK,
    'whisper_output_format': WHISPER_OUTPUT_FORMAT,
    'whisper_language': '',
    'whisper_fp16': False,
    'whisper_output_dir': WHISPER_OUTPUT_DIR,
    'whisper_max_concurrent': WHISPER_MAX_CONCURRENT,
    'whisper_cancel_grace_sec': CANCEL_GRACE_SEC,
    'whisper_timeout_sec': WHISPER_TIMEOUT_SEC,
    'uploads_root': DEFAULT_UPLOADS_ROOT,
    'base_dir': '',
    'db_path': str(DB_PATH),
    'ffmpeg_command': FFMPEG_COMMAND,
    'lesson_api_base': '',
    'lesson_api_token': '',
}

# Environment variable → config key
_ENV_KEYS = {
    'WHISPER_ENABLED': 'whisper_enabled',
    'WHISPER_COMMAND': 'whisper_command',
    'WHISPER_MODEL': 'whisper_model',
    'WHISPER_TASK': 'whisper_task',
    'WHISPER_OUTPUT_FORMAT': 'whisper_output_format',
    'WHISPER_LANGUAGE': 'whisper_language',
    'WHISPER_FP16': 'whisper_fp16',
    'WHISPER_OUTPUT_DIR': 'whisper_output_dir',
    'WHISPER_MAX_CONCURRENT': 'whisper_max_concurrent',
    'WHISPER_CANCEL_GRACE_SEC': 'whisper_cancel_grace_sec',
    'WHISPER_TIMEOUT_SEC': 'whisper_timeout_sec',
    'UPLOADS_ROOT': 'uploads_root',
    'MEDIA_BASE_DIR': 'base_dir',
    'MEDIA_DB_PATH': 'db_path',
    'FFMPEG_COMMAND': 'ffmpeg_command',
    'LESSON_API_BASE': 'lesson_api_base',
    'LESSON_API_TOKEN': 'lesson_api_token',
}

_TRUE_STRINGS = {'1', 'true', 'yes', 'on'}


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None,
                 environ: dict | None = None,
                 overrides: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._environ = os.environ if environ is None else environ
        self._overrides = dict(overrides or {})
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging defaults, file, environment, overrides."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                self._data.update(saved)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

        for env_name, key in _ENV_KEYS.items():
            if env_name in self._environ:
                self._data[key] = self._environ[env_name]

        self._data.update(self._overrides)

        for key in list(self._data):
            self._data[key] = self._validate(key, self._data[key])

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in ('whisper_enabled', 'whisper_fp16'):
            return _to_bool(value)

        if key == 'whisper_max_concurrent':
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid whisper_max_concurrent %r — using default", value)
                return WHISPER_MAX_CONCURRENT
            return max(_MAX_CONCURRENT_MIN, min(_MAX_CONCURRENT_MAX, value))

        if key == 'whisper_cancel_grace_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid whisper_cancel_grace_sec %r — using default", value)
                return CANCEL_GRACE_SEC
            return max(_GRACE_MIN, min(_GRACE_MAX, value))

        if key == 'whisper_timeout_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid whisper_timeout_sec %r — disabling", value)
                return 0
            return max(0, value)

        if key == 'whisper_language':
            return (value or '').strip()

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def whisper_enabled(self) -> bool:
        return self._data.get('whisper_enabled', True)

    @property
    def max_concurrent(self) -> int:
        return self._data.get('whisper_max_concurrent', WHISPER_MAX_CONCURRENT)

    @property
    def cancel_grace_sec(self) -> float:
        return self._data.get('whisper_cancel_grace_sec', CANCEL_GRACE_SEC)

    @property
    def timeout_sec(self) -> float:
        return self._data.get('whisper_timeout_sec', 0)

    @property
    def base_dir(self) -> Path:
        base = self._data.get('base_dir')
        return Path(base) if base else Path.cwd()

    @property
    def uploads_root(self) -> Path:
        root = Path(self._data.get('uploads_root', DEFAULT_UPLOADS_ROOT))
        return root if root.is_absolute() else self.base_dir / root

    @property
    def db_path(self) -> Path:
        return Path(self._data.get('db_path', str(DB_PATH)))
