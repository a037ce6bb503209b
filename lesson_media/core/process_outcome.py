"""
How a recognizer process ended, as a closed set of outcome types.
"""

import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from lesson_media.core.constants import ErrorCode

# Signals sent by TranscriptionJobManager.cancel()
CANCEL_SIGNALS = {signal.SIGTERM, signal.SIGKILL}


@dataclass(frozen=True)
class Completed:
    transcript_path: Optional[Path]    # None when the recognizer wrote nothing


@dataclass(frozen=True)
class Failed:
    exit_code: Optional[int]
    message: str
    code: str = ErrorCode.RECOGNIZER_EXIT


@dataclass(frozen=True)
class Cancelled:
    signal_name: str


@dataclass(frozen=True)
class SpawnError:
    message: str


Outcome = Union[Completed, Failed, Cancelled, SpawnError]


def classify_exit(returncode: int, expected_output: Path,
                  timed_out: bool = False) -> Outcome:
    """Map a Popen return code to an outcome. Negative codes are signals."""
    if timed_out:
        return Failed(returncode,
                      f"Recognizer exceeded the configured time limit (exit code {returncode})",
                      ErrorCode.RECOGNIZER_TIMEOUT)

    if returncode < 0:
        sig = -returncode
        try:
            name = signal.Signals(sig).name
        except ValueError:
            name = f"signal {sig}"
        if sig in CANCEL_SIGNALS:
            return Cancelled(name)
        return Failed(returncode, f"Recognizer terminated by {name} (exit code {returncode})")

    if returncode != 0:
        return Failed(returncode, f"Recognizer process exited with code {returncode}")

    return Completed(expected_output if expected_output.exists() else None)
