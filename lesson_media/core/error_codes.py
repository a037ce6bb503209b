"""
Standardised error handling for LessonMedia.
"""

from lesson_media.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class JobCancelled(JobError):
    """Raised to listeners of a transcription job that was cancelled or superseded."""

    def __init__(self, message: str = "Transcription job cancelled"):
        super().__init__(ErrorCode.CANCELLED, message, retryable=False)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
