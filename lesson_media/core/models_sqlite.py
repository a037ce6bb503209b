"""
SQLite data models (plain dataclasses) for LessonMedia.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class TranscriptionJob:
    id: str                          # UUID
    lesson_id: str
    video_path: str
    user_id: Optional[str] = None
    course_id: Optional[str] = None
    source: str = "upload"
    status: str = "QUEUED"
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    transcript_url: Optional[str] = None
    transcript_json_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class TranscriptSegment:
    index: int
    start: Optional[float]
    end: Optional[float]
    text: str

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'start': self.start,
            'end': self.end,
            'text': self.text,
        }
