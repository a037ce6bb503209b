"""
Lesson record collaborator.
The course platform owns lesson rows; this module pushes transcript
fields back to it over its internal HTTP API.
"""

import logging

import requests

from lesson_media.core.error_codes import JobError
from lesson_media.core.constants import ErrorCode, LESSON_API_TIMEOUT_SEC

logger = logging.getLogger(__name__)

# Python field name → platform API field name
_FIELD_NAMES = {
    'transcript_url': 'transcriptUrl',
    'transcript_json_url': 'transcriptJsonUrl',
    'transcript_status': 'transcriptStatus',
}


def to_api_payload(fields: dict) -> dict:
    """Translate update kwargs to the API's camelCase payload."""
    unknown = set(fields) - set(_FIELD_NAMES)
    if unknown:
        raise JobError(ErrorCode.INVALID_REQUEST,
                       f"Unsupported lesson fields: {', '.join(sorted(unknown))}")
    return {_FIELD_NAMES[k]: v for k, v in fields.items()}


class LessonRepository:
    """Write contract for lesson transcript fields."""

    def update(self, lesson_id, **fields):
        raise NotImplementedError


class NullLessonRepository(LessonRepository):
    """Used when no platform API is configured: updates are only logged."""

    def update(self, lesson_id, **fields):
        logger.info("Lesson %s update (not forwarded): %s", lesson_id, to_api_payload(fields))


class HttpLessonRepository(LessonRepository):
    """PATCHes lesson transcript fields to the platform API."""

    def __init__(self, api_base: str, token: str | None = None,
                 session: requests.Session | None = None,
                 timeout: float = LESSON_API_TIMEOUT_SEC):
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers['Authorization'] = f"Bearer {token}"

    def update(self, lesson_id, **fields):
        url = f"{self.api_base}/lessons/{lesson_id}/transcript"
        payload = to_api_payload(fields)

        try:
            resp = self.session.patch(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.NETWORK_TRANSIENT,
                           f"Lesson API timed out updating lesson {lesson_id}")
        except requests.exceptions.ConnectionError:
            raise JobError(ErrorCode.NETWORK_TRANSIENT,
                           f"Network error updating lesson {lesson_id}")

        if resp.status_code == 404:
            raise JobError(ErrorCode.LESSON_UPDATE,
                           f"Lesson {lesson_id} not found", retryable=False)

        if resp.status_code >= 400:
            body = resp.text[:300] if resp.text else "No response body"
            raise JobError(ErrorCode.LESSON_UPDATE,
                           f"Lesson API returned {resp.status_code}: {body}",
                           retryable=resp.status_code >= 500)

        logger.debug("Updated lesson %s: %s", lesson_id, payload)


def build_lesson_repository(config) -> LessonRepository:
    api_base = config.get('lesson_api_base')
    if not api_base:
        logger.warning("lesson_api_base not configured — lesson updates will only be logged")
        return NullLessonRepository()
    return HttpLessonRepository(api_base, config.get('lesson_api_token') or None)
