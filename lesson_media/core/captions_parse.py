"""
Subtitle format conversion: SRT captions → structured transcript segments.

Primary path rewrites the SRT into WebVTT and runs the strict WebVTT
parser. Anything the strict parser rejects goes through the manual SRT
parser, which drops malformed blocks instead of failing.
"""

import re
import logging
from dataclasses import dataclass, field
from pathlib import Path

from lesson_media.core.constants import ErrorCode
from lesson_media.core.error_codes import JobError
from lesson_media.core.models_sqlite import TranscriptSegment

logger = logging.getLogger(__name__)

_SRT_TIMESTAMP_RE = re.compile(r'(\d{2}:\d{2}:\d{2}),(\d{3})')
_TIMESTAMP_RE = re.compile(r'^(?:(\d+):)?(\d{1,2}):(\d{1,2})(?:[,.](\d+))?$')
_VTT_TIMING_RE = re.compile(
    r'^((?:\d+:)?\d{2}:\d{2}\.\d{3})[ \t]+-->[ \t]+((?:\d+:)?\d{2}:\d{2}\.\d{3})(?:[ \t]+.*)?$'
)
_WEBVTT_HEADER_RE = re.compile(r'^WEBVTT(?:[ \t].*)?$')
_BLOCK_SPLIT_RE = re.compile(r'\r?\n[ \t]*\r?\n')
_LINE_SPLIT_RE = re.compile(r'\r?\n')
_NON_CUE_BLOCKS = ('NOTE', 'STYLE', 'REGION')

WEBVTT_HEADER = "WEBVTT"


@dataclass
class WebVttResult:
    valid: bool
    cues: list[TranscriptSegment] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def parse_timestamp(value: str) -> float:
    """
    Convert `HH:MM:SS,mmm` or `HH:MM:SS.mmm` to seconds.
    Raises ValueError on anything else.
    """
    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid timestamp: {value!r}")
    hours, minutes, seconds, fraction = match.groups()
    total = int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds)
    if fraction:
        return total + float(f"0.{fraction}")
    return float(total)


def srt_to_webvtt(srt_content: str) -> str:
    """Rewrite SRT timestamps to the dot convention and add the WEBVTT header."""
    return f"{WEBVTT_HEADER}\n\n" + _SRT_TIMESTAMP_RE.sub(r'\1.\2', srt_content)


def parse_webvtt(content: str) -> WebVttResult:
    """
    Strict WebVTT parser.

    The result is invalid when the header is missing or any cue lacks a
    well-formed timing line with start < end.
    """
    content = content.lstrip('\ufeff')
    blocks = [b for b in _BLOCK_SPLIT_RE.split(content.strip()) if b.strip()]

    if not blocks or not _WEBVTT_HEADER_RE.match(_LINE_SPLIT_RE.split(blocks[0])[0]):
        return WebVttResult(valid=False, errors=["Missing WEBVTT header"])

    cues = []
    errors = []

    for block_no, block in enumerate(blocks[1:], start=1):
        lines = [line.rstrip() for line in _LINE_SPLIT_RE.split(block.strip())]
        if lines[0].startswith(_NON_CUE_BLOCKS):
            continue

        timing_idx = 0 if '-->' in lines[0] else 1
        if timing_idx >= len(lines) or '-->' not in lines[timing_idx]:
            errors.append(f"Cue {block_no}: missing timing line")
            continue

        match = _VTT_TIMING_RE.match(lines[timing_idx].strip())
        if not match:
            errors.append(f"Cue {block_no}: malformed timing line {lines[timing_idx]!r}")
            continue

        start = parse_timestamp(match.group(1))
        end = parse_timestamp(match.group(2))
        if start >= end:
            errors.append(f"Cue {block_no}: start {start} is not before end {end}")
            continue

        text = '\n'.join(lines[timing_idx + 1:]).strip()
        cues.append(TranscriptSegment(index=len(cues) + 1, start=start, end=end, text=text))

    return WebVttResult(valid=not errors, cues=cues, errors=errors)


def parse_srt_manual(srt_content: str) -> list[TranscriptSegment]:
    """
    Lenient SRT parser. Blocks without a usable timing line are skipped.
    Indices are taken from the file; callers renumber.
    """
    segments = []
    for block in _BLOCK_SPLIT_RE.split(srt_content.strip()):
        lines = [line.strip() for line in _LINE_SPLIT_RE.split(block)]
        lines = [line for line in lines if line]
        if len(lines) < 2:
            continue

        parts = lines[1].split('-->')
        if len(parts) != 2:
            continue
        try:
            start = parse_timestamp(parts[0])
            end = parse_timestamp(parts[1].split()[0] if parts[1].split() else '')
        except ValueError:
            continue

        try:
            index = int(lines[0])
        except ValueError:
            index = 0

        segments.append(TranscriptSegment(
            index=index, start=start, end=end, text=' '.join(lines[2:]),
        ))
    return segments


def _finalize(segments: list[TranscriptSegment]) -> list[TranscriptSegment]:
    """Drop unusable cues and renumber 1..N in source order."""
    result = []
    for seg in segments:
        text = seg.text.strip()
        if not text or seg.start is None or seg.end is None or seg.start >= seg.end:
            continue
        result.append(TranscriptSegment(index=len(result) + 1,
                                        start=seg.start, end=seg.end, text=text))
    return result


def convert_srt_to_segments(srt_content: str) -> list[TranscriptSegment]:
    """Convert SRT text to transcript segments. Never raises on malformed cues."""
    try:
        parsed = parse_webvtt(srt_to_webvtt(srt_content))
    except Exception as e:
        logger.warning("Strict subtitle parser failed (%s) — falling back to manual parsing", e)
        return _finalize(parse_srt_manual(srt_content))

    if not parsed.valid:
        logger.warning("Invalid subtitle format, falling back to manual parsing. Errors: %s",
                       ', '.join(parsed.errors))
        return _finalize(parse_srt_manual(srt_content))

    logger.debug("Parsed %d cues with the strict parser", len(parsed.cues))
    return _finalize(parsed.cues)


def convert_srt_file(srt_path: Path) -> list[TranscriptSegment]:
    content = srt_path.read_text(encoding='utf-8', errors='replace')
    return convert_srt_to_segments(content)


def _parse_vtt_file(vtt_path: Path) -> list[TranscriptSegment]:
    content = vtt_path.read_text(encoding='utf-8', errors='replace')
    parsed = parse_webvtt(content)
    if parsed.valid:
        return _finalize(parsed.cues)
    logger.warning("Invalid WebVTT file %s, falling back to manual parsing", vtt_path)
    body = _WEBVTT_HEADER_RE.sub('', content.lstrip('\ufeff'), count=1)
    return _finalize(parse_srt_manual(body))


def _parse_txt_file(txt_path: Path) -> list[TranscriptSegment]:
    """Plain text transcripts have no timing: one segment per paragraph."""
    content = txt_path.read_text(encoding='utf-8', errors='replace')
    paragraphs = [p.strip() for p in _BLOCK_SPLIT_RE.split(content) if p.strip()]
    return [TranscriptSegment(index=i, start=None, end=None, text=p)
            for i, p in enumerate(paragraphs, start=1)]


def parse_transcript_file(path: Path) -> list[TranscriptSegment]:
    """Parse an uploaded transcript, choosing the parser by file extension."""
    ext = path.suffix.lower()
    if ext == '.srt':
        return convert_srt_file(path)
    if ext == '.vtt':
        return _parse_vtt_file(path)
    if ext == '.txt':
        return _parse_txt_file(path)
    raise JobError(ErrorCode.UNSUPPORTED_TRANSCRIPT,
                   f"Unsupported transcript format: {ext or '(none)'}")
