"""
Security utilities for LessonMedia.
- Safe subprocess execution (argument arrays only)
- Path containment checks for generated artifacts
"""

import subprocess
import pathlib
import logging

logger = logging.getLogger(__name__)


# ── Path safety ───────────────────────────────────────────────────────

def is_within(root: pathlib.Path, candidate: pathlib.Path) -> bool:
    """True if realpath(candidate) is root itself or lies under realpath(root)."""
    real_root = root.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    return real_candidate == real_root or real_root in real_candidate.parents


def safe_child(root: pathlib.Path, *parts: str) -> pathlib.Path:
    """
    Join path components under root. Raises ValueError if the result would
    escape root (e.g. an id of '../..').
    """
    candidate = root.joinpath(*[str(p) for p in parts])
    if not is_within(root, candidate):
        raise ValueError(f"Path traversal detected: {candidate}")
    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def _check_args(args) -> None:
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    _check_args(args)

    # shell=False is set once; any caller-supplied value is dropped
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int | None = None,
                           **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def spawn_process(args: list[str], **kwargs) -> subprocess.Popen:
    """
    Start a long-running subprocess without waiting for it.
    stdout and stderr are merged into a single text pipe.
    """
    _check_args(args)
    kwargs.pop('shell', None)

    logger.debug("Spawning subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.Popen(
        args,
        shell=False,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors='replace',
        **kwargs,
    )
