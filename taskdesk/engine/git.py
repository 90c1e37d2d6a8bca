"""Async git invocation.

Every call is array-based (no shell). Failures raise GitCommandError
carrying the combined stdout/stderr so callers can classify them.
"""
from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path

from .errors import GitCommandError

logger = logging.getLogger(__name__)


class GitOutcome(str, Enum):
    CLEAN = "clean"
    CONFLICT = "conflict"
    FAILED = "failed"


def classify(error: BaseException | None) -> GitOutcome:
    """Classify the result of a git operation by its error output."""
    if error is None:
        return GitOutcome.CLEAN
    if isinstance(error, GitCommandError) and error.is_conflict:
        return GitOutcome.CONFLICT
    return GitOutcome.FAILED


async def git_output(
    args: list[str],
    cwd: str | Path,
    *,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run git and return ``(returncode, stdout, stderr)`` without raising."""
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=full_env,
    )
    stdout, stderr = await proc.communicate()
    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def run_git(
    args: list[str],
    cwd: str | Path,
    *,
    env: dict[str, str] | None = None,
) -> str:
    """Run git and return stdout. Raises GitCommandError on non-zero exit."""
    code, stdout, stderr = await git_output(args, cwd, env=env)
    if code != 0:
        output = "\n".join(part for part in (stdout.strip(), stderr.strip()) if part)
        raise GitCommandError(["git", *args], output, code)
    return stdout
