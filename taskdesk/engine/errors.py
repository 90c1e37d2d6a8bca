"""Exception hierarchy for the task engine.

Command failures keep the raw tool output so callers can classify
them (conflict vs. anything else) instead of just propagating.
"""
from __future__ import annotations

_CONFLICT_MARKERS = (
    "resolve all conflicts",
    "conflicts must be resolved first",
    "merge conflict",
    "conflict (",
    "automatic merge failed",
)


class TaskDeskError(Exception):
    """Base exception for all task engine errors."""


class ConfigurationError(TaskDeskError):
    """A required setting or profile could not be resolved."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CommandError(TaskDeskError):
    """An external command exited with a non-zero status."""
    def __init__(self, command: list[str] | str, output: str, returncode: int = 1):
        self.command = command if isinstance(command, str) else " ".join(command)
        self.output = output
        self.returncode = returncode
        super().__init__(
            f"Command '{self.command}' failed ({returncode}): {output.strip()}"
        )


class GitCommandError(CommandError):
    """A git invocation failed. ``output`` holds combined stdout/stderr."""

    @property
    def is_conflict(self) -> bool:
        lowered = self.output.lower()
        return any(marker in lowered for marker in _CONFLICT_MARKERS)


class NoWorktreeError(TaskDeskError):
    """The task has no worktree attached."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} has no worktree attached")


class MergeStateNotFoundError(TaskDeskError):
    """Revert requested but no merge has been recorded."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(
            f"No merge state found to revert for task {task_id}"
        )


class TodoNotFoundError(TaskDeskError):
    """Todo list or a named todo item does not exist."""
    def __init__(self, task_id: str, name: str | None = None):
        self.task_id = task_id
        self.name = name
        if name is None:
            msg = f"No todos found for task {task_id}"
        else:
            msg = f"Todo item '{name}' not found for task {task_id}"
        super().__init__(msg)


class ProcessControlError(TaskDeskError):
    """Spawning or killing the backend process failed."""
    def __init__(self, task_id: str, action: str, reason: str):
        self.task_id = task_id
        self.action = action
        self.reason = reason
        super().__init__(
            f"Failed to {action} backend process for task {task_id}: {reason}"
        )


class AgentRunError(TaskDeskError):
    """The in-process agent failed to produce a result."""
    def __init__(self, profile_id: str, reason: str):
        self.profile_id = profile_id
        self.reason = reason
        super().__init__(f"Agent run with profile {profile_id} failed: {reason}")
