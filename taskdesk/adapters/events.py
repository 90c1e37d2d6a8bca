"""Event types emitted by the task engine.

Each event corresponds to an engine callback dict, parsed into
a typed dataclass for safe consumption by a UI.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class TaskEvent:
    """Base event from the task engine."""
    event_type: str = ""
    task_id: str = ""
    base_dir: str = ""


@dataclass
class TaskInitialized(TaskEvent):
    event_type: str = "task_initialized"
    working_mode: str = "local"


@dataclass
class TaskUpdated(TaskEvent):
    event_type: str = "task_updated"
    task: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskClosed(TaskEvent):
    event_type: str = "task_closed"
    deleted: bool = False


@dataclass
class UserMessageAdded(TaskEvent):
    event_type: str = "user_message_added"
    content: str = ""
    mode: str = "code"
    prompt_context: dict[str, Any] | None = None


@dataclass
class ResponseChunk(TaskEvent):
    event_type: str = "response_chunk"
    message_id: str = ""
    chunk: str = ""
    reflected_message: str | None = None
    prompt_context: dict[str, Any] | None = None


@dataclass
class ResponseCompleted(TaskEvent):
    event_type: str = "response_completed"
    message_id: str = ""
    content: str = ""
    reflected_message: str | None = None
    edited_files: list[str] = field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage_report: dict[str, Any] | None = None
    sequence_number: int = 0
    prompt_context: dict[str, Any] | None = None


@dataclass
class QuestionAsked(TaskEvent):
    event_type: str = "question_asked"
    text: str = ""
    subject: str | None = None
    answers: list[dict[str, str]] = field(default_factory=list)
    default_answer: str = "y"
    is_group_question: bool = False
    key: str = ""


@dataclass
class QuestionAnswered(TaskEvent):
    event_type: str = "question_answered"
    key: str = ""
    answer: str = ""
    user_input: str | None = None


@dataclass
class LogMessage(TaskEvent):
    event_type: str = "log_message"
    level: str = "info"
    message: str = ""
    # Recoverable actions a UI can offer, e.g. "abort-rebase".
    action_ids: list[str] = field(default_factory=list)
    prompt_context: dict[str, Any] | None = None
    finished: bool = False


@dataclass
class ContextFilesUpdated(TaskEvent):
    event_type: str = "context_files_updated"
    files: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class WorktreeIntegrationStatusUpdated(TaskEvent):
    event_type: str = "worktree_integration_status_updated"
    status: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextInfoRequested(TaskEvent):
    event_type: str = "context_info_requested"


@dataclass
class ContextInfoUpdated(TaskEvent):
    """Token usage of the current context as reported by a backend."""
    event_type: str = "context_info_updated"
    info: dict[str, Any] = field(default_factory=dict)


_EVENT_MAP: dict[str, type[TaskEvent]] = {
    "task_initialized": TaskInitialized,
    "task_updated": TaskUpdated,
    "task_closed": TaskClosed,
    "user_message_added": UserMessageAdded,
    "response_chunk": ResponseChunk,
    "response_completed": ResponseCompleted,
    "question_asked": QuestionAsked,
    "question_answered": QuestionAnswered,
    "log_message": LogMessage,
    "context_files_updated": ContextFilesUpdated,
    "worktree_integration_status_updated": WorktreeIntegrationStatusUpdated,
    "context_info_requested": ContextInfoRequested,
    "context_info_updated": ContextInfoUpdated,
}


def event_to_dict(event: TaskEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" for consistency with engine callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> TaskEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, TaskEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
