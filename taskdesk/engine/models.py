"""Core data models for the task engine.

All dataclasses and enums shared between the coordinator, the
backends and the persistence layer. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Mode(str, Enum):
    """Prompt modes. Every mode except AGENT runs through the subprocess backend."""
    CODE = "code"
    ASK = "ask"
    ARCHITECT = "architect"
    CONTEXT = "context"
    AGENT = "agent"


class WorkingMode(str, Enum):
    """Where a task's edits land."""
    LOCAL = "local"
    WORKTREE = "worktree"


class TaskState(str, Enum):
    """Task lifecycle states. See lifecycle.py for transition rules."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utcnow_iso() -> str:
    return _utcnow().isoformat()


@dataclass
class PromptGroup:
    """Visual grouping for several prompt exchanges (e.g. per-file conflict passes)."""
    id: str = field(default_factory=_make_id)
    name: str | None = None
    color: str | None = None
    finished: bool = False


@dataclass
class PromptContext:
    """Correlation id binding a request to its streamed/aggregated response."""
    id: str = field(default_factory=_make_id)
    group: PromptGroup | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PromptContext | None:
        if not data:
            return None
        group = data.get("group")
        return cls(
            id=data.get("id") or _make_id(),
            group=PromptGroup(**group) if group else None,
        )


@dataclass
class Answer:
    text: str
    shortkey: str


@dataclass
class QuestionData:
    """An interactive confirmation request from a backend."""
    text: str
    subject: str | None = None
    answers: list[Answer] | None = None
    default_answer: str = "y"
    is_group_question: bool = False
    internal: bool = False
    key: str | None = None
    base_dir: str = ""
    task_id: str = ""

    def stable_key(self) -> str:
        """Identity used for sticky answers."""
        return self.key or f"{self.text}_{self.subject or ''}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionData:
        answers = data.get("answers")
        return cls(
            text=data.get("text", ""),
            subject=data.get("subject"),
            answers=[
                Answer(text=a.get("text", ""), shortkey=a.get("shortkey", ""))
                for a in answers
            ] if answers else None,
            default_answer=data.get("defaultAnswer", data.get("default_answer", "y")),
            is_group_question=bool(
                data.get("isGroupQuestion", data.get("is_group_question", False))
            ),
            internal=bool(data.get("internal", False)),
            key=data.get("key"),
            base_dir=data.get("baseDir", ""),
            task_id=data.get("taskId", ""),
        )


@dataclass
class UsageReport:
    model: str = ""
    sent_tokens: int = 0
    received_tokens: int = 0
    message_cost: float = 0.0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    aider_total_cost: float | None = None
    agent_total_cost: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UsageReport | None:
        if not data:
            return None
        return cls(
            model=data.get("model", ""),
            sent_tokens=int(data.get("sentTokens", 0) or 0),
            received_tokens=int(data.get("receivedTokens", 0) or 0),
            message_cost=float(data.get("messageCost", 0.0) or 0.0),
            cache_write_tokens=int(data.get("cacheWriteTokens", 0) or 0),
            cache_read_tokens=int(data.get("cacheReadTokens", 0) or 0),
        )


@dataclass
class ResponseCompleted:
    """One finished response inside a prompt cycle."""
    message_id: str
    content: str = ""
    reflected_message: str | None = None
    edited_files: list[str] = field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage_report: UsageReport | None = None
    sequence_number: int = 0
    prompt_context: PromptContext | None = None


@dataclass
class ContextMessage:
    """A single conversation turn."""
    role: MessageRole
    content: str
    id: str = field(default_factory=_make_id)
    prompt_context: PromptContext | None = None
    usage_report: UsageReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "promptContext": self.prompt_context.to_dict() if self.prompt_context else None,
        }


@dataclass
class ContextFile:
    path: str
    read_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "readOnly": self.read_only}


@dataclass
class Worktree:
    path: str
    base_branch: str | None = None
    base_commit: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)


@dataclass
class MergeState:
    """One-shot undo token for the most recent merge."""
    before_merge_commit_hash: str
    worktree_branch_commit_hash: str
    target_branch: str
    squash: bool = False
    main_original_stash_id: str | None = None
    # Worktree HEAD before uncommitted changes were auto-committed for the merge.
    worktree_original_head: str | None = None
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass
class TaskData:
    """Persisted task record."""
    id: str
    base_dir: str
    name: str = ""
    archived: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    worktree: Worktree | None = None
    working_mode: WorkingMode = WorkingMode.LOCAL
    last_merge_state: MergeState | None = None
    aider_total_cost: float = 0.0
    agent_total_cost: float = 0.0
    current_mode: Mode = Mode.CODE
    main_model: str | None = None
    weak_model: str | None = None
    architect_model: str | None = None
    agent_profile_id: str | None = None
    auto_approve: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["working_mode"] = self.working_mode.value
        data["current_mode"] = self.current_mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskData:
        data = dict(data)
        worktree = data.pop("worktree", None)
        merge_state = data.pop("last_merge_state", None)
        working_mode = data.pop("working_mode", WorkingMode.LOCAL.value)
        current_mode = data.pop("current_mode", Mode.CODE.value)
        known = set(cls.__dataclass_fields__)
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(
            worktree=Worktree(**worktree) if worktree else None,
            last_merge_state=MergeState(**merge_state) if merge_state else None,
            working_mode=WorkingMode(working_mode or WorkingMode.LOCAL.value),
            current_mode=Mode(current_mode or Mode.CODE.value),
            **filtered,
        )


@dataclass
class TodoItem:
    name: str
    completed: bool = False


@dataclass
class CommitInfo:
    hash: str
    message: str


@dataclass
class RebaseState:
    in_progress: bool = False
    onto: str | None = None
    conflicted_files: list[str] = field(default_factory=list)


@dataclass
class UnmergedWork:
    """Commits and files in a worktree that the target branch does not have."""
    ahead_commits: list[CommitInfo] = field(default_factory=list)
    uncommitted_files: list[str] = field(default_factory=list)


@dataclass
class WorktreeIntegrationStatus:
    """Derived view of a worktree relative to its target branch. Never cached."""
    target_branch: str
    ahead_commits: list[CommitInfo] = field(default_factory=list)
    uncommitted_files: list[str] = field(default_factory=list)
    predicted_conflicts: list[str] = field(default_factory=list)
    rebase_state: RebaseState = field(default_factory=RebaseState)

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetBranch": self.target_branch,
            "aheadCommits": {
                "count": len(self.ahead_commits),
                "commits": [asdict(c) for c in self.ahead_commits],
            },
            "uncommittedFiles": {
                "count": len(self.uncommitted_files),
                "files": list(self.uncommitted_files),
            },
            "predictedConflicts": list(self.predicted_conflicts),
            "rebaseState": asdict(self.rebase_state),
        }


@dataclass
class ConflictContext:
    """Three-way view of one conflicted file. Missing stages are None."""
    file_path: str
    base: str | None = None
    ours: str | None = None
    theirs: str | None = None


@dataclass
class AgentProfile:
    """Settings for one in-process agent configuration."""
    id: str
    name: str
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=lambda: [
        "Read", "Edit", "Write", "Grep", "Glob", "Bash",
    ])
    permission_mode: str = "acceptEdits"
    max_turns: int | None = None


@dataclass
class ModelMapping:
    """Backend-specific model name plus the env it needs to run."""
    model_name: str
    environment_variables: dict[str, str] = field(default_factory=dict)
