"""taskdesk engine: per-task prompt coordination and worktree integration."""
from .models import (
    AgentProfile,
    ContextFile,
    ContextMessage,
    MergeState,
    Mode,
    PromptContext,
    QuestionData,
    ResponseCompleted,
    TaskData,
    TaskState,
    TodoItem,
    WorkingMode,
    Worktree,
    WorktreeIntegrationStatus,
)
from .config import AiderSettings, EngineConfig, ProjectSettings
from .errors import (
    AgentRunError,
    CommandError,
    ConfigurationError,
    GitCommandError,
    MergeStateNotFoundError,
    NoWorktreeError,
    ProcessControlError,
    TaskDeskError,
    TodoNotFoundError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "Task",
    "TaskRegistry",
    "ConnectorServer",
    "WorktreeManager",
    "AiderManager",
    # Models
    "AgentProfile",
    "ContextFile",
    "ContextMessage",
    "MergeState",
    "Mode",
    "PromptContext",
    "QuestionData",
    "ResponseCompleted",
    "TaskData",
    "TaskState",
    "TodoItem",
    "WorkingMode",
    "Worktree",
    "WorktreeIntegrationStatus",
    # Config
    "AiderSettings",
    "EngineConfig",
    "ProjectSettings",
    # YAML config (lazy import)
    "TaskDeskConfig",
    "load_yaml_config",
    # Errors
    "AgentRunError",
    "CommandError",
    "ConfigurationError",
    "GitCommandError",
    "MergeStateNotFoundError",
    "NoWorktreeError",
    "ProcessControlError",
    "TaskDeskError",
    "TodoNotFoundError",
]


def __getattr__(name: str):
    if name == "Task":
        from .task import Task
        return Task
    if name == "TaskRegistry":
        from .task_registry import TaskRegistry
        return TaskRegistry
    if name == "ConnectorServer":
        from .connector_server import ConnectorServer
        return ConnectorServer
    if name == "WorktreeManager":
        from .worktrees import WorktreeManager
        return WorktreeManager
    if name == "AiderManager":
        from .aider_manager import AiderManager
        return AiderManager
    if name == "TaskDeskConfig":
        from .yaml_config import TaskDeskConfig
        return TaskDeskConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
