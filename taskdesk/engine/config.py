"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TASKDESK_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let callback errors break the engine
        logger.debug("event callback failed for %s", event.get("event"), exc_info=True)


def _default_pid_files_dir() -> str:
    return str(Path.home() / ".taskdesk" / "aider-processes")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Task engine configuration."""

    # Interpreter used to run the subprocess backend (`<python> -m connector`).
    python_command: str = "python"
    # Extra PYTHONPATH entry for the connector module, if not installed.
    connector_pythonpath: str | None = None

    # Callback endpoint the backend connects back to.
    connector_host: str = "127.0.0.1"
    connector_port: int = 24337

    # Per-project data lives under <base_dir>/<data_dir_name>.
    data_dir_name: str = ".taskdesk"
    # Crash-recovery markers, one per (base_dir, task_id).
    pid_files_dir: str = field(default_factory=_default_pid_files_dir)
    # Read-only rule files passed to the backend via --read.
    rules_dir_name: str = "rules"

    worktree_branch_prefix: str = "taskdesk/"
    default_main_model: str = "anthropic/claude-sonnet-4-5"
    default_edit_format: str = "diff"

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "response_chunk", "task_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def connector_url(self) -> str:
        return f"http://{self.connector_host}:{self.connector_port}"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TASKDESK_* environment variables."""
        td_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TASKDESK_")
        }
        if td_vars:
            logger.info(
                "EngineConfig.from_env: TASKDESK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(td_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no TASKDESK_* env vars set, using defaults")

        config = cls(
            python_command=os.getenv(
                "TASKDESK_PYTHON", cls.python_command
            ),
            connector_pythonpath=os.getenv("TASKDESK_CONNECTOR_PYTHONPATH") or None,
            connector_host=os.getenv(
                "TASKDESK_CONNECTOR_HOST", cls.connector_host
            ),
            connector_port=int(os.getenv(
                "TASKDESK_CONNECTOR_PORT", str(cls.connector_port)
            )),
            data_dir_name=os.getenv(
                "TASKDESK_DATA_DIR_NAME", cls.data_dir_name
            ),
            pid_files_dir=os.getenv("TASKDESK_PID_FILES_DIR") or _default_pid_files_dir(),
            worktree_branch_prefix=os.getenv(
                "TASKDESK_BRANCH_PREFIX", cls.worktree_branch_prefix
            ),
            default_main_model=os.getenv(
                "TASKDESK_MAIN_MODEL", cls.default_main_model
            ),
            log_level=os.getenv("TASKDESK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: python=%s connector=%s main_model=%s log_level=%s",
            config.python_command, config.connector_url,
            config.default_main_model, config.log_level,
        )
        return config


@dataclass
class AiderSettings:
    """Subprocess backend options taken from user settings."""
    options: str = ""
    environment_variables: dict[str, str] = field(default_factory=dict)
    auto_commits: bool = True
    watch_files: bool = False
    caching_enabled: bool = False
    add_rule_files: bool = True
    confirm_before_edit: bool = False

    @classmethod
    def from_env(cls) -> AiderSettings:
        return cls(
            options=os.getenv("TASKDESK_AIDER_OPTIONS", ""),
            auto_commits=_env_bool("TASKDESK_AIDER_AUTO_COMMITS", True),
            watch_files=_env_bool("TASKDESK_AIDER_WATCH_FILES", False),
            caching_enabled=_env_bool("TASKDESK_AIDER_CACHE_PROMPTS", False),
            confirm_before_edit=_env_bool("TASKDESK_CONFIRM_BEFORE_EDIT", False),
        )


@dataclass
class ProjectSettings:
    """Per-project model selection."""
    main_model: str = EngineConfig.default_main_model
    weak_model: str | None = None
    architect_model: str | None = None
    # Per-model edit format override, keyed by model id.
    model_edit_formats: dict[str, str] = field(default_factory=dict)
    reasoning_effort: str | None = None
    thinking_tokens: str | None = None
    agent_profile_id: str | None = None
