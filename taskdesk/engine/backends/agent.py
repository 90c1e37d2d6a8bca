"""In-process agent backend.

The agent runtime sits behind AgentRunner; ClaudeAgentRunner is the
production implementation. Cancellation is a per-call token owned by
the task, so parallel runs (one per conflicted file) stop together.
"""
from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import ConfigurationError
from ..models import (
    AgentProfile,
    ContextFile,
    ContextMessage,
    Mode,
    PromptContext,
    ResponseCompleted,
)
from .base import Backend, BackendKind

if TYPE_CHECKING:
    from ..task import Task


@dataclass
class AgentRunResult:
    """Messages produced by one agent run plus what it cost."""
    messages: list[ContextMessage] = field(default_factory=list)
    cost: float = 0.0


class AgentRunner(abc.ABC):
    """Agent runtime interface."""

    @abc.abstractmethod
    async def run_agent(
        self,
        profile: AgentProfile,
        prompt: str,
        *,
        cwd: str,
        prompt_context: PromptContext | None = None,
        messages: list[ContextMessage] | None = None,
        files: list[ContextFile] | None = None,
        system_prompt: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentRunResult:
        """Run a full agent session (tools enabled) to completion.

        Implementations stop at the next message boundary once
        *cancel_event* is set and return what they have so far.
        """

    @abc.abstractmethod
    async def generate_text(
        self,
        profile: AgentProfile,
        system_prompt: str,
        prompt: str,
    ) -> str:
        """One-shot completion without tools."""


class AgentBackend(Backend):
    """Resolves the active profile and hands the prompt to the task's runner."""

    @property
    def kind(self) -> BackendKind:
        return BackendKind.AGENT

    async def run(
        self,
        task: Task,
        prompt: str,
        prompt_context: PromptContext,
        mode: Mode,
    ) -> list[ResponseCompleted]:
        profile = task.resolve_agent_profile()
        if profile is None:
            raise ConfigurationError("No active agent profile found")
        return await task.run_prompt_in_agent(profile, prompt, prompt_context)
