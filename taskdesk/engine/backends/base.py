"""Abstract base for execution backends.

A task owns one backend per kind. The coordinator picks the backend
from the prompt mode through BACKEND_BY_MODE; adding a backend means
adding a kind, an implementation and its mode entries, nothing else.
"""
from __future__ import annotations

import abc
from enum import Enum
from typing import TYPE_CHECKING

from ..models import Mode, PromptContext, ResponseCompleted

if TYPE_CHECKING:
    from ..task import Task


class BackendKind(str, Enum):
    AIDER = "aider"
    AGENT = "agent"


BACKEND_BY_MODE: dict[Mode, BackendKind] = {
    Mode.CODE: BackendKind.AIDER,
    Mode.ASK: BackendKind.AIDER,
    Mode.ARCHITECT: BackendKind.AIDER,
    Mode.CONTEXT: BackendKind.AIDER,
    Mode.AGENT: BackendKind.AGENT,
}


class Backend(abc.ABC):
    """Runs one prompt for a task and returns its aggregated responses."""

    @property
    @abc.abstractmethod
    def kind(self) -> BackendKind:
        """Which BackendKind this implementation serves."""

    @abc.abstractmethod
    async def run(
        self,
        task: Task,
        prompt: str,
        prompt_context: PromptContext,
        mode: Mode,
    ) -> list[ResponseCompleted]:
        """Run *prompt* to completion."""
