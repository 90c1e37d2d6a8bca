"""Subprocess backend: prompts go out over connectors, responses stream back."""
from __future__ import annotations

from typing import TYPE_CHECKING

from ..models import Mode, PromptContext, ResponseCompleted
from .base import Backend, BackendKind

if TYPE_CHECKING:
    from ..task import Task


class AiderBackend(Backend):

    @property
    def kind(self) -> BackendKind:
        return BackendKind.AIDER

    async def run(
        self,
        task: Task,
        prompt: str,
        prompt_context: PromptContext,
        mode: Mode,
    ) -> list[ResponseCompleted]:
        return await task.run_prompt_in_aider(prompt, prompt_context, mode)
