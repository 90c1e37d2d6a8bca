"""Claude Agent SDK runner.

Wraps claude_agent_sdk.query() for full agent sessions and for the
tool-less one-shot calls used to write commit messages.
"""
from __future__ import annotations

import asyncio
import logging

from ..errors import AgentRunError
from ..models import (
    AgentProfile,
    ContextFile,
    ContextMessage,
    MessageRole,
    PromptContext,
)
from .agent import AgentRunner, AgentRunResult

logger = logging.getLogger(__name__)


def _message_text(message) -> str:
    """Text blocks of an assistant message, joined."""
    parts = []
    for block in getattr(message, "content", None) or []:
        text = getattr(block, "text", None)
        if isinstance(text, str) and text:
            parts.append(text)
    return "\n".join(parts)


def _history_preamble(
    messages: list[ContextMessage] | None,
    files: list[ContextFile] | None,
) -> str:
    lines = []
    if files:
        lines.append("Files in context:")
        lines += [f"- {f.path}{' (read-only)' if f.read_only else ''}" for f in files]
        lines.append("")
    if messages:
        lines.append("Conversation so far:")
        for m in messages:
            lines.append(f"[{m.role.value}] {m.content}")
        lines.append("")
    return "\n".join(lines)


class ClaudeAgentRunner(AgentRunner):
    """AgentRunner backed by the Claude Agent SDK."""

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
        try:
            from claude_agent_sdk import query, ClaudeAgentOptions
        except ImportError as exc:
            raise AgentRunError(profile.id, "claude_agent_sdk not installed") from exc

        options = ClaudeAgentOptions(
            system_prompt=system_prompt or profile.system_prompt or "",
            allowed_tools=list(profile.allowed_tools),
            permission_mode=profile.permission_mode,
            cwd=cwd,
            model=profile.model,
            max_turns=profile.max_turns,
        )
        preamble = _history_preamble(messages, files)
        full_prompt = f"{preamble}\n{prompt}" if preamble else prompt

        result = AgentRunResult()
        logger.info(
            "Agent run starting profile=%s model=%s cwd=%s",
            profile.id, profile.model, cwd,
        )
        try:
            async for message in query(prompt=full_prompt, options=options):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Agent run interrupted profile=%s", profile.id)
                    break
                if hasattr(message, "result"):
                    cost = getattr(message, "total_cost_usd", None)
                    if cost:
                        result.cost = float(cost)
                    if message.result and not result.messages:
                        result.messages.append(ContextMessage(
                            role=MessageRole.ASSISTANT,
                            content=message.result,
                            prompt_context=prompt_context,
                        ))
                    continue
                text = _message_text(message)
                if text:
                    result.messages.append(ContextMessage(
                        role=MessageRole.ASSISTANT,
                        content=text,
                        prompt_context=prompt_context,
                    ))
        except AgentRunError:
            raise
        except Exception as exc:
            logger.exception("Agent run failed profile=%s", profile.id)
            raise AgentRunError(profile.id, str(exc)) from exc

        logger.info(
            "Agent run finished profile=%s messages=%d cost=%.4f",
            profile.id, len(result.messages), result.cost,
        )
        return result

    async def generate_text(
        self,
        profile: AgentProfile,
        system_prompt: str,
        prompt: str,
    ) -> str:
        try:
            from claude_agent_sdk import query, ClaudeAgentOptions
        except ImportError as exc:
            raise AgentRunError(profile.id, "claude_agent_sdk not installed") from exc

        options = ClaudeAgentOptions(
            system_prompt=system_prompt,
            allowed_tools=[],
            permission_mode="plan",
            model=profile.model,
        )
        result_text = ""
        async for message in query(prompt=prompt, options=options):
            if hasattr(message, "result"):
                result_text = message.result or ""
        return result_text.strip()
