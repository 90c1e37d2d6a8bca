"""Execution backends a task dispatches prompts to."""
from .base import BACKEND_BY_MODE, Backend, BackendKind
from .aider import AiderBackend
from .agent import AgentBackend, AgentRunner, AgentRunResult
from .claude_agent import ClaudeAgentRunner

__all__ = [
    "BACKEND_BY_MODE",
    "Backend",
    "BackendKind",
    "AiderBackend",
    "AgentBackend",
    "AgentRunner",
    "AgentRunResult",
    "ClaudeAgentRunner",
]
