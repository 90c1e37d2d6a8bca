"""Task lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    UNINITIALIZED ──> INITIALIZING ──> INITIALIZED ⇄ RUNNING
                          ^                 │
                          │                 └──> CLOSING ──> CLOSED
                          └──────────────────────────────────┘
                                        (restart)
"""
from __future__ import annotations

from .models import TaskState

VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.UNINITIALIZED: {
        TaskState.INITIALIZING,
        TaskState.CLOSING,
    },
    TaskState.INITIALIZING: {
        TaskState.INITIALIZED,
        TaskState.UNINITIALIZED,  # init failed
        TaskState.CLOSING,
    },
    TaskState.INITIALIZED: {
        TaskState.RUNNING,
        TaskState.CLOSING,
    },
    TaskState.RUNNING: {
        TaskState.INITIALIZED,
        TaskState.CLOSING,
    },
    TaskState.CLOSING: {
        TaskState.CLOSED,
    },
    TaskState.CLOSED: {
        TaskState.INITIALIZING,  # restart
    },
}


def validate_transition(current: TaskState, target: TaskState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
