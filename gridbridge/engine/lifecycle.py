"""Session status state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    RUNNING ──┬──> COMPLETED ──> RUNNING   (resume / hook restart)
              │
              └──> ERROR ──────> RUNNING   (hook restart)
"""
from __future__ import annotations

from .models import AgentStatus

VALID_TRANSITIONS: dict[AgentStatus, set[AgentStatus]] = {
    AgentStatus.RUNNING: {
        AgentStatus.COMPLETED,
        AgentStatus.ERROR,
    },
    AgentStatus.COMPLETED: {
        AgentStatus.RUNNING,
    },
    AgentStatus.ERROR: {
        AgentStatus.RUNNING,
    },
}


def validate_transition(current: AgentStatus, target: AgentStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
