"""Worktree and agent lifecycle state machines."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Generic, TypeVar

from point_guard.core.errors import StateTransitionError
from point_guard.schemas.manifest import (
    AgentEntry,
    AgentStatus,
    WorktreeEntry,
    WorktreeStatus,
    now_iso,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)


# Valid worktree transitions. Anything not yet merged may be cleaned.
WORKTREE_TRANSITIONS: dict[WorktreeStatus, set[WorktreeStatus]] = {
    WorktreeStatus.ACTIVE: {WorktreeStatus.MERGING, WorktreeStatus.CLEANED},
    WorktreeStatus.MERGING: {
        WorktreeStatus.MERGED,
        WorktreeStatus.FAILED,
        WorktreeStatus.CLEANED,
    },
    WorktreeStatus.FAILED: {WorktreeStatus.CLEANED},
    WorktreeStatus.MERGED: set(),  # Terminal state
    WorktreeStatus.CLEANED: set(),  # Terminal state
}

_ENDINGS = {AgentStatus.KILLED, AgentStatus.LOST}

# Valid agent transitions. Terminal states are never left; a restart creates
# a new entry instead.
AGENT_TRANSITIONS: dict[AgentStatus, set[AgentStatus]] = {
    AgentStatus.SPAWNING: {AgentStatus.RUNNING, AgentStatus.FAILED} | _ENDINGS,
    AgentStatus.RUNNING: {
        AgentStatus.WAITING,
        AgentStatus.COMPLETED,
        AgentStatus.FAILED,
    }
    | _ENDINGS,
    AgentStatus.WAITING: {
        AgentStatus.RUNNING,
        AgentStatus.COMPLETED,
        AgentStatus.FAILED,
    }
    | _ENDINGS,
    AgentStatus.COMPLETED: set(),
    AgentStatus.FAILED: set(),
    AgentStatus.KILLED: set(),
    AgentStatus.LOST: set(),
}


class StateMachine(Generic[S]):
    """Validates transitions over an edge table."""

    def __init__(self, kind: str, transitions: dict[S, set[S]]):
        """Initialize the state machine.

        Args:
            kind: Entity name used in error messages
            transitions: Map of state to the states reachable from it
        """
        self.kind = kind
        self.transitions = transitions

    def can_transition(self, current: S, new: S) -> bool:
        return new in self.transitions.get(current, set())

    def check(self, entity_id: str, current: S, new: S) -> None:
        """Validate a transition.

        Raises:
            StateTransitionError: If the transition is not an allowed edge
        """
        if not self.can_transition(current, new):
            raise StateTransitionError(
                f"Invalid {self.kind} transition: {current.value} -> {new.value} "
                f"for {entity_id}"
            )

    def is_terminal(self, state: S) -> bool:
        return not self.transitions.get(state)


WORKTREE_STATES: StateMachine[WorktreeStatus] = StateMachine("worktree", WORKTREE_TRANSITIONS)
AGENT_STATES: StateMachine[AgentStatus] = StateMachine("agent", AGENT_TRANSITIONS)


def transition_worktree(wt: WorktreeEntry, new_status: WorktreeStatus) -> WorktreeEntry:
    """Move a worktree to a new status.

    Setting the status it already has is a no-op.

    Raises:
        StateTransitionError: If the transition is invalid
    """
    if wt.status == new_status:
        return wt
    WORKTREE_STATES.check(wt.id, wt.status, new_status)
    logger.debug("worktree %s: %s -> %s", wt.id, wt.status.value, new_status.value)
    wt.status = new_status
    if new_status == WorktreeStatus.MERGED and not wt.merged_at:
        wt.merged_at = now_iso()
    return wt


def transition_agent(
    agent: AgentEntry,
    new_status: AgentStatus,
    exit_code: int | None = None,
    error: str | None = None,
) -> AgentEntry:
    """Move an agent to a new status, stamping completion details.

    Raises:
        StateTransitionError: If the transition is invalid
    """
    if agent.status == new_status:
        return agent
    AGENT_STATES.check(agent.id, agent.status, new_status)
    logger.debug("agent %s: %s -> %s", agent.id, agent.status.value, new_status.value)
    agent.status = new_status
    if exit_code is not None:
        agent.exit_code = exit_code
    if error is not None:
        agent.error = error
    if new_status.is_terminal and not agent.completed_at:
        agent.completed_at = now_iso()
    return agent
