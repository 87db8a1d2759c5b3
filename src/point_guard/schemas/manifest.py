"""Pydantic models for .ppg/manifest.json."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MANIFEST_VERSION = 1


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AgentStatus(str, Enum):
    """Agent lifecycle states."""

    SPAWNING = "spawning"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_AGENT_STATUSES


class WorktreeStatus(str, Enum):
    """Worktree lifecycle states."""

    ACTIVE = "active"
    MERGING = "merging"
    MERGED = "merged"
    FAILED = "failed"
    CLEANED = "cleaned"


TERMINAL_AGENT_STATUSES = frozenset(
    {AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.KILLED, AgentStatus.LOST}
)

# Values written by older releases. Accepted on read, never written.
LEGACY_AGENT_STATUS_ALIASES: dict[str, AgentStatus] = {
    "idle": AgentStatus.RUNNING,
    "exited": AgentStatus.COMPLETED,
    "gone": AgentStatus.LOST,
}


def normalize_agent_status(value: Any) -> Any:
    if isinstance(value, str) and value in LEGACY_AGENT_STATUS_ALIASES:
        return LEGACY_AGENT_STATUS_ALIASES[value]
    return value


class WireModel(BaseModel):
    """Base model serialised with camelCase field names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AgentEntry(WireModel):
    """One agent process running in a tmux pane."""

    id: str = Field(..., description="Agent identifier (ag-xxxxxxxx)")
    name: str = Field(..., description="Display name")
    agent_type: str = Field(..., description="Configured agent type; free-form")
    status: AgentStatus = Field(default=AgentStatus.SPAWNING)
    tmux_target: str = Field(..., description="session:window[.pane] reference")
    prompt: str = Field(default="", description="Prompt, truncated for storage")
    result_file: str = Field(default="", description="Path the agent writes results to")
    started_at: str = Field(default_factory=now_iso)
    completed_at: str | None = None
    exit_code: int | None = None
    error: str | None = None
    session_id: str | None = None
    restarted_from: str | None = Field(
        default=None, description="Id of the agent this one replaced"
    )

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return normalize_agent_status(value)

    def is_terminal(self) -> bool:
        return self.status.is_terminal


class WorktreeEntry(WireModel):
    """One isolated git checkout and the agents working in it."""

    id: str
    name: str
    path: str
    branch: str
    base_branch: str
    status: WorktreeStatus = Field(default=WorktreeStatus.ACTIVE)
    tmux_window: str = Field(default="")
    pr_url: str | None = None
    agents: dict[str, AgentEntry] = Field(default_factory=dict)
    created_at: str = Field(default_factory=now_iso)
    merged_at: str | None = None

    def running_agents(self) -> list[AgentEntry]:
        """Agents that are not yet in a terminal state."""
        return [a for a in self.agents.values() if not a.is_terminal()]


class Manifest(WireModel):
    """Root persisted aggregate for one project."""

    version: int = Field(default=MANIFEST_VERSION)
    project_root: str
    session_name: str
    agents: dict[str, AgentEntry] = Field(default_factory=dict)
    worktrees: dict[str, WorktreeEntry] = Field(default_factory=dict)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @model_validator(mode="after")
    def _agent_ids_unique(self) -> "Manifest":
        duplicates = find_duplicate_agent_ids(self)
        if duplicates:
            raise ValueError(f"duplicate agent ids: {', '.join(sorted(duplicates))}")
        return self

    def iter_agents(self) -> Iterator[tuple[WorktreeEntry | None, AgentEntry]]:
        """Yield every agent with its owning worktree (None for top-level)."""
        for agent in self.agents.values():
            yield None, agent
        for wt in self.worktrees.values():
            for agent in wt.agents.values():
                yield wt, agent

    def find_agent(self, agent_id: str) -> tuple[WorktreeEntry | None, AgentEntry] | None:
        """Locate an agent, checking top-level agents first."""
        if agent_id in self.agents:
            return None, self.agents[agent_id]
        for wt in self.worktrees.values():
            if agent_id in wt.agents:
                return wt, wt.agents[agent_id]
        return None

    def resolve_worktree(self, ref: str) -> WorktreeEntry | None:
        """Find a worktree by id, then by name or branch."""
        if ref in self.worktrees:
            return self.worktrees[ref]
        for wt in self.worktrees.values():
            if wt.name == ref or wt.branch == ref:
                return wt
        return None


def find_duplicate_agent_ids(manifest: Manifest) -> set[str]:
    """Agent ids appearing in more than one place in the manifest."""
    seen: set[str] = set()
    duplicates: set[str] = set()
    maps = [manifest.agents] + [wt.agents for wt in manifest.worktrees.values()]
    for agents in maps:
        for key, agent in agents.items():
            agent_key = agent.id or key
            if agent_key in seen:
                duplicates.add(agent_key)
            seen.add(agent_key)
    return duplicates
