"""Agent liveness detection and pane teardown.

Status is derived from several signals, strongest first:

1. Exit sentinel written by the wrapped launch command (0 -> completed)
2. Result file written by the agent -> completed
3. tmux pane missing -> lost
4. tmux pane dead -> completed/failed from its exit status
5. Last output line matching the agent's waiting pattern -> waiting
6. Otherwise -> running

All tmux and filesystem checks run without the manifest lock; only the
resulting transitions are applied inside :meth:`ManifestStore.update`.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from point_guard.core.manifest import ManifestStore
from point_guard.core.state import AGENT_STATES, WORKTREE_STATES, transition_agent, transition_worktree
from point_guard.schemas.config import Config
from point_guard.schemas.manifest import (
    AgentEntry,
    AgentStatus,
    Manifest,
    WorktreeEntry,
    WorktreeStatus,
)
from point_guard.utils.paths import exit_file
from point_guard.utils.tmux import SessionController, would_affect

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 2.0
WAITING_CAPTURE_LINES = 20


@dataclass
class Observation:
    """Status derived for one agent from external signals."""

    status: AgentStatus
    exit_code: int | None = None
    error: str | None = None


def read_exit_code(project_root: Path, agent_id: str) -> int | None:
    """Exit code recorded by the launch wrapper, or None if not yet written."""
    path = exit_file(project_root, agent_id)
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(text)
    except ValueError:
        # Partially written; the next poll will see the full value.
        return None


def last_output_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.rstrip()
    return ""


def observe_agent(
    agent: AgentEntry,
    project_root: Path,
    session: SessionController,
    waiting_pattern: str | None = None,
) -> Observation:
    """Derive an agent's current status without touching the manifest."""
    code = read_exit_code(project_root, agent.id)
    if code is not None:
        if code == 0:
            return Observation(AgentStatus.COMPLETED, exit_code=0)
        return Observation(AgentStatus.FAILED, exit_code=code, error=f"exited with code {code}")

    if agent.result_file and Path(agent.result_file).exists():
        return Observation(AgentStatus.COMPLETED)

    info = session.pane_info(agent.tmux_target)
    if info is None:
        return Observation(AgentStatus.LOST, error="tmux pane no longer exists")

    if info.dead:
        if info.dead_status == 0:
            return Observation(AgentStatus.COMPLETED, exit_code=0)
        return Observation(
            AgentStatus.FAILED,
            exit_code=info.dead_status,
            error=f"pane exited with status {info.dead_status}",
        )

    if waiting_pattern:
        line = last_output_line(session.capture(agent.tmux_target, lines=WAITING_CAPTURE_LINES))
        try:
            if line and re.search(waiting_pattern, line):
                return Observation(AgentStatus.WAITING)
        except re.error as e:
            logger.warning("Invalid waiting pattern %r: %s", waiting_pattern, e)

    return Observation(AgentStatus.RUNNING)


def apply_observation(agent: AgentEntry, obs: Observation) -> bool:
    """Apply an observation if it is a legal move from the agent's current status.

    Returns:
        True if the agent changed
    """
    if agent.is_terminal() or obs.status == agent.status:
        return False

    target = obs.status
    # A freshly spawned agent reports waiting before it was ever seen running.
    if agent.status == AgentStatus.SPAWNING and target == AgentStatus.WAITING:
        transition_agent(agent, AgentStatus.RUNNING)

    if not AGENT_STATES.can_transition(agent.status, target):
        logger.debug("Ignoring %s -> %s for %s", agent.status.value, target.value, agent.id)
        return False
    transition_agent(agent, target, exit_code=obs.exit_code, error=obs.error)
    return True


def worktree_vanished(wt: WorktreeEntry) -> bool:
    return wt.status == WorktreeStatus.ACTIVE and not Path(wt.path).exists()


def refresh_manifest(
    store: ManifestStore,
    session: SessionController,
    config: Config,
) -> Manifest:
    """Re-derive the status of every live agent and persist any changes."""
    snapshot = store.load()
    project_root = Path(snapshot.project_root)

    observations: dict[str, Observation] = {}
    vanished: set[str] = set()

    for wt in snapshot.worktrees.values():
        if worktree_vanished(wt):
            vanished.add(wt.id)

    for wt, agent in snapshot.iter_agents():
        if agent.is_terminal() or (wt is not None and wt.id in vanished):
            continue
        agent_config = config.agents.get(agent.agent_type)
        pattern = agent_config.waiting_pattern if agent_config else None
        obs = observe_agent(agent, project_root, session, pattern)
        if obs.status != agent.status:
            observations[agent.id] = obs

    if not observations and not vanished:
        return snapshot

    def apply(manifest: Manifest) -> None:
        for agent_id, obs in observations.items():
            found = manifest.find_agent(agent_id)
            if found is not None:
                apply_observation(found[1], obs)
        for wt_id in vanished:
            wt = manifest.worktrees.get(wt_id)
            if wt is None or not worktree_vanished(wt):
                continue
            logger.info("Worktree %s directory is gone; marking cleaned", wt.id)
            mark_live_agents(wt.agents.values(), AgentStatus.LOST, "worktree directory removed")
            transition_worktree(wt, WorktreeStatus.CLEANED)

    return store.update(apply)


def mark_live_agents(
    agents: Iterable[AgentEntry],
    status: AgentStatus,
    error: str | None = None,
) -> list[str]:
    """Move every non-terminal agent to ``status``; returns the changed ids."""
    changed = []
    for agent in agents:
        if agent.is_terminal():
            continue
        transition_agent(agent, status, error=error)
        changed.append(agent.id)
    return changed


def stop_panes(
    session: SessionController,
    targets: Iterable[str],
    grace: float = KILL_GRACE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Interrupt panes, wait out the grace period once, then kill them.

    Targets that would take down the pane running this process are left
    alone.

    Returns:
        The skipped targets
    """
    targets, skipped = split_own_targets(session, dict.fromkeys(targets))
    live = [t for t in targets if session.is_alive(t)]
    for target in live:
        session.send_ctrl_c(target)
    if live and grace > 0:
        sleep(grace)
    for target in targets:
        session.kill(target)
    return skipped


def can_merge(wt: WorktreeEntry) -> bool:
    return WORKTREE_STATES.can_transition(wt.status, WorktreeStatus.MERGING)


def split_own_targets(session: SessionController, targets: Iterable[str]) -> tuple[list[str], list[str]]:
    """Partition targets into those safe to kill and those hosting this process."""
    own = session.own_target()
    safe: list[str] = []
    skipped: list[str] = []
    for target in targets:
        if would_affect(target, own):
            logger.warning("Skipping %s: it contains the current process", target)
            skipped.append(target)
        else:
            safe.append(target)
    return safe, skipped
