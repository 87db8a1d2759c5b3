"""Swarm templates: a named set of prompts launched together."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from point_guard.core.agents import AgentSupervisor, SpawnResult, coerce_vars
from point_guard.core.errors import InvalidArgsError
from point_guard.core.templates import find_named, load_prompt, named_files, search_dirs
from point_guard.schemas.swarm import SwarmStrategy, SwarmTemplate
from point_guard.utils.ids import validate_safe_name, validate_worktree_name
from point_guard.utils.paths import global_swarms_dir, swarms_dir

logger = logging.getLogger(__name__)

SWARM_SUFFIXES = (".yaml", ".yml")


@dataclass
class SwarmResult:
    """Worktrees and agents created by one swarm run."""

    swarm: str
    strategy: SwarmStrategy
    spawns: list[SpawnResult] = field(default_factory=list)

    @property
    def worktree_ids(self) -> list[str]:
        ids: list[str] = []
        for spawn in self.spawns:
            if spawn.worktree is not None and spawn.worktree.id not in ids:
                ids.append(spawn.worktree.id)
        return ids

    @property
    def agent_ids(self) -> list[str]:
        return [a.id for spawn in self.spawns for a in spawn.agents]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": all(s.to_dict()["success"] for s in self.spawns),
            "swarm": self.swarm,
            "strategy": self.strategy.value,
            "worktrees": self.worktree_ids,
            "agents": [a for s in self.spawns for a in s.to_dict()["agents"]],
        }


@dataclass
class SwarmListing:
    """A loadable swarm and whether it came from the project or ~/.ppg."""

    template: SwarmTemplate
    source: str = "local"

    @property
    def name(self) -> str:
        return self.template.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.template.name,
            "description": self.template.description,
            "strategy": self.template.strategy.value,
            "agents": len(self.template.agents),
            "source": self.source,
        }


def _swarm_dirs(project_root: Path) -> list[tuple[Path, str]]:
    return search_dirs(swarms_dir(project_root), global_swarms_dir())


def swarm_file(project_root: Path, name: str) -> Path | None:
    """Project-local swarm file, else the one in ``~/.ppg/swarms``."""
    return find_named(_swarm_dirs(project_root), name, SWARM_SUFFIXES)


def load_swarm(project_root: Path, name: str) -> SwarmTemplate:
    """Load and validate ``<name>.yaml`` from ``.ppg/swarms`` or ``~/.ppg/swarms``.

    Raises:
        InvalidArgsError: If the file is missing or not a valid swarm
    """
    validate_safe_name(name, "swarm template")
    path = swarm_file(project_root, name)
    if path is None:
        raise InvalidArgsError(f"Swarm template not found: {name}")

    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidArgsError(f"Invalid swarm template {name}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidArgsError(f"Invalid swarm template: {name} (empty or malformed YAML)")
    try:
        return SwarmTemplate.model_validate(data)
    except ValidationError as e:
        raise InvalidArgsError(f"Invalid swarm template {name}: {e}") from e


def list_swarms(project_root: Path) -> list[SwarmListing]:
    """Every loadable swarm, local ones first; malformed files are skipped with a warning."""
    swarms = []
    for name, _, source in named_files(_swarm_dirs(project_root), SWARM_SUFFIXES):
        try:
            swarms.append(SwarmListing(load_swarm(project_root, name), source))
        except InvalidArgsError as e:
            logger.warning("Skipping swarm %s: %s", name, e.message)
    return swarms


def to_worktree_name(text: str) -> str:
    """Coerce a template or prompt name into a valid worktree name."""
    name = re.sub(r"[^A-Za-z0-9-]+", "-", text).strip("-")
    return name or "swarm"


def unique_name(base: str, taken: set[str]) -> str:
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def run_swarm(
    supervisor: AgentSupervisor,
    name: str,
    worktree: str | None = None,
    vars: Mapping[str, Any] | list[str] | None = None,
    name_override: str | None = None,
    base: str | None = None,
) -> SwarmResult:
    """Launch every agent of a swarm template.

    Args:
        supervisor: Agent supervisor for the project
        name: Swarm template name
        worktree: Existing worktree for a shared swarm to join
        vars: User variables; each swarm agent's own vars take precedence
        name_override: Worktree name (shared) or name prefix (isolated)
        base: Base branch for new worktrees

    Raises:
        InvalidArgsError: On an unknown swarm or prompt, before anything is created
    """
    project_root = supervisor.project_root
    swarm = load_swarm(project_root, name)
    user_vars = coerce_vars(vars)
    if name_override is not None:
        validate_worktree_name(name_override)
    if worktree and swarm.strategy == SwarmStrategy.ISOLATED:
        raise InvalidArgsError("Isolated swarms create their own worktrees; omit the worktree")

    # Load every prompt up front so a missing one aborts before any spawn.
    prompts = [load_prompt(project_root, agent.prompt) for agent in swarm.agents]
    for agent in swarm.agents:
        supervisor.config.resolve_agent(agent.agent)
    base_name = name_override or to_worktree_name(swarm.name)
    result = SwarmResult(swarm=swarm.name, strategy=swarm.strategy)
    logger.info("Running swarm %s (%s, %d agents)", swarm.name, swarm.strategy.value, len(prompts))

    if swarm.strategy == SwarmStrategy.SHARED:
        target = worktree
        for agent, text in zip(swarm.agents, prompts):
            spawn_args: dict[str, Any] = {
                "agent_type": agent.agent,
                "prompt": text,
                "vars": {**user_vars, **agent.vars},
            }
            if target:
                spawn = supervisor.spawn(worktree=target, **spawn_args)
            else:
                spawn = supervisor.spawn(name=base_name, base=base, **spawn_args)
                target = spawn.worktree.id
            result.spawns.append(spawn)
        return result

    taken = {wt.name for wt in supervisor.store.load().worktrees.values()}
    for agent, text in zip(swarm.agents, prompts):
        wt_name = unique_name(f"{base_name}-{to_worktree_name(agent.prompt)}", taken)
        taken.add(wt_name)
        spawn = supervisor.spawn(
            name=wt_name,
            base=base,
            agent_type=agent.agent,
            prompt=text,
            vars={**user_vars, **agent.vars},
        )
        result.spawns.append(spawn)
    return result
