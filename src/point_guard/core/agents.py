"""Agent supervision: spawn, observe, restart, kill, message and wait.

An agent is a command typed into a tmux pane's shell. The command is
wrapped so that its exit code lands in ``.ppg/exits/<agent-id>``, which is
the strongest completion signal :mod:`point_guard.core.liveness` reads.
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from point_guard.core.errors import (
    AgentNotFoundError,
    AgentsFailedError,
    AgentsRunningError,
    InvalidArgsError,
    PpgError,
    WaitTimeoutError,
    WorktreeNotFoundError,
)
from point_guard.core.liveness import (
    KILL_GRACE_SECONDS,
    mark_live_agents,
    refresh_manifest,
    split_own_targets,
    stop_panes,
)
from point_guard.core.manifest import ManifestStore
from point_guard.core.state import transition_agent
from point_guard.core.templates import load_template, parse_vars, render_template
from point_guard.schemas.config import AgentConfig, Config
from point_guard.schemas.manifest import (
    AgentEntry,
    AgentStatus,
    Manifest,
    WorktreeEntry,
    WorktreeStatus,
)
from point_guard.utils import git
from point_guard.utils.ids import agent_id as new_agent_id
from point_guard.utils.ids import session_id as new_session_id
from point_guard.utils.ids import validate_worktree_name
from point_guard.utils.paths import agent_prompt_file, exit_file, result_file
from point_guard.utils.tmux import SessionController
from point_guard.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)

PROMPT_STORE_LIMIT = 500
ROOT_WINDOW_LABEL = "root"


@dataclass
class SpawnResult:
    """Worktree (None for project-root agents) and the agents started in it."""

    worktree: WorktreeEntry | None
    agents: list[AgentEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        worktree = None
        if self.worktree is not None:
            worktree = {
                "id": self.worktree.id,
                "name": self.worktree.name,
                "branch": self.worktree.branch,
                "path": self.worktree.path,
                "tmuxWindow": self.worktree.tmux_window,
            }
        return {
            "success": all(a.status != AgentStatus.FAILED for a in self.agents),
            "worktree": worktree,
            "agents": [
                {
                    "id": a.id,
                    "status": a.status.value,
                    "tmuxTarget": a.tmux_target,
                    "sessionId": a.session_id,
                    **({"error": a.error} if a.error else {}),
                }
                for a in self.agents
            ],
        }


@dataclass
class RestartResult:
    old_agent_id: str
    agent: AgentEntry
    worktree_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.agent.status != AgentStatus.FAILED,
            "oldAgentId": self.old_agent_id,
            "newAgent": {
                "id": self.agent.id,
                "status": self.agent.status.value,
                "tmuxTarget": self.agent.tmux_target,
                "worktreeId": self.worktree_id,
            },
        }


@dataclass
class KillResult:
    killed: list[str] = field(default_factory=list)
    removed: bool = False
    deleted: bool = False
    worktrees: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "killed": self.killed,
            "removed": self.removed,
            "deleted": self.deleted,
            "worktrees": self.worktrees,
        }
        if self.skipped:
            data["skipped"] = self.skipped
        return data


@dataclass
class WaitedAgent:
    agent_id: str
    worktree_id: str | None
    status: AgentStatus
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.agent_id,
            "worktreeId": self.worktree_id,
            "status": self.status.value,
            "exitCode": self.exit_code,
        }


@dataclass
class WaitResult:
    """Final (or last observed) status of the agents being waited on."""

    agents: list[WaitedAgent] = field(default_factory=list)
    elapsed: float = 0.0
    timed_out: bool = False

    @property
    def failed(self) -> list[str]:
        return [
            a.agent_id
            for a in self.agents
            if a.status in (AgentStatus.FAILED, AgentStatus.LOST)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": not self.timed_out and not self.failed,
            "timedOut": self.timed_out,
            "elapsed": round(self.elapsed, 2),
            "agents": [a.to_dict() for a in self.agents],
        }


def build_agent_command(
    agent_config: AgentConfig,
    prompt_path: Path,
    exit_path: Path,
    session_id: str | None = None,
) -> str:
    """Shell command line that launches an agent and records its exit code."""
    parts = ["unset CLAUDECODE;", agent_config.command]
    if session_id and "claude" in agent_config.command:
        parts.append(f"--session-id {session_id}")

    quoted_prompt = shlex.quote(str(prompt_path))
    if agent_config.prompt_file_flag:
        parts.extend([agent_config.prompt_file_flag, quoted_prompt])
    else:
        if agent_config.prompt_flag:
            parts.append(agent_config.prompt_flag)
        parts.append(f'"$(cat {quoted_prompt})"')

    command = " ".join(parts) + f"; echo $? > {shlex.quote(str(exit_path))}"
    if not agent_config.interactive:
        command += "; exit"
    return command


def coerce_vars(values: Mapping[str, Any] | Iterable[str] | None) -> dict[str, str]:
    """Accept either a mapping or ``KEY=value`` strings.

    Raises:
        InvalidArgsError: On a malformed pair or an empty key
    """
    if values is None:
        return {}
    if isinstance(values, Mapping):
        result = {}
        for key, value in values.items():
            if not isinstance(key, str) or not key:
                raise InvalidArgsError(f"Invalid variable name: {key!r}")
            result[key] = str(value)
        return result
    return parse_vars(values)


class AgentSupervisor:
    """Launches agents into tmux panes and tracks them in the manifest."""

    def __init__(
        self,
        project_root: Path,
        store: ManifestStore,
        session: SessionController,
        config: Config | None = None,
        worktrees: WorktreeManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        kill_grace: float = KILL_GRACE_SECONDS,
    ):
        """Initialize the supervisor.

        Args:
            project_root: Root of the git repository
            store: Manifest store for the project
            session: tmux session controller
            config: Project configuration
            worktrees: Worktree manager (built from the other arguments if omitted)
            sleep: Sleep function used between polls and during kill grace
            clock: Monotonic clock used for wait timeouts
            kill_grace: Seconds between Ctrl-C and killing a pane
        """
        self.project_root = Path(project_root)
        self.store = store
        self.session = session
        self.config = config or Config()
        self.worktrees = worktrees or WorktreeManager(self.project_root, store, session, self.config)
        self.sleep = sleep
        self.clock = clock
        self.kill_grace = kill_grace

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def spawn(
        self,
        worktree: str | None = None,
        name: str | None = None,
        agent_type: str | None = None,
        prompt: str | None = None,
        prompt_file: str | Path | None = None,
        template: str | None = None,
        vars: Mapping[str, Any] | Iterable[str] | None = None,
        base: str | None = None,
        count: int = 1,
        split: bool = False,
        in_root: bool = False,
    ) -> SpawnResult:
        """Start ``count`` agents, in a new worktree unless one is given.

        Args:
            worktree: Existing worktree (id, name or branch) to add agents to
            name: Name for a new worktree
            agent_type: Configured agent type (defaults to ``defaultAgent``)
            prompt: Inline prompt text
            prompt_file: Path to a file holding the prompt
            template: Template name in ``.ppg/templates``
            vars: Template variables, as a mapping or ``KEY=value`` strings
            base: Base branch for a new worktree
            count: Number of agents sharing the prompt
            split: Put extra agents in split panes instead of new windows
            in_root: Run against the project root without a worktree

        Raises:
            InvalidArgsError: On conflicting or missing arguments; raised
                before any worktree, window or manifest entry is created
        """
        user_vars = coerce_vars(vars)
        sources = [s for s in (prompt, prompt_file, template) if s is not None]
        if len(sources) != 1:
            raise InvalidArgsError("Exactly one of prompt, prompt file or template is required")
        if count < 1:
            raise InvalidArgsError(f"count must be at least 1, got {count}")
        if worktree and in_root:
            raise InvalidArgsError("A worktree cannot be combined with running in the project root")
        if worktree and (name or base):
            raise InvalidArgsError("name and base apply only to new worktrees")
        if name is not None and not worktree:
            validate_worktree_name(name)

        agent_config = self.config.resolve_agent(agent_type)
        prompt_text, raw_prompt = self._resolve_prompt(prompt, prompt_file, template)

        self.session.check()

        if in_root:
            return self._spawn_in_root(agent_config, prompt_text, raw_prompt, user_vars, count, split, name)

        if worktree:
            wt = self.worktrees.get(worktree)
            if wt.status != WorktreeStatus.ACTIVE:
                raise InvalidArgsError(f"Worktree {wt.id} is {wt.status.value}; cannot add agents")
            reuse_window = False
        else:
            wt = self.worktrees.create(name=name, base_branch=base)
            reuse_window = True

        agents = []
        for index in range(count):
            if index == 0 and reuse_window:
                target = wt.tmux_window
            else:
                target = self._new_target(wt.tmux_window, wt.name, Path(wt.path), split, index)
            agents.append(
                self._launch(
                    target=target,
                    cwd=Path(wt.path),
                    worktree=wt,
                    agent_config=agent_config,
                    prompt_text=prompt_text,
                    context=self._context(wt.path, wt.branch, wt.name, raw_prompt, user_vars),
                )
            )
        return SpawnResult(worktree=self.store.load().worktrees.get(wt.id, wt), agents=agents)

    def _resolve_prompt(
        self,
        prompt: str | None,
        prompt_file: str | Path | None,
        template: str | None,
    ) -> tuple[str, str | None]:
        """Prompt text to render, plus the raw text exposed as ``{{PROMPT}}``."""
        if prompt is not None:
            return prompt, prompt
        if prompt_file is not None:
            path = Path(prompt_file)
            if not path.is_file():
                raise InvalidArgsError(f"Prompt file not found: {path}")
            text = path.read_text(encoding="utf-8")
            return text, text
        return load_template(self.project_root, template), None

    def _spawn_in_root(
        self,
        agent_config: AgentConfig,
        prompt_text: str,
        raw_prompt: str | None,
        user_vars: dict[str, str],
        count: int,
        split: bool,
        name: str | None,
    ) -> SpawnResult:
        manifest = self.store.load()
        label = name or ROOT_WINDOW_LABEL
        self.session.ensure_session(manifest.session_name)
        window = self.session.create_window(manifest.session_name, label, self.project_root)
        branch = git.get_current_branch(self.project_root) or "HEAD"

        agents = []
        for index in range(count):
            target = window if index == 0 else self._new_target(window, label, self.project_root, split, index)
            agents.append(
                self._launch(
                    target=target,
                    cwd=self.project_root,
                    worktree=None,
                    agent_config=agent_config,
                    prompt_text=prompt_text,
                    context=self._context(str(self.project_root), branch, label, raw_prompt, user_vars),
                )
            )
        return SpawnResult(worktree=None, agents=agents)

    def _new_target(self, window: str, label: str, cwd: Path, split: bool, index: int) -> str:
        if split:
            return self.session.create_pane(window, cwd, horizontal=index % 2 == 1)
        session_name = window.split(":", 1)[0]
        return self.session.create_window(session_name, label, cwd)

    def _context(
        self,
        path: str,
        branch: str,
        task_name: str,
        raw_prompt: str | None,
        user_vars: dict[str, str],
    ) -> dict[str, str | None]:
        return {
            "WORKTREE_PATH": path,
            "BRANCH": branch,
            "PROJECT_ROOT": str(self.project_root),
            "TASK_NAME": task_name,
            "PROMPT": raw_prompt,
            **user_vars,
        }

    def _launch(
        self,
        target: str,
        cwd: Path,
        worktree: WorktreeEntry | None,
        agent_config: AgentConfig,
        prompt_text: str,
        context: dict[str, str | None],
        restarted_from: str | None = None,
        append_instructions: bool = True,
    ) -> AgentEntry:
        """Write the prompt, register the agent and type its command into ``target``."""
        aid = new_agent_id()
        res_file = result_file(self.project_root, aid)
        context = {**context, "AGENT_ID": aid, "RESULT_FILE": str(res_file)}

        rendered = render_template(prompt_text, context)
        if append_instructions and agent_config.result_instructions:
            rendered += "\n\n" + render_template(agent_config.result_instructions, context)

        prompt_path = agent_prompt_file(self.project_root, aid)
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(rendered, encoding="utf-8")
        res_file.parent.mkdir(parents=True, exist_ok=True)
        exit_path = exit_file(self.project_root, aid)
        exit_path.parent.mkdir(parents=True, exist_ok=True)

        entry = AgentEntry(
            id=aid,
            name=agent_config.name,
            agent_type=agent_config.name,
            tmux_target=target,
            prompt=rendered[:PROMPT_STORE_LIMIT],
            result_file=str(res_file),
            session_id=new_session_id(),
            restarted_from=restarted_from,
        )
        wt_id = worktree.id if worktree is not None else None
        self._save_agent(wt_id, entry)

        command = build_agent_command(agent_config, prompt_path, exit_path, entry.session_id)
        logger.info("Launching %s (%s) in %s", aid, agent_config.name, target)
        try:
            self.session.send_keys(target, command)
        except PpgError as e:
            return self._settle(wt_id, aid, AgentStatus.FAILED, f"launch failed: {e.message}")

        if not self.session.is_alive(target):
            return self._settle(wt_id, aid, AgentStatus.FAILED, "pane not alive after launch")
        return self._settle(wt_id, aid, AgentStatus.RUNNING)

    def _save_agent(self, wt_id: str | None, entry: AgentEntry) -> None:
        def add(m: Manifest) -> None:
            if wt_id is None:
                m.agents[entry.id] = entry
                return
            wt = m.worktrees.get(wt_id)
            if wt is None:
                raise WorktreeNotFoundError(wt_id)
            wt.agents[entry.id] = entry

        self.store.update(add)

    def _settle(
        self,
        wt_id: str | None,
        aid: str,
        status: AgentStatus,
        error: str | None = None,
    ) -> AgentEntry:
        settled: list[AgentEntry] = []

        def apply(m: Manifest) -> None:
            found = m.find_agent(aid)
            if found is None:
                raise AgentNotFoundError(aid)
            agent = found[1]
            if agent.status == AgentStatus.SPAWNING:
                transition_agent(agent, status, error=error)
            settled.append(agent.model_copy())

        self.store.update(apply)
        if error:
            logger.warning("Agent %s failed to start: %s", aid, error)
        return settled[0]

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def refresh(self) -> Manifest:
        """Re-derive every live agent's status and persist the changes."""
        return refresh_manifest(self.store, self.session, self.config)

    def status(self, worktree: str | None = None) -> dict[str, Any]:
        """Refreshed snapshot in the ``{session, worktrees, agents}`` shape."""
        manifest = self.refresh()
        if worktree:
            wt = self.worktrees.get(worktree, manifest)
            worktrees = {wt.id: wt.to_wire()}
            agents: dict[str, Any] = {}
        else:
            worktrees = {wt_id: wt.to_wire() for wt_id, wt in manifest.worktrees.items()}
            agents = {aid: a.to_wire() for aid, a in manifest.agents.items()}
        return {"session": manifest.session_name, "worktrees": worktrees, "agents": agents}

    def logs(self, agent_id: str, lines: int | None = None) -> str:
        """Captured pane output of an agent."""
        manifest = self.store.load()
        found = manifest.find_agent(agent_id)
        if found is None:
            raise AgentNotFoundError(agent_id)
        return self.session.capture(found[1].tmux_target, lines=lines)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def restart(
        self,
        agent_id: str,
        prompt: str | None = None,
        agent_type: str | None = None,
    ) -> RestartResult:
        """Start a replacement for a finished agent in the same place.

        The old entry is kept; the new one records it in ``restartedFrom``.

        Raises:
            AgentNotFoundError: If the agent does not exist
            AgentsRunningError: If the agent has not reached a terminal state
        """
        manifest = self.refresh()
        found = manifest.find_agent(agent_id)
        if found is None:
            raise AgentNotFoundError(agent_id)
        wt, old = found
        if not old.is_terminal():
            raise AgentsRunningError([old.id], action="restart")
        if wt is not None and wt.status != WorktreeStatus.ACTIVE:
            raise InvalidArgsError(f"Worktree {wt.id} is {wt.status.value}; cannot restart agents in it")

        agent_config = self.config.resolve_agent(agent_type or old.agent_type)
        self.session.check()

        append_instructions = True
        if prompt is None:
            previous = agent_prompt_file(self.project_root, old.id)
            if previous.exists():
                # Already rendered; the result instructions are part of it.
                prompt = previous.read_text(encoding="utf-8").replace(old.id, "{{AGENT_ID}}")
                append_instructions = False
            else:
                prompt = old.prompt

        if wt is not None:
            cwd, branch, label = Path(wt.path), wt.branch, wt.name
        else:
            cwd = self.project_root
            branch = git.get_current_branch(self.project_root) or "HEAD"
            label = ROOT_WINDOW_LABEL

        for target in split_own_targets(self.session, [old.tmux_target])[0]:
            self.session.kill(target)
        self.session.ensure_session(manifest.session_name)
        target = self.session.create_window(manifest.session_name, label, cwd)

        entry = self._launch(
            target=target,
            cwd=cwd,
            worktree=wt,
            agent_config=agent_config,
            prompt_text=prompt,
            context=self._context(str(cwd), branch, label, prompt, {}),
            restarted_from=old.id,
            append_instructions=append_instructions,
        )
        return RestartResult(old_agent_id=old.id, agent=entry, worktree_id=wt.id if wt else None)

    def kill(
        self,
        agent: str | None = None,
        worktree: str | None = None,
        all: bool = False,
        remove: bool = False,
        delete: bool = False,
    ) -> KillResult:
        """Stop agents: Ctrl-C, a grace period, then kill the pane.

        Args:
            agent: Single agent id
            worktree: Every agent in this worktree
            all: Every agent in the project
            remove: Also tear down the affected worktree(s)
            delete: Also drop the affected entries from the manifest (implies remove)
        """
        if sum(bool(x) for x in (agent, worktree, all)) != 1:
            raise InvalidArgsError("Specify exactly one of an agent, a worktree or all")
        remove = remove or delete

        manifest = self.refresh()
        if agent:
            found = manifest.find_agent(agent)
            if found is None:
                raise AgentNotFoundError(agent)
            owner, entry = found
            selected = [entry]
            worktrees = [owner] if owner is not None else []
        elif worktree:
            wt = self.worktrees.get(worktree, manifest)
            selected = list(wt.agents.values())
            worktrees = [wt]
        else:
            selected = [a for _, a in manifest.iter_agents()]
            worktrees = list(manifest.worktrees.values())

        live = [a for a in selected if not a.is_terminal()]
        skipped = stop_panes(
            self.session, [a.tmux_target for a in live], grace=self.kill_grace, sleep=self.sleep
        )
        result = KillResult(skipped=[a.id for a in live if a.tmux_target in skipped])
        live_ids = {a.id for a in live} - set(result.skipped)

        def mark_killed(m: Manifest) -> None:
            for _, entry in m.iter_agents():
                if entry.id in live_ids:
                    result.killed.extend(mark_live_agents([entry], AgentStatus.KILLED))

        self.store.update(mark_killed)
        for agent_id in result.killed:
            logger.info("Killed agent %s", agent_id)

        if remove:
            manifest = self.store.load()
            for wt in worktrees:
                current = manifest.worktrees.get(wt.id)
                if current is None:
                    continue
                if agent and current.running_agents():
                    logger.warning("Not removing %s: other agents are still running", wt.id)
                    continue
                if any(agent_id in current.agents for agent_id in result.skipped):
                    logger.warning("Not removing %s: it hosts the current process", wt.id)
                    continue
                self.worktrees.cleanup(wt.id)
                result.worktrees.append(wt.id)
            result.removed = bool(result.worktrees)

        if delete:
            selected_ids = {a.id for a in selected} - set(result.skipped)

            def forget(m: Manifest) -> None:
                for wt_id in result.worktrees:
                    m.worktrees.pop(wt_id, None)
                for agent_id in selected_ids:
                    m.agents.pop(agent_id, None)
                    for wt in m.worktrees.values():
                        wt.agents.pop(agent_id, None)

            self.store.update(forget)
            result.deleted = True

        return result

    def send(
        self,
        agent_id: str,
        text: str,
        keys: bool = False,
        append_enter: bool = True,
    ) -> dict[str, Any]:
        """Type text (or tmux key names when ``keys``) into an agent's pane."""
        manifest = self.store.load()
        found = manifest.find_agent(agent_id)
        if found is None:
            raise AgentNotFoundError(agent_id)
        entry = found[1]
        self.session.send_keys(entry.tmux_target, text, append_enter=append_enter, literal=not keys)
        return {"success": True, "agentId": entry.id, "tmuxTarget": entry.tmux_target}

    def wait(
        self,
        worktree: str | None = None,
        all: bool = False,
        timeout: float | None = None,
        interval: float = 5.0,
    ) -> WaitResult:
        """Poll until every selected agent is terminal.

        Raises:
            WaitTimeoutError: If ``timeout`` elapses first (exit code 2)
            AgentsFailedError: If any agent ended failed or lost
        """
        if not worktree and not all:
            raise InvalidArgsError("Specify a worktree or use --all")

        start = self.clock()
        while True:
            manifest = self.refresh()
            result = WaitResult(agents=self._collect(manifest, worktree), elapsed=self.clock() - start)

            if all_terminal(result):
                failed = result.failed
                if failed:
                    raise AgentsFailedError(result, failed)
                return result

            if timeout is not None and result.elapsed >= timeout:
                result.timed_out = True
                raise WaitTimeoutError(result, timeout)

            self.sleep(interval)

    def _collect(self, manifest: Manifest, worktree: str | None) -> list[WaitedAgent]:
        if worktree:
            wt = self.worktrees.get(worktree, manifest)
            pairs: list[tuple[WorktreeEntry | None, AgentEntry]] = [(wt, a) for a in wt.agents.values()]
        else:
            pairs = list(manifest.iter_agents())
        return [
            WaitedAgent(
                agent_id=a.id,
                worktree_id=wt.id if wt is not None else None,
                status=a.status,
                exit_code=a.exit_code,
            )
            for wt, a in pairs
        ]


def all_terminal(result: WaitResult) -> bool:
    return all(a.status.is_terminal for a in result.agents)
