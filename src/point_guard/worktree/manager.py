"""Git worktree management for agent isolation.

Every worktree lives at ``<project>/<worktreeDir>/<id>`` on its own branch
``<branchPrefix>/<name>``. Teardown always runs in the same order: kill the
tmux panes and window, remove the checkout, delete the branch.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from point_guard.core.errors import (
    AgentsRunningError,
    GitCommandError,
    InvalidArgsError,
    MergeConflictError,
    StateTransitionError,
    UnmergedWorkError,
    WorktreeNotFoundError,
)
from point_guard.core.liveness import (
    can_merge,
    mark_live_agents,
    refresh_manifest,
    split_own_targets,
    stop_panes,
)
from point_guard.core.manifest import ManifestStore
from point_guard.core.state import transition_worktree
from point_guard.schemas.config import Config
from point_guard.schemas.manifest import (
    AgentStatus,
    Manifest,
    WorktreeEntry,
    WorktreeStatus,
)
from point_guard.utils import git
from point_guard.utils.git import FileDiffStats
from point_guard.utils.ids import validate_worktree_name, worktree_id
from point_guard.utils.paths import agent_prompt_file, exit_file
from point_guard.utils.tmux import SessionController, would_affect

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = ("squash", "no-ff")


@dataclass
class DiffResult:
    """Changes on a worktree branch relative to its base."""

    worktree_id: str
    branch: str
    base_branch: str
    diff: str
    files: list[FileDiffStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "worktreeId": self.worktree_id,
            "branch": self.branch,
            "baseBranch": self.base_branch,
            "diff": self.diff,
            "files": [
                {"file": f.file, "added": f.lines_added, "removed": f.lines_removed}
                for f in self.files
            ],
        }


@dataclass
class MergeResult:
    """Outcome of merging a worktree branch into its base."""

    worktree_id: str
    branch: str
    base_branch: str
    strategy: str
    dry_run: bool = False
    merged: bool = False
    cleaned: bool = False
    self_protected: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "worktreeId": self.worktree_id,
            "branch": self.branch,
            "baseBranch": self.base_branch,
            "strategy": self.strategy,
            "dryRun": self.dry_run,
            "merged": self.merged,
            "cleaned": self.cleaned,
        }
        if self.self_protected:
            data["selfProtected"] = True
        return data


@dataclass
class ResetResult:
    """What ``reset`` killed and removed."""

    killed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    still_alive: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    pruned: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "killed": self.killed,
            "removed": self.removed,
            "pruned": self.pruned,
        }
        if self.warned:
            data["warned"] = self.warned
        if self.still_alive:
            data["stillAlive"] = self.still_alive
        if self.skipped:
            data["skipped"] = self.skipped
        return data


def find_at_risk_worktrees(worktrees: list[WorktreeEntry]) -> list[WorktreeEntry]:
    """Worktrees with completed agents whose work is neither merged nor in a PR."""
    at_risk = []
    for wt in worktrees:
        if wt.status in (WorktreeStatus.MERGED, WorktreeStatus.CLEANED) or wt.pr_url:
            continue
        if any(a.status == AgentStatus.COMPLETED for a in wt.agents.values()):
            at_risk.append(wt)
    return at_risk


class WorktreeManager:
    """Manages git worktrees and their lifecycle in the manifest."""

    def __init__(
        self,
        project_root: Path,
        store: ManifestStore,
        session: SessionController,
        config: Config | None = None,
    ):
        """Initialize worktree manager.

        Args:
            project_root: Root of the git repository
            store: Manifest store for the project
            session: tmux session controller
            config: Project configuration (defaults to built-in defaults)
        """
        self.project_root = Path(project_root)
        self.store = store
        self.session = session
        self.config = config or Config()
        self.worktree_dir = self.project_root / self.config.worktree_dir

    def get(self, ref: str, manifest: Manifest | None = None) -> WorktreeEntry:
        """Resolve a worktree by id, name or branch.

        Raises:
            WorktreeNotFoundError: If nothing matches
        """
        manifest = manifest or self.store.load()
        wt = manifest.resolve_worktree(ref)
        if wt is None:
            raise WorktreeNotFoundError(ref)
        return wt

    def create(self, name: str | None = None, base_branch: str | None = None) -> WorktreeEntry:
        """Create a worktree on a new branch with its own tmux window.

        Args:
            name: Worktree name (letters, digits, hyphens); defaults to the id
            base_branch: Branch to start from (defaults to the current branch)

        Returns:
            The persisted WorktreeEntry in ``active`` status

        Raises:
            InvalidArgsError: On an invalid name, detached HEAD or taken branch
            GitCommandError: If ``git worktree add`` fails
        """
        if name is not None:
            validate_worktree_name(name)

        manifest = self.store.load()
        wt_id = worktree_id()
        name = name or wt_id
        branch = f"{self.config.branch_prefix}/{name}"

        base = base_branch or git.get_current_branch(self.project_root)
        if not base:
            raise InvalidArgsError("HEAD is detached; pass a base branch explicitly")
        if git.branch_exists(branch, cwd=self.project_root):
            raise InvalidArgsError(f"Branch already exists: {branch}")

        path = self.worktree_dir / wt_id
        self.worktree_dir.mkdir(parents=True, exist_ok=True)
        result = git.add_worktree(self.project_root, path, branch, base)
        if not result.ok:
            raise GitCommandError("worktree add", result.output)
        logger.info("Created worktree %s at %s on %s", wt_id, path, branch)

        self.setup_env(path)

        try:
            self.session.ensure_session(manifest.session_name)
            window = self.session.create_window(manifest.session_name, name, path)
        except Exception:
            self._remove_checkout(path, branch)
            raise

        entry = WorktreeEntry(
            id=wt_id,
            name=name,
            path=str(path),
            branch=branch,
            base_branch=base,
            tmux_window=window,
        )

        def register(m: Manifest) -> None:
            m.worktrees[wt_id] = entry

        self.store.update(register)
        return entry

    def setup_env(self, worktree_path: Path) -> list[str]:
        """Copy configured env files from the project root into a worktree."""
        copied = []
        for env_file in self.config.env_files:
            src = self.project_root / env_file
            if not src.is_file():
                continue
            dest = Path(worktree_path) / env_file
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
            copied.append(env_file)
        if copied:
            logger.debug("Copied env files into %s: %s", worktree_path, ", ".join(copied))
        return copied

    def diff(self, ref: str, stat: bool = False, name_only: bool = False) -> DiffResult:
        """Show what a worktree branch changed since it forked from its base."""
        wt = self.get(ref)
        range_spec = f"{wt.base_branch}...{wt.branch}"
        result = git.diff_range(range_spec, cwd=self.project_root, stat=stat, name_only=name_only)
        if not result.ok:
            raise GitCommandError("diff", result.output)
        return DiffResult(
            worktree_id=wt.id,
            branch=wt.branch,
            base_branch=wt.base_branch,
            diff=result.stdout,
            files=git.diff_numstat(range_spec, cwd=self.project_root),
        )

    def merge(
        self,
        ref: str,
        strategy: str = "squash",
        cleanup: bool = True,
        force: bool = False,
        dry_run: bool = False,
    ) -> MergeResult:
        """Merge a worktree branch into its base branch in the project root.

        Args:
            ref: Worktree id, name or branch
            strategy: ``squash`` or ``no-ff``
            cleanup: Tear down the worktree and delete its branch afterwards
            force: Merge even if agents are still running
            dry_run: Validate and report without changing anything

        Returns:
            MergeResult describing what happened

        Raises:
            AgentsRunningError: If agents are live and ``force`` is not set
            MergeConflictError: If git refuses the merge
        """
        if strategy not in MERGE_STRATEGIES:
            raise InvalidArgsError(f"Unknown merge strategy: {strategy}")

        manifest = refresh_manifest(self.store, self.session, self.config)
        wt = self.get(ref, manifest)

        if not can_merge(wt):
            raise StateTransitionError(
                f"Worktree {wt.id} is {wt.status.value} and cannot be merged"
            )

        running = wt.running_agents()
        if running and not force:
            raise AgentsRunningError([a.id for a in running], action="merge")

        result = MergeResult(
            worktree_id=wt.id,
            branch=wt.branch,
            base_branch=wt.base_branch,
            strategy=strategy,
            dry_run=dry_run,
        )
        if dry_run:
            return result

        self._set_status(wt.id, WorktreeStatus.MERGING)

        message = f"ppg: merge {wt.name} ({wt.branch})"
        current = git.get_current_branch(self.project_root)
        if current != wt.base_branch:
            checkout = git.checkout_branch(wt.base_branch, cwd=self.project_root)
            if not checkout.ok:
                self._set_status(wt.id, WorktreeStatus.FAILED)
                raise MergeConflictError(wt.branch, [], detail=checkout.output)

        if strategy == "squash":
            outcome = git.merge_squash(wt.branch, message, cwd=self.project_root)
        else:
            outcome = git.merge_no_ff(wt.branch, message, cwd=self.project_root)

        if not outcome.ok:
            conflicts = git.get_conflicted_files(self.project_root)
            git.abort_merge(self.project_root)
            self._set_status(wt.id, WorktreeStatus.FAILED)
            logger.warning("Merge of %s failed: %s", wt.branch, outcome.output)
            raise MergeConflictError(wt.branch, conflicts, detail=outcome.output)

        logger.info("Merged %s into %s (%s)", wt.branch, wt.base_branch, strategy)

        if cleanup:
            result.self_protected = bool(self._teardown(wt))
            result.cleaned = True

        def mark_merged(m: Manifest) -> None:
            entry = m.worktrees.get(wt.id)
            if entry is None:
                return
            if cleanup:
                mark_live_agents(entry.agents.values(), AgentStatus.KILLED, "worktree merged")
            transition_worktree(entry, WorktreeStatus.MERGED)

        self.store.update(mark_merged)
        result.merged = True
        return result

    def cleanup(self, ref: str) -> WorktreeEntry:
        """Tear down a worktree and mark it cleaned.

        The manifest is updated first so a crash mid-teardown still leaves the
        worktree recorded as cleaned. Merged worktrees keep their status.
        """
        wt = self.get(ref)

        def mark_cleaned(m: Manifest) -> None:
            entry = m.worktrees.get(wt.id)
            if entry is None:
                return
            mark_live_agents(entry.agents.values(), AgentStatus.KILLED, "worktree removed")
            if entry.status != WorktreeStatus.MERGED:
                transition_worktree(entry, WorktreeStatus.CLEANED)

        manifest = self.store.update(mark_cleaned)
        self._teardown(wt)
        return manifest.worktrees.get(wt.id, wt)

    def clean(self, include_failed: bool = False, dry_run: bool = False) -> list[str]:
        """Remove finished worktrees from disk and from the manifest.

        Args:
            include_failed: Also remove worktrees whose merge failed
            dry_run: Only report which worktrees would be removed

        Returns:
            Ids of the removed worktrees (empty when nothing is cleanable)
        """
        statuses = {WorktreeStatus.MERGED, WorktreeStatus.CLEANED}
        if include_failed:
            statuses.add(WorktreeStatus.FAILED)

        manifest = self.store.load()
        candidates = [wt for wt in manifest.worktrees.values() if wt.status in statuses]
        ids = [wt.id for wt in candidates]
        if dry_run or not candidates:
            return ids

        for wt in candidates:
            self._teardown(wt)

        def forget(m: Manifest) -> None:
            for wt_id in ids:
                m.worktrees.pop(wt_id, None)

        self.store.update(forget)
        logger.info("Cleaned %d worktree(s)", len(ids))
        return ids

    def reset(self, force: bool = False, prune: bool = False) -> ResetResult:
        """Kill every agent and remove every worktree.

        Raises:
            UnmergedWorkError: If completed work would be lost and ``force`` is not set
        """
        manifest = refresh_manifest(self.store, self.session, self.config)
        worktrees = list(manifest.worktrees.values())
        result = ResetResult()

        at_risk = find_at_risk_worktrees(worktrees)
        if at_risk and not force:
            raise UnmergedWorkError([f"{wt.name} ({wt.branch})" for wt in at_risk])
        result.warned = [wt.name for wt in at_risk]
        if at_risk:
            logger.warning("Resetting %d worktree(s) with unmerged work", len(at_risk))

        live = [agent for _, agent in manifest.iter_agents() if not agent.is_terminal()]
        spared: set[str] = set()
        if live:
            skipped = stop_panes(self.session, [a.tmux_target for a in live])
            spared = {a.id for a in live if a.tmux_target in skipped}
            result.still_alive = [
                a.id for a in live if a.id not in spared and self.session.is_alive(a.tmux_target)
            ]
            for agent_id in result.still_alive:
                logger.warning("Agent %s is still alive after kill", agent_id)

        def mark_killed(m: Manifest) -> None:
            for _, agent in m.iter_agents():
                if agent.is_terminal() or agent.id in spared or agent.id in result.still_alive:
                    continue
                mark_live_agents([agent], AgentStatus.KILLED, "reset")
                result.killed.append(agent.id)

        self.store.update(mark_killed)

        for wt in worktrees:
            if self._hosts_current_process(wt):
                logger.warning("Keeping worktree %s: it hosts the current process", wt.name)
                result.skipped.append(wt.id)
                continue
            if wt.status != WorktreeStatus.CLEANED or Path(wt.path).exists():
                self._teardown(wt)
            result.removed.append(wt.id)

        def forget(m: Manifest) -> None:
            for wt_id in result.removed:
                m.worktrees.pop(wt_id, None)
            for agent_id in [a for a in m.agents if a not in result.still_alive and a not in spared]:
                del m.agents[agent_id]

        self.store.update(forget)

        if prune:
            git.prune_worktrees(self.project_root)
            result.pruned = True
        return result

    def _set_status(self, wt_id: str, status: WorktreeStatus) -> None:
        def apply(m: Manifest) -> None:
            entry = m.worktrees.get(wt_id)
            if entry is not None:
                transition_worktree(entry, status)

        self.store.update(apply)

    def _tmux_targets(self, wt: WorktreeEntry) -> list[str]:
        targets = [a.tmux_target for a in wt.agents.values() if a.tmux_target]
        if wt.tmux_window:
            targets.append(wt.tmux_window)
        return list(dict.fromkeys(targets))

    def _hosts_current_process(self, wt: WorktreeEntry) -> bool:
        own = self.session.own_target()
        return any(would_affect(t, own) for t in self._tmux_targets(wt))

    def _teardown(self, wt: WorktreeEntry) -> list[str]:
        """Kill panes and window, remove the checkout, delete the branch.

        Returns:
            tmux targets left alone because they host the current process
        """
        safe, skipped = split_own_targets(self.session, self._tmux_targets(wt))
        for target in safe:
            if target == wt.tmux_window:
                self.session.kill_window(target)
            else:
                self.session.kill(target)

        for agent in wt.agents.values():
            agent_prompt_file(self.project_root, agent.id).unlink(missing_ok=True)
            exit_file(self.project_root, agent.id).unlink(missing_ok=True)

        self._remove_checkout(Path(wt.path), wt.branch)
        logger.info("Tore down worktree %s (%s)", wt.id, wt.name)
        return skipped

    def _remove_checkout(self, path: Path, branch: str) -> None:
        if path.exists():
            result = git.remove_worktree(self.project_root, path, force=True)
            if not result.ok:
                logger.warning("Could not remove worktree %s: %s", path, result.output)
        else:
            git.prune_worktrees(self.project_root)

        if git.branch_exists(branch, cwd=self.project_root):
            result = git.delete_branch(branch, cwd=self.project_root, force=True)
            if not result.ok:
                logger.warning("Could not delete branch %s: %s", branch, result.output)
