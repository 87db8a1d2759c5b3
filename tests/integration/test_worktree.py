"""Integration tests for worktree management.

These tests require git to be installed and available.
They create actual git repositories for testing.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from point_guard.core.errors import (
    AgentsRunningError,
    InvalidArgsError,
    MergeConflictError,
    StateTransitionError,
    UnmergedWorkError,
)
from point_guard.core.liveness import refresh_manifest
from point_guard.core.manifest import ManifestStore
from point_guard.schemas.config import Config
from point_guard.schemas.manifest import AgentEntry, AgentStatus, Manifest, WorktreeStatus
from point_guard.utils.paths import exit_file
from point_guard.worktree.manager import WorktreeManager


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


def commit(cwd: Path, name: str, content: str) -> None:
    (cwd / name).write_text(content)
    git(cwd, "add", name)
    git(cwd, "commit", "-m", f"Update {name}")


def attach_agent(store: ManifestStore, wt_id: str, target: str, agent_id: str = "ag-11111111") -> None:
    """Register an agent running in ``target`` without spawning anything."""

    def add(m: Manifest) -> None:
        m.worktrees[wt_id].agents[agent_id] = AgentEntry(
            id=agent_id,
            name="claude",
            agent_type="claude",
            status=AgentStatus.RUNNING,
            tmux_target=target,
        )

    store.update(add)


def finish_agent(project: Path, agent_id: str = "ag-11111111", code: int = 0) -> None:
    path = exit_file(project, agent_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(code))


class TestCreate:
    """Tests for WorktreeManager.create."""

    def test_create_worktree(self, project: Path, manager: WorktreeManager, store: ManifestStore) -> None:
        """A worktree gets a checkout, a branch, a window and a manifest entry."""
        wt = manager.create("feature-a")

        assert Path(wt.path).is_dir()
        assert (Path(wt.path) / "README.md").exists()
        assert Path(wt.path).parent == project / ".worktrees"
        assert wt.branch == "ppg/feature-a"
        assert wt.base_branch == "main"
        assert wt.status == WorktreeStatus.ACTIVE
        assert wt.tmux_window == "ppg-test-repo:1"
        assert git(project, "branch", "--list", "ppg/feature-a")

        assert store.load().worktrees[wt.id].name == "feature-a"

    def test_default_name_is_id(self, manager: WorktreeManager) -> None:
        wt = manager.create()

        assert wt.name == wt.id
        assert wt.branch == f"ppg/{wt.id}"

    def test_invalid_name_changes_nothing(
        self, project: Path, manager: WorktreeManager, store: ManifestStore, fake_session
    ) -> None:
        with pytest.raises(InvalidArgsError):
            manager.create("bad name")

        assert store.load().worktrees == {}
        assert git(project, "branch", "--list") == "* main"
        assert fake_session.panes == {}

    @pytest.mark.parametrize("name", ["../x", "a;b", "$(x)", "x\n", "-x"])
    def test_unsafe_names_rejected(
        self, project: Path, manager: WorktreeManager, store: ManifestStore, fake_session, name: str
    ) -> None:
        with pytest.raises(InvalidArgsError) as exc_info:
            manager.create(name)

        assert exc_info.value.code == "INVALID_ARGS"
        assert not (project / ".worktrees").exists() or not any((project / ".worktrees").iterdir())
        assert not (project.parent / "x").exists()
        assert git(project, "branch", "--list") == "* main"
        assert store.load().worktrees == {}
        assert fake_session.panes == {}

    def test_existing_branch_rejected(self, project: Path, manager: WorktreeManager) -> None:
        git(project, "branch", "ppg/taken")

        with pytest.raises(InvalidArgsError, match="already exists"):
            manager.create("taken")

    def test_env_files_copied(self, project: Path, manager: WorktreeManager) -> None:
        (project / ".env").write_text("SECRET=1\n")

        wt = manager.create("with-env")

        assert (Path(wt.path) / ".env").read_text() == "SECRET=1\n"

    def test_window_failure_rolls_back_checkout(
        self, project: Path, manager: WorktreeManager, fake_session, monkeypatch
    ) -> None:
        def broken(*args, **kwargs):
            raise RuntimeError("tmux exploded")

        monkeypatch.setattr(fake_session, "create_window", broken)

        with pytest.raises(RuntimeError):
            manager.create("doomed")

        assert git(project, "branch", "--list", "ppg/doomed") == ""
        assert not any((project / ".worktrees").iterdir())


class TestMerge:
    """Tests for WorktreeManager.merge."""

    def test_squash_merge_with_cleanup(self, project: Path, manager: WorktreeManager, store: ManifestStore) -> None:
        wt = manager.create("feature")
        commit(Path(wt.path), "feature.txt", "hello\n")

        result = manager.merge(wt.id)

        assert result.merged and result.cleaned
        assert (project / "feature.txt").read_text() == "hello\n"
        assert git(project, "log", "-1", "--format=%s") == "ppg: merge feature (ppg/feature)"
        assert not Path(wt.path).exists()
        assert git(project, "branch", "--list", "ppg/feature") == ""

        entry = store.load().worktrees[wt.id]
        assert entry.status == WorktreeStatus.MERGED
        assert entry.merged_at is not None

    def test_no_ff_merge_keeps_worktree(self, project: Path, manager: WorktreeManager) -> None:
        wt = manager.create("keep")
        commit(Path(wt.path), "keep.txt", "kept\n")

        result = manager.merge("keep", strategy="no-ff", cleanup=False)

        assert result.merged and not result.cleaned
        assert Path(wt.path).is_dir()
        assert git(project, "rev-list", "--count", "--merges", "HEAD") == "1"

    def test_dry_run_changes_nothing(self, project: Path, manager: WorktreeManager, store: ManifestStore) -> None:
        wt = manager.create("dry")
        commit(Path(wt.path), "dry.txt", "x\n")

        result = manager.merge(wt.id, dry_run=True)

        assert result.dry_run and not result.merged
        assert not (project / "dry.txt").exists()
        assert store.load().worktrees[wt.id].status == WorktreeStatus.ACTIVE

    def test_running_agents_block_merge(
        self, project: Path, manager: WorktreeManager, store: ManifestStore
    ) -> None:
        wt = manager.create("busy")
        commit(Path(wt.path), "busy.txt", "wip\n")
        attach_agent(store, wt.id, wt.tmux_window)

        with pytest.raises(AgentsRunningError) as exc_info:
            manager.merge(wt.id)
        assert exc_info.value.code == "AGENTS_RUNNING"
        assert store.load().worktrees[wt.id].status == WorktreeStatus.ACTIVE

        result = manager.merge(wt.id, force=True)
        assert result.merged
        agent = store.load().worktrees[wt.id].agents["ag-11111111"]
        assert agent.status == AgentStatus.KILLED

    def test_finished_agents_allow_merge(self, project: Path, manager: WorktreeManager, store: ManifestStore) -> None:
        wt = manager.create("done")
        attach_agent(store, wt.id, wt.tmux_window)
        commit(Path(wt.path), "done.txt", "ok\n")
        finish_agent(project)

        manager.merge(wt.id)

        agent = store.load().worktrees[wt.id].agents["ag-11111111"]
        assert agent.status == AgentStatus.COMPLETED
        assert agent.exit_code == 0

    def test_conflict_marks_failed(self, project: Path, manager: WorktreeManager, store: ManifestStore) -> None:
        wt = manager.create("clash")
        commit(Path(wt.path), "README.md", "# From the worktree\n")
        commit(project, "README.md", "# From main\n")

        with pytest.raises(MergeConflictError) as exc_info:
            manager.merge(wt.id)

        assert exc_info.value.code == "MERGE_FAILED"
        assert "README.md" in exc_info.value.conflicts
        assert store.load().worktrees[wt.id].status == WorktreeStatus.FAILED
        # The project root is left as it was before the merge.
        assert (project / "README.md").read_text() == "# From main\n"
        assert git(project, "diff", "--cached", "--name-only") == ""
        assert Path(wt.path).is_dir()

        with pytest.raises(StateTransitionError):
            manager.merge(wt.id)


class TestDiff:
    def test_diff_against_base(self, manager: WorktreeManager) -> None:
        wt = manager.create("diffed")
        commit(Path(wt.path), "new.txt", "a\nb\n")

        result = manager.diff(wt.id)
        assert "new.txt" in result.diff
        assert [(f.file, f.lines_added) for f in result.files] == [("new.txt", 2)]

        assert manager.diff(wt.id, name_only=True).diff.strip() == "new.txt"


class TestCleanup:
    """Tests for cleanup, clean and reset."""

    def test_cleanup_marks_cleaned_and_removes(
        self, project: Path, manager: WorktreeManager, store: ManifestStore, fake_session
    ) -> None:
        wt = manager.create("gone")
        attach_agent(store, wt.id, wt.tmux_window)

        manager.cleanup(wt.id)

        entry = store.load().worktrees[wt.id]
        assert entry.status == WorktreeStatus.CLEANED
        assert entry.agents["ag-11111111"].status == AgentStatus.KILLED
        assert not Path(wt.path).exists()
        assert git(project, "branch", "--list", "ppg/gone") == ""
        assert wt.tmux_window not in fake_session.panes

    def test_clean_is_idempotent(self, manager: WorktreeManager, store: ManifestStore) -> None:
        merged = manager.create("merged")
        commit(Path(merged.path), "m.txt", "m\n")
        manager.merge(merged.id)
        active = manager.create("active")

        assert manager.clean(dry_run=True) == [merged.id]
        assert merged.id in store.load().worktrees

        assert manager.clean() == [merged.id]
        assert manager.clean() == []
        assert list(store.load().worktrees) == [active.id]

    def test_clean_all_includes_failed(self, project: Path, manager: WorktreeManager) -> None:
        wt = manager.create("bad")
        commit(Path(wt.path), "README.md", "# a\n")
        commit(project, "README.md", "# b\n")
        with pytest.raises(MergeConflictError):
            manager.merge(wt.id)

        assert manager.clean() == []
        assert manager.clean(include_failed=True) == [wt.id]
        assert not Path(wt.path).exists()

    def test_vanished_directory_marks_cleaned(
        self, project: Path, manager: WorktreeManager, store: ManifestStore, fake_session
    ) -> None:
        wt = manager.create("vanish")
        attach_agent(store, wt.id, wt.tmux_window)
        shutil.rmtree(wt.path)

        manifest = refresh_manifest(store, fake_session, Config())

        entry = manifest.worktrees[wt.id]
        assert entry.status == WorktreeStatus.CLEANED
        assert entry.agents["ag-11111111"].status == AgentStatus.LOST

    def test_reset_refuses_unmerged_work(
        self, project: Path, manager: WorktreeManager, store: ManifestStore
    ) -> None:
        wt = manager.create("precious")
        attach_agent(store, wt.id, wt.tmux_window)
        finish_agent(project)

        with pytest.raises(UnmergedWorkError) as exc_info:
            manager.reset()
        assert exc_info.value.code == "UNMERGED_WORK"
        assert wt.id in store.load().worktrees

        result = manager.reset(force=True, prune=True)

        assert result.removed == [wt.id]
        assert result.warned == ["precious"]
        assert result.pruned
        assert store.load().worktrees == {}
        assert not Path(wt.path).exists()
        assert git(project, "branch", "--list", "ppg/precious") == ""

    def test_reset_with_pr_is_not_at_risk(self, project: Path, manager: WorktreeManager, store: ManifestStore) -> None:
        wt = manager.create("shipped")
        attach_agent(store, wt.id, wt.tmux_window)
        finish_agent(project)

        def set_pr(m: Manifest) -> None:
            m.worktrees[wt.id].pr_url = "https://github.com/o/r/pull/1"

        store.update(set_pr)

        assert manager.reset().removed == [wt.id]


class TestSelfProtection:
    """Teardown never kills the tmux pane running ppg itself."""

    def test_merge_cleanup_keeps_own_window(
        self, project: Path, manager: WorktreeManager, fake_session
    ) -> None:
        wt = manager.create("host")
        commit(Path(wt.path), "host.txt", "x\n")
        fake_session.own = f"{wt.tmux_window}.0"

        result = manager.merge(wt.id)

        assert result.merged and result.cleaned
        assert result.self_protected
        assert result.to_dict()["selfProtected"] is True
        assert wt.tmux_window not in fake_session.killed
        assert wt.tmux_window in fake_session.panes

    def test_merge_without_own_pane_reports_nothing(self, manager: WorktreeManager) -> None:
        wt = manager.create("plain")
        commit(Path(wt.path), "plain.txt", "x\n")

        result = manager.merge(wt.id)

        assert not result.self_protected
        assert "selfProtected" not in result.to_dict()

    def test_reset_keeps_hosting_worktree(
        self, project: Path, manager: WorktreeManager, store: ManifestStore, fake_session
    ) -> None:
        host = manager.create("host")
        other = manager.create("other")
        attach_agent(store, host.id, host.tmux_window)
        fake_session.own = f"{host.tmux_window}.0"

        result = manager.reset()

        assert result.skipped == [host.id]
        assert result.removed == [other.id]
        assert result.to_dict()["skipped"] == [host.id]
        assert Path(host.path).is_dir()
        assert not Path(other.path).exists()
        assert list(store.load().worktrees) == [host.id]
        assert host.tmux_window not in fake_session.killed
        assert result.killed == []
        assert result.still_alive == []
        assert store.load().worktrees[host.id].agents["ag-11111111"].status == AgentStatus.RUNNING
