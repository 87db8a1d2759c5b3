"""Shared fixtures: a throwaway git repository and an in-memory tmux."""

from __future__ import annotations

import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from point_guard.core.agents import AgentSupervisor
from point_guard.core.errors import SessionCommandError
from point_guard.core.manifest import ManifestStore
from point_guard.core.project import init_project, load_config
from point_guard.utils.tmux import PaneInfo
from point_guard.worktree.manager import WorktreeManager


def run_git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stdout, failing the test on error."""
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def commit_file(repo: Path, name: str, content: str, message: str | None = None) -> None:
    """Write a file and commit it in ``repo`` (a checkout or worktree)."""
    (repo / name).write_text(content)
    run_git(repo, "add", name)
    run_git(repo, "commit", "-m", message or f"Update {name}")


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at an empty directory so ~/.ppg never leaks into tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository with one commit on ``main``."""
    repo_path = tmp_path / "test-repo"
    repo_path.mkdir()

    subprocess.run(["git", "init"], cwd=repo_path, capture_output=True, check=True)
    run_git(repo_path, "config", "user.email", "test@test.com")
    run_git(repo_path, "config", "user.name", "Test User")
    run_git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repo\n")
    run_git(repo_path, "add", "README.md")
    run_git(repo_path, "commit", "-m", "Initial commit")
    run_git(repo_path, "branch", "-M", "main")

    return repo_path.resolve()


@dataclass
class FakePane:
    """A pane in the fake tmux server."""

    target: str
    cwd: str
    alive: bool = True
    dead_status: int | None = None
    output: list[str] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)


class FakeSessionController:
    """In-memory stand-in for :class:`TmuxController`.

    Windows are ``session:N`` (the window target doubles as its first pane)
    and split panes are ``session:N.M``. Every typed command is recorded but
    never executed.
    """

    def __init__(self) -> None:
        self.sessions: set[str] = set()
        self.panes: dict[str, FakePane] = {}
        self.interrupted: list[str] = []
        self.killed: list[str] = []
        self.fail_send = False
        self.own: str | None = None
        self.checks = 0
        self._windows: dict[str, int] = {}
        self._splits: dict[str, int] = {}
        self._lock = threading.Lock()

    def check(self) -> None:
        self.checks += 1

    def ensure_session(self, name: str) -> None:
        self.sessions.add(name)

    def create_window(self, session: str, label: str, cwd: str | Path) -> str:
        with self._lock:
            index = self._windows.get(session, 0) + 1
            self._windows[session] = index
            target = f"{session}:{index}"
            self.panes[target] = FakePane(target=target, cwd=str(cwd))
        return target

    def create_pane(self, window_ref: str, cwd: str | Path, horizontal: bool = True) -> str:
        with self._lock:
            index = self._splits.get(window_ref, 0) + 1
            self._splits[window_ref] = index
            target = f"{window_ref}.{index}"
            self.panes[target] = FakePane(target=target, cwd=str(cwd))
        return target

    def capture(self, target: str, lines: int | None = None) -> str:
        pane = self.panes.get(target)
        if pane is None:
            return ""
        output = pane.output if lines is None else pane.output[-lines:]
        return "\n".join(output) + "\n"

    def send_keys(
        self,
        target: str,
        text: str,
        append_enter: bool = True,
        literal: bool = True,
    ) -> None:
        pane = self.panes.get(target)
        if self.fail_send or pane is None:
            raise SessionCommandError("send-keys", f"can't find pane: {target}")
        pane.sent.append(text)

    def send_ctrl_c(self, target: str) -> None:
        self.interrupted.append(target)

    def is_alive(self, target: str) -> bool:
        pane = self.panes.get(target)
        return pane is not None and pane.alive

    def pane_info(self, target: str) -> PaneInfo | None:
        pane = self.panes.get(target)
        if pane is None:
            return None
        return PaneInfo(
            pane_id=f"%{target}",
            pid=4242,
            current_command="zsh" if pane.alive else "",
            dead=not pane.alive,
            dead_status=pane.dead_status,
        )

    def kill(self, target: str) -> None:
        self.killed.append(target)
        self.panes.pop(target, None)

    def kill_window(self, target: str) -> None:
        self.killed.append(target)
        for pane_target in list(self.panes):
            if pane_target == target or pane_target.startswith(f"{target}."):
                del self.panes[pane_target]

    def own_target(self) -> str | None:
        return self.own

    # Test helpers

    def finish(self, target: str, status: int = 0) -> None:
        """Mark a pane's process as exited (pane kept, like remain-on-exit)."""
        pane = self.panes[target]
        pane.alive = False
        pane.dead_status = status

    def vanish(self, target: str) -> None:
        self.panes.pop(target, None)


@pytest.fixture
def fake_session() -> FakeSessionController:
    return FakeSessionController()


@pytest.fixture
def project(git_repo: Path, fake_session: FakeSessionController) -> Path:
    """A git repository with ``ppg init`` already run."""
    init_project(git_repo, session=fake_session)
    return git_repo


@pytest.fixture
def store(project: Path) -> ManifestStore:
    return ManifestStore(project)


@pytest.fixture
def manager(project: Path, store: ManifestStore, fake_session: FakeSessionController) -> WorktreeManager:
    return WorktreeManager(project, store, fake_session, load_config(project))


@pytest.fixture
def sleeps() -> list[float]:
    """Records every sleep requested by the code under test."""
    return []


@pytest.fixture
def supervisor(
    project: Path,
    store: ManifestStore,
    fake_session: FakeSessionController,
    manager: WorktreeManager,
    sleeps: list[float],
) -> AgentSupervisor:
    return AgentSupervisor(
        project,
        store,
        fake_session,
        load_config(project),
        worktrees=manager,
        sleep=sleeps.append,
        kill_grace=0.5,
    )
