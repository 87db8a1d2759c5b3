"""Integration tests for the agent supervisor.

Real git worktrees, fake tmux: commands are recorded, never executed, and
agent completion is simulated through exit files and dead panes.
"""

import itertools
import subprocess
import threading
from pathlib import Path

import pytest

from point_guard.core.agents import AgentSupervisor, build_agent_command, coerce_vars
from point_guard.core.errors import (
    AgentNotFoundError,
    AgentsFailedError,
    AgentsRunningError,
    InvalidArgsError,
    WaitTimeoutError,
)
from point_guard.core.manifest import ManifestStore
from point_guard.core.project import load_config
from point_guard.schemas.config import AgentConfig, Config
from point_guard.schemas.manifest import AgentStatus, WorktreeStatus
from point_guard.utils.paths import agent_prompt_file, exit_file


def finish(project: Path, agent_id: str, code: int = 0) -> None:
    path = exit_file(project, agent_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{code}\n")


def branches(project: Path) -> str:
    return subprocess.run(
        ["git", "branch", "--list"], cwd=project, capture_output=True, text=True, check=True
    ).stdout


class TestBuildAgentCommand:
    """Tests for the launch command wrapper."""

    def test_claude_command(self) -> None:
        command = build_agent_command(
            Config().agents["claude"], Path("/p/prompt.md"), Path("/p/exits/ag-1"), "sid-1"
        )

        assert command == (
            "unset CLAUDECODE; claude --dangerously-skip-permissions --session-id sid-1 "
            '"$(cat /p/prompt.md)"; echo $? > /p/exits/ag-1'
        )

    def test_prompt_flag_and_non_interactive(self) -> None:
        agent = AgentConfig(name="aider", command="aider", prompt_flag="--message", interactive=False)

        command = build_agent_command(agent, Path("/p/x.md"), Path("/p/exits/ag-2"), "sid")

        assert '--message "$(cat /p/x.md)"' in command
        assert "--session-id" not in command
        assert command.endswith("; exit")

    def test_prompt_file_flag_and_quoting(self) -> None:
        agent = AgentConfig(name="x", command="x-agent", prompt_file_flag="--file")

        command = build_agent_command(agent, Path("/my dir/p.md"), Path("/e"))

        assert "--file '/my dir/p.md'" in command
        assert "$(cat" not in command

    def test_coerce_vars(self) -> None:
        assert coerce_vars({"N": 3}) == {"N": "3"}
        assert coerce_vars(["A=b"]) == {"A": "b"}
        assert coerce_vars(None) == {}


class TestSpawn:
    """Tests for AgentSupervisor.spawn."""

    def test_spawn_in_new_worktree(
        self, project: Path, supervisor: AgentSupervisor, store: ManifestStore, fake_session
    ) -> None:
        result = supervisor.spawn(name="feature", prompt="Implement {{TASK_NAME}} on {{BRANCH}}")

        wt = result.worktree
        [agent] = result.agents
        assert wt.name == "feature"
        assert agent.status == AgentStatus.RUNNING
        assert agent.tmux_target == wt.tmux_window
        assert agent.result_file == str(project / ".ppg" / "results" / f"{agent.id}.md")
        assert agent.session_id

        prompt = agent_prompt_file(project, agent.id).read_text()
        assert prompt.startswith("Implement feature on ppg/feature")
        assert f"# Result: {agent.id}" in prompt
        assert agent.result_file in prompt

        [command] = fake_session.panes[agent.tmux_target].sent
        assert str(agent_prompt_file(project, agent.id)) in command
        assert str(exit_file(project, agent.id)) in command

        stored = store.load().worktrees[wt.id].agents[agent.id]
        assert stored.status == AgentStatus.RUNNING
        assert result.to_dict()["success"] is True

    def test_count_with_split_panes(self, supervisor: AgentSupervisor) -> None:
        result = supervisor.spawn(name="trio", prompt="go", count=3, split=True)

        window = result.worktree.tmux_window
        assert [a.tmux_target for a in result.agents] == [window, f"{window}.1", f"{window}.2"]
        assert len({a.id for a in result.agents}) == 3

    def test_count_with_windows(self, supervisor: AgentSupervisor) -> None:
        result = supervisor.spawn(name="pair", prompt="go", count=2)

        targets = [a.tmux_target for a in result.agents]
        assert targets[0] == result.worktree.tmux_window
        assert targets[1] != targets[0]
        assert "." not in targets[1]

    def test_spawn_from_template_with_vars(self, project: Path, supervisor: AgentSupervisor) -> None:
        result = supervisor.spawn(name="tmpl", template="default", vars={"PROMPT": "Fix the bug"})

        prompt = agent_prompt_file(project, result.agents[0].id).read_text()
        assert "# Task: tmpl" in prompt
        assert "Fix the bug" in prompt
        assert "Branch: ppg/tmpl" in prompt

    def test_spawn_from_prompt_file(self, project: Path, supervisor: AgentSupervisor, tmp_path: Path) -> None:
        prompt_path = tmp_path / "task.md"
        prompt_path.write_text("From a file for {{PROJECT_ROOT}}")

        result = supervisor.spawn(name="filed", prompt_file=prompt_path)

        prompt = agent_prompt_file(project, result.agents[0].id).read_text()
        assert prompt.startswith(f"From a file for {project}")

    def test_add_to_existing_worktree(self, supervisor: AgentSupervisor, store: ManifestStore) -> None:
        first = supervisor.spawn(name="shared", prompt="one")

        second = supervisor.spawn(worktree="shared", prompt="two")

        assert second.worktree.id == first.worktree.id
        assert second.agents[0].tmux_target != first.agents[0].tmux_target
        assert len(store.load().worktrees[first.worktree.id].agents) == 2

    def test_spawn_in_project_root(self, project: Path, supervisor: AgentSupervisor, store: ManifestStore, fake_session) -> None:
        result = supervisor.spawn(prompt="look around", in_root=True)

        assert result.worktree is None
        manifest = store.load()
        assert manifest.worktrees == {}
        assert list(manifest.agents) == [result.agents[0].id]
        assert fake_session.panes[result.agents[0].tmux_target].cwd == str(project)

    def test_concurrent_spawns_into_one_worktree(self, supervisor: AgentSupervisor, store: ManifestStore) -> None:
        wt = supervisor.spawn(name="crowd", prompt="first").worktree
        errors: list[BaseException] = []

        def spawn_one(n: int) -> None:
            try:
                supervisor.spawn(worktree=wt.id, prompt=f"agent {n}")
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=spawn_one, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.load().worktrees[wt.id].agents) == 6

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"prompt": "a", "template": "default"},
            {},
            {"prompt": "a", "count": 0},
            {"prompt": "a", "name": "bad_name"},
            {"prompt": "a", "agent_type": "nope"},
            {"template": "missing"},
        ],
    )
    def test_invalid_arguments_create_nothing(
        self, project: Path, supervisor: AgentSupervisor, store: ManifestStore, fake_session, kwargs
    ) -> None:
        with pytest.raises(InvalidArgsError):
            supervisor.spawn(**kwargs)

        assert store.load().worktrees == {}
        assert fake_session.panes == {}
        assert branches(project).strip() == "* main"

    def test_worktree_and_root_are_exclusive(self, supervisor: AgentSupervisor) -> None:
        wt = supervisor.spawn(name="x", prompt="a").worktree

        with pytest.raises(InvalidArgsError):
            supervisor.spawn(worktree=wt.id, prompt="b", in_root=True)

    def test_send_failure_marks_agent_failed(
        self, supervisor: AgentSupervisor, store: ManifestStore, fake_session
    ) -> None:
        fake_session.fail_send = True

        result = supervisor.spawn(name="broken", prompt="a")

        agent = result.agents[0]
        assert agent.status == AgentStatus.FAILED
        assert "launch failed" in agent.error
        assert result.to_dict()["success"] is False
        assert store.load().worktrees[result.worktree.id].status == WorktreeStatus.ACTIVE


class TestObservation:
    """Tests for status, logs and send."""

    def test_status_reflects_exit_file(self, project: Path, supervisor: AgentSupervisor) -> None:
        result = supervisor.spawn(name="obs", prompt="a")
        agent_id = result.agents[0].id
        finish(project, agent_id, 0)

        snapshot = supervisor.status()

        wire = snapshot["worktrees"][result.worktree.id]["agents"][agent_id]
        assert wire["status"] == "completed"
        assert wire["exitCode"] == 0
        assert snapshot["session"] == "ppg-test-repo"

    def test_status_for_one_worktree(self, supervisor: AgentSupervisor) -> None:
        a = supervisor.spawn(name="one", prompt="a").worktree
        supervisor.spawn(name="two", prompt="b")

        snapshot = supervisor.status("one")

        assert list(snapshot["worktrees"]) == [a.id]

    def test_dead_pane_with_error_fails(self, supervisor: AgentSupervisor, fake_session) -> None:
        agent = supervisor.spawn(name="crash", prompt="a").agents[0]
        fake_session.finish(agent.tmux_target, status=137)

        snapshot = supervisor.status()

        wire = next(iter(snapshot["worktrees"].values()))["agents"][agent.id]
        assert wire["status"] == "failed"
        assert wire["exitCode"] == 137

    def test_logs_and_send(self, supervisor: AgentSupervisor, fake_session) -> None:
        agent = supervisor.spawn(name="chat", prompt="a").agents[0]
        fake_session.panes[agent.tmux_target].output = ["line one", "line two"]

        assert supervisor.logs(agent.id) == "line one\nline two\n"
        assert supervisor.logs(agent.id, lines=1) == "line two\n"

        supervisor.send(agent.id, "please continue")
        assert fake_session.panes[agent.tmux_target].sent[-1] == "please continue"

    def test_unknown_agent(self, supervisor: AgentSupervisor) -> None:
        with pytest.raises(AgentNotFoundError):
            supervisor.logs("ag-nothere")


class TestKill:
    """Tests for AgentSupervisor.kill."""

    def test_kill_agent_keeps_worktree(
        self, supervisor: AgentSupervisor, store: ManifestStore, fake_session, sleeps
    ) -> None:
        result = supervisor.spawn(name="stop", prompt="a")
        agent = result.agents[0]

        killed = supervisor.kill(agent=agent.id)

        assert killed.killed == [agent.id]
        assert fake_session.interrupted == [agent.tmux_target]
        assert sleeps == [0.5]
        wt = store.load().worktrees[result.worktree.id]
        assert wt.agents[agent.id].status == AgentStatus.KILLED
        assert wt.status == WorktreeStatus.ACTIVE
        assert Path(wt.path).is_dir()

    def test_kill_finished_agent_is_noop(self, project: Path, supervisor: AgentSupervisor, store: ManifestStore) -> None:
        agent = supervisor.spawn(name="done", prompt="a").agents[0]
        finish(project, agent.id)

        assert supervisor.kill(agent=agent.id).killed == []
        assert store.load().find_agent(agent.id)[1].status == AgentStatus.COMPLETED

    def test_kill_worktree_with_remove(self, project: Path, supervisor: AgentSupervisor, store: ManifestStore) -> None:
        result = supervisor.spawn(name="rm", prompt="a", count=2)

        killed = supervisor.kill(worktree="rm", remove=True)

        assert sorted(killed.killed) == sorted(a.id for a in result.agents)
        assert killed.removed
        wt = store.load().worktrees[result.worktree.id]
        assert wt.status == WorktreeStatus.CLEANED
        assert not Path(wt.path).exists()
        assert "ppg/rm" not in branches(project)

    def test_kill_all_with_delete(self, supervisor: AgentSupervisor, store: ManifestStore) -> None:
        supervisor.spawn(name="a", prompt="a")
        supervisor.spawn(prompt="root", in_root=True)

        result = supervisor.kill(all=True, delete=True)

        assert len(result.killed) == 2
        assert result.deleted
        manifest = store.load()
        assert manifest.worktrees == {}
        assert manifest.agents == {}

    def test_kill_all_skips_own_pane(
        self, supervisor: AgentSupervisor, store: ManifestStore, fake_session
    ) -> None:
        mine = supervisor.spawn(name="mine", prompt="a")
        theirs = supervisor.spawn(name="theirs", prompt="b")
        own_agent = mine.agents[0]
        fake_session.own = own_agent.tmux_target

        result = supervisor.kill(all=True, remove=True)

        assert result.skipped == [own_agent.id]
        assert result.killed == [theirs.agents[0].id]
        assert result.worktrees == [theirs.worktree.id]
        assert result.to_dict()["skipped"] == [own_agent.id]
        assert own_agent.tmux_target not in fake_session.killed
        manifest = store.load()
        assert manifest.find_agent(own_agent.id)[1].status == AgentStatus.RUNNING
        assert manifest.worktrees[mine.worktree.id].status == WorktreeStatus.ACTIVE
        assert Path(mine.worktree.path).is_dir()

    def test_requires_exactly_one_selector(self, supervisor: AgentSupervisor) -> None:
        with pytest.raises(InvalidArgsError):
            supervisor.kill()
        with pytest.raises(InvalidArgsError):
            supervisor.kill(agent="ag-x", all=True)


class TestRestart:
    """Tests for AgentSupervisor.restart."""

    def test_restart_running_agent_refused(self, supervisor: AgentSupervisor) -> None:
        agent = supervisor.spawn(name="busy", prompt="a").agents[0]

        with pytest.raises(AgentsRunningError):
            supervisor.restart(agent.id)

    def test_restart_reuses_prompt(
        self, project: Path, supervisor: AgentSupervisor, store: ManifestStore, fake_session
    ) -> None:
        spawned = supervisor.spawn(name="again", prompt="Do the thing")
        old = spawned.agents[0]
        finish(project, old.id, 1)

        result = supervisor.restart(old.id)

        new = result.agent
        assert result.old_agent_id == old.id
        assert new.id != old.id
        assert new.restarted_from == old.id
        assert new.status == AgentStatus.RUNNING
        assert old.tmux_target in fake_session.killed

        prompt = agent_prompt_file(project, new.id).read_text()
        assert prompt.startswith("Do the thing")
        assert f"# Result: {new.id}" in prompt
        assert old.id not in prompt
        assert prompt.count("# Result:") == 1

        agents = store.load().worktrees[spawned.worktree.id].agents
        assert agents[old.id].status == AgentStatus.FAILED
        assert set(agents) == {old.id, new.id}

    def test_restart_with_new_prompt(self, project: Path, supervisor: AgentSupervisor) -> None:
        old = supervisor.spawn(name="fresh", prompt="first").agents[0]
        finish(project, old.id, 0)

        new = supervisor.restart(old.id, prompt="second attempt").agent

        assert agent_prompt_file(project, new.id).read_text().startswith("second attempt")


class TestWait:
    """Tests for AgentSupervisor.wait."""

    def make_supervisor(self, project: Path, store: ManifestStore, fake_session, sleeps) -> AgentSupervisor:
        clock = itertools.count(0, 10)
        return AgentSupervisor(
            project,
            store,
            fake_session,
            load_config(project),
            sleep=sleeps.append,
            clock=lambda: next(clock),
        )

    def test_wait_succeeds(self, project: Path, supervisor: AgentSupervisor) -> None:
        result = supervisor.spawn(name="w", prompt="a", count=2)
        for agent in result.agents:
            finish(project, agent.id, 0)

        waited = supervisor.wait(worktree="w")

        assert {a.status for a in waited.agents} == {AgentStatus.COMPLETED}
        assert waited.to_dict()["success"] is True

    def test_wait_reports_failures(self, project: Path, supervisor: AgentSupervisor) -> None:
        agent = supervisor.spawn(name="w", prompt="a").agents[0]
        finish(project, agent.id, 2)

        with pytest.raises(AgentsFailedError) as exc_info:
            supervisor.wait(all=True)

        assert exc_info.value.agent_ids == [agent.id]
        assert exc_info.value.exit_code == 1

    def test_wait_times_out(self, project: Path, store: ManifestStore, fake_session, sleeps) -> None:
        waiter = self.make_supervisor(project, store, fake_session, sleeps)
        waiter.spawn(name="slow", prompt="a")

        with pytest.raises(WaitTimeoutError) as exc_info:
            waiter.wait(worktree="slow", timeout=15, interval=3)

        assert exc_info.value.code == "WAIT_TIMEOUT"
        assert exc_info.value.exit_code == 2
        assert exc_info.value.result.timed_out
        assert sleeps == [3]

    def test_wait_requires_target(self, supervisor: AgentSupervisor) -> None:
        with pytest.raises(InvalidArgsError):
            supervisor.wait()
