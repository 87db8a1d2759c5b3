"""Integration tests for swarm templates."""

from pathlib import Path

import pytest

from point_guard.core.agents import AgentSupervisor
from point_guard.core.errors import InvalidArgsError
from point_guard.core.manifest import ManifestStore
from point_guard.core.swarm import list_swarms, load_swarm, run_swarm, to_worktree_name, unique_name
from point_guard.schemas.swarm import SwarmStrategy
from point_guard.utils.paths import agent_prompt_file, prompts_dir, swarms_dir

ISOLATED_SWARM = """name: fanout
description: One worktree per reviewer
strategy: isolated
agents:
  - prompt: review-quality
  - prompt: review-security
    vars:
      CONTEXT: the auth module
"""


class TestLoadSwarm:
    """Tests for reading swarm files."""

    def test_bundled_swarm(self, project: Path) -> None:
        swarm = load_swarm(project, "code-review")

        assert swarm.strategy == SwarmStrategy.SHARED
        assert [a.prompt for a in swarm.agents] == [
            "review-quality",
            "review-security",
            "review-regression",
        ]

    def test_missing_swarm(self, project: Path) -> None:
        with pytest.raises(InvalidArgsError, match="not found"):
            load_swarm(project, "nope")

    def test_list_skips_invalid_files(self, project: Path) -> None:
        (swarms_dir(project) / "broken.yaml").write_text("name: broken\nagents: []\n")
        (swarms_dir(project) / "fanout.yml").write_text(ISOLATED_SWARM)

        names = [s.name for s in list_swarms(project)]

        assert names == ["code-review", "fanout"]

    def test_global_swarm_and_prompt_fallback(
        self, project: Path, supervisor: AgentSupervisor, isolated_home: Path
    ) -> None:
        global_swarms = isolated_home / ".ppg" / "swarms"
        global_prompts = isolated_home / ".ppg" / "prompts"
        global_swarms.mkdir(parents=True)
        global_prompts.mkdir(parents=True)
        (global_swarms / "solo.yaml").write_text("name: solo\nagents:\n  - prompt: shared-check\n")
        (global_swarms / "code-review.yaml").write_text("name: shadowed\nagents:\n  - prompt: shared-check\n")
        (global_prompts / "shared-check.md").write_text("# Shared check\nLook at {{CONTEXT}}\n")

        listed = [(s.name, s.source) for s in list_swarms(project)]
        assert listed == [("code-review", "local"), ("solo", "global")]
        assert load_swarm(project, "code-review").name == "code-review"

        result = run_swarm(supervisor, "solo", vars={"CONTEXT": "the parser"})

        [agent_id] = result.agent_ids
        assert "Look at the parser" in agent_prompt_file(project, agent_id).read_text()


class TestRunSwarm:
    """Tests for run_swarm."""

    def test_shared_swarm_uses_one_worktree(
        self, project: Path, supervisor: AgentSupervisor, store: ManifestStore
    ) -> None:
        result = run_swarm(supervisor, "code-review", vars={"CONTEXT": "the last commit"})

        assert len(result.worktree_ids) == 1
        assert len(result.agent_ids) == 3
        wt = store.load().worktrees[result.worktree_ids[0]]
        assert wt.name == "code-review"
        assert set(wt.agents) == set(result.agent_ids)

        prompt = agent_prompt_file(project, result.agent_ids[1]).read_text()
        assert prompt.startswith("# Security Review")
        assert "the last commit" in prompt

    def test_shared_swarm_joins_existing_worktree(self, supervisor: AgentSupervisor) -> None:
        wt = supervisor.spawn(name="target", prompt="build it").worktree

        result = run_swarm(supervisor, "code-review", worktree="target")

        assert result.worktree_ids == [wt.id]
        assert len(result.agent_ids) == 3

    def test_isolated_swarm_one_worktree_per_agent(
        self, project: Path, supervisor: AgentSupervisor, store: ManifestStore
    ) -> None:
        (swarms_dir(project) / "fanout.yaml").write_text(ISOLATED_SWARM)

        result = run_swarm(supervisor, "fanout", vars={"CONTEXT": "everything"})

        manifest = store.load()
        names = sorted(manifest.worktrees[wt_id].name for wt_id in result.worktree_ids)
        assert names == ["fanout-review-quality", "fanout-review-security"]

        # Swarm-level vars take precedence over user vars.
        security = next(
            wt for wt in manifest.worktrees.values() if wt.name == "fanout-review-security"
        )
        agent_id = next(iter(security.agents))
        assert "the auth module" in agent_prompt_file(project, agent_id).read_text()

    def test_isolated_swarm_names_are_unique(self, project: Path, supervisor: AgentSupervisor) -> None:
        (swarms_dir(project) / "fanout.yaml").write_text(ISOLATED_SWARM)

        run_swarm(supervisor, "fanout")
        second = run_swarm(supervisor, "fanout")

        names = sorted(
            supervisor.store.load().worktrees[wt_id].name for wt_id in second.worktree_ids
        )
        assert names == ["fanout-review-quality-2", "fanout-review-security-2"]

    def test_isolated_swarm_rejects_worktree(self, project: Path, supervisor: AgentSupervisor) -> None:
        (swarms_dir(project) / "fanout.yaml").write_text(ISOLATED_SWARM)

        with pytest.raises(InvalidArgsError):
            run_swarm(supervisor, "fanout", worktree="anything")

    def test_missing_prompt_spawns_nothing(
        self, project: Path, supervisor: AgentSupervisor, store: ManifestStore
    ) -> None:
        (prompts_dir(project) / "review-security.md").unlink()

        with pytest.raises(InvalidArgsError, match="review-security"):
            run_swarm(supervisor, "code-review")

        assert store.load().worktrees == {}


def test_worktree_name_helpers() -> None:
    assert to_worktree_name("code_review") == "code-review"
    assert to_worktree_name("__") == "swarm"
    assert unique_name("a", {"a", "a-2"}) == "a-3"
    assert unique_name("b", {"a"}) == "b"
