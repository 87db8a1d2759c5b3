"""Pydantic models for .ppg/config.yaml configuration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from point_guard.core.errors import InvalidArgsError

RESULT_INSTRUCTIONS = "\n".join(
    [
        "When you have completed the task:",
        "",
        "1. Stage and commit all your changes with a descriptive commit message",
        "2. Push your branch: git push -u origin {{BRANCH}}",
        "3. Create a pull request: gh pr create --head {{BRANCH}} --fill",
        "4. Write your results to {{RESULT_FILE}} in this format:",
        "",
        "# Result: {{AGENT_ID}}",
        "",
        "## PR",
        "<the PR URL from step 3>",
        "",
        "## Summary",
        "<what you accomplished>",
        "",
        "## Changes",
        "<list of files changed>",
        "",
        "## Notes",
        "<any important observations>",
    ]
)


class AgentVariant(str, Enum):
    """Agent tools with known display metadata."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"
    CUSTOM = "custom"


@dataclass(frozen=True)
class VariantInfo:
    """Display metadata for an agent variant."""

    label: str
    icon: str
    color: str


AGENT_VARIANTS: dict[AgentVariant, VariantInfo] = {
    AgentVariant.CLAUDE: VariantInfo(label="Claude", icon="sparkles", color="orange3"),
    AgentVariant.CODEX: VariantInfo(label="Codex", icon="terminal", color="green"),
    AgentVariant.OPENCODE: VariantInfo(label="OpenCode", icon="code", color="cyan"),
    AgentVariant.CUSTOM: VariantInfo(label="Custom", icon="gear", color="white"),
}


def resolve_variant(agent_type: str) -> AgentVariant:
    """Map a free-form agent type to a known variant.

    Unrecognised strings (including user-defined agents) map to CUSTOM.
    """
    try:
        return AgentVariant(agent_type.lower())
    except ValueError:
        return AgentVariant.CUSTOM


def variant_info(agent_type: str) -> VariantInfo:
    return AGENT_VARIANTS[resolve_variant(agent_type)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentConfig(CamelModel):
    """How to launch one type of agent."""

    name: str = Field(..., description="Agent type name")
    command: str = Field(..., description="Shell command that starts the agent")
    prompt_flag: str | None = Field(
        default=None, description="Flag that takes the prompt text inline"
    )
    prompt_file_flag: str | None = Field(
        default=None, description="Flag that takes a path to the prompt file"
    )
    interactive: bool = Field(default=True)
    result_instructions: str | None = Field(
        default=None, description="Appended to every prompt; rendered as a template"
    )
    waiting_pattern: str | None = Field(
        default=None,
        description="Regex matched against the pane's last output line to detect waiting",
    )


def default_agents() -> dict[str, AgentConfig]:
    return {
        "claude": AgentConfig(
            name="claude",
            command="claude --dangerously-skip-permissions",
            interactive=True,
            result_instructions=RESULT_INSTRUCTIONS,
        ),
        "codex": AgentConfig(
            name="codex",
            command="codex --full-auto",
            interactive=True,
            result_instructions=RESULT_INSTRUCTIONS,
        ),
        "opencode": AgentConfig(
            name="opencode",
            command="opencode",
            prompt_flag="--prompt",
            interactive=True,
            result_instructions=RESULT_INSTRUCTIONS,
        ),
    }


class Config(CamelModel):
    """Complete configuration for .ppg/config.yaml."""

    session_name: str = Field(default="ppg")
    default_agent: str = Field(default="claude")
    branch_prefix: str = Field(default="ppg")
    worktree_dir: str = Field(default=".worktrees")
    env_files: list[str] = Field(default_factory=lambda: [".env", ".env.local"])
    agents: dict[str, AgentConfig] = Field(default_factory=default_agents)

    @classmethod
    def load(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file, merged over the defaults."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise InvalidArgsError(f"Invalid config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidArgsError(f"Invalid config file: {path}")

        try:
            return cls.model_validate(merge_agent_overrides(data))
        except ValidationError as e:
            raise InvalidArgsError(f"Invalid config file {path}: {e}") from e

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(by_alias=True, exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )

    def resolve_agent(self, name: str | None = None) -> AgentConfig:
        """Get the launch configuration for an agent type.

        Raises:
            InvalidArgsError: If the agent type is not configured
        """
        agent_name = name or self.default_agent
        agent = self.agents.get(agent_name)
        if agent is None:
            available = ", ".join(sorted(self.agents))
            raise InvalidArgsError(
                f"Unknown agent type: {agent_name}. Available: {available}"
            )
        return agent


def merge_agent_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay user agent settings on the built-in agent definitions.

    A partial entry for a built-in agent (say, only ``command``) keeps the
    remaining built-in fields.
    """
    merged = {
        name: agent.model_dump(by_alias=True, exclude_none=True)
        for name, agent in default_agents().items()
    }
    overrides = data.get("agents") or {}
    if not isinstance(overrides, dict):
        raise InvalidArgsError("Invalid config: agents must be a mapping of agent names")
    for name, override in overrides.items():
        if not isinstance(override or {}, dict):
            raise InvalidArgsError(f"Invalid config: agent {name} must be a mapping")
        override = dict(override or {})
        override.setdefault("name", name)
        merged[name] = {**merged.get(name, {}), **override}
    return {**data, "agents": merged}
