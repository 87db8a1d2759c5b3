"""Pydantic models for swarm templates (.ppg/swarms/<name>.yaml)."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from point_guard.utils.ids import SAFE_NAME


class SwarmStrategy(str, Enum):
    """How swarm agents are laid out over worktrees."""

    SHARED = "shared"
    ISOLATED = "isolated"


class SwarmAgent(BaseModel):
    """One agent slot in a swarm."""

    prompt: str = Field(..., description="Prompt name in .ppg/prompts/")
    agent: str | None = Field(default=None, description="Agent type override")
    vars: dict[str, str] = Field(default_factory=dict)

    @field_validator("prompt")
    @classmethod
    def _prompt_name(cls, value: str) -> str:
        if not SAFE_NAME.fullmatch(value):
            raise ValueError(f'invalid prompt name "{value}"')
        return value

    @field_validator("vars", mode="before")
    @classmethod
    def _stringify_vars(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class SwarmTemplate(BaseModel):
    """A predefined set of agents."""

    name: str
    description: str = ""
    strategy: SwarmStrategy = SwarmStrategy.SHARED
    agents: list[SwarmAgent] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        if not SAFE_NAME.fullmatch(value):
            raise ValueError(f'invalid swarm name "{value}"')
        return value

    @field_validator("strategy", mode="before")
    @classmethod
    def _batch_alias(cls, value: Any) -> Any:
        # "batch" is the documented name for one-worktree-per-agent swarms.
        if value == "batch":
            return SwarmStrategy.ISOLATED
        return value
