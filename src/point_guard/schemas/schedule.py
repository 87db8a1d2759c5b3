"""Pydantic models for .ppg/schedules.yaml."""

from __future__ import annotations

from typing import Any

from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator

from point_guard.utils.ids import SAFE_NAME


class ScheduleEntry(BaseModel):
    """A recurring trigger for a swarm or a prompt template."""

    name: str
    swarm: str | None = None
    prompt: str | None = None
    cron: str
    vars: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        if not SAFE_NAME.fullmatch(value):
            raise ValueError(f'invalid name "{value}"')
        return value

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not value or not value.strip() or not croniter.is_valid(value):
            raise ValueError(f'invalid cron expression "{value}"')
        return value.strip()

    @field_validator("vars", mode="before")
    @classmethod
    def _stringify_vars(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "ScheduleEntry":
        if self.swarm and self.prompt:
            raise ValueError('specify either "swarm" or "prompt", not both')
        if not self.swarm and not self.prompt:
            raise ValueError('must specify either "swarm" or "prompt"')
        return self

    @property
    def target(self) -> str:
        return f"swarm: {self.swarm}" if self.swarm else f"prompt: {self.prompt}"


class SchedulesConfig(BaseModel):
    schedules: list[ScheduleEntry]
