"""Pydantic schemas for the manifest, configuration, swarms and schedules."""

from point_guard.schemas.config import AgentConfig, Config
from point_guard.schemas.manifest import (
    AgentEntry,
    AgentStatus,
    Manifest,
    WorktreeEntry,
    WorktreeStatus,
)
from point_guard.schemas.schedule import ScheduleEntry
from point_guard.schemas.swarm import SwarmTemplate

__all__ = [
    "AgentConfig",
    "AgentEntry",
    "AgentStatus",
    "Config",
    "Manifest",
    "ScheduleEntry",
    "SwarmTemplate",
    "WorktreeEntry",
    "WorktreeStatus",
]
