"""Layout of the persisted state under ``<project>/.ppg``."""

from __future__ import annotations

from pathlib import Path

PPG_DIR = ".ppg"


def ppg_dir(project_root: Path) -> Path:
    return Path(project_root) / PPG_DIR


def manifest_path(project_root: Path) -> Path:
    return ppg_dir(project_root) / "manifest.json"


def config_path(project_root: Path) -> Path:
    return ppg_dir(project_root) / "config.yaml"


def results_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "results"


def result_file(project_root: Path, agent_id: str) -> Path:
    return results_dir(project_root) / f"{agent_id}.md"


def templates_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "templates"


def prompts_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "prompts"


def swarms_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "swarms"


def global_ppg_dir() -> Path:
    """Per-user directory for templates, prompts and swarms shared across projects."""
    return Path.home() / PPG_DIR


def global_templates_dir() -> Path:
    return global_ppg_dir() / "templates"


def global_prompts_dir() -> Path:
    return global_ppg_dir() / "prompts"


def global_swarms_dir() -> Path:
    return global_ppg_dir() / "swarms"


def agent_prompts_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "agent-prompts"


def agent_prompt_file(project_root: Path, agent_id: str) -> Path:
    return agent_prompts_dir(project_root) / f"{agent_id}.md"


def exits_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "exits"


def exit_file(project_root: Path, agent_id: str) -> Path:
    """Sentinel the wrapped launch command writes the agent's exit code to."""
    return exits_dir(project_root) / agent_id


def logs_dir(project_root: Path) -> Path:
    return ppg_dir(project_root) / "logs"


def schedules_path(project_root: Path) -> Path:
    return ppg_dir(project_root) / "schedules.yaml"


def cron_pid_path(project_root: Path) -> Path:
    return ppg_dir(project_root) / "cron.pid"


def cron_log_path(project_root: Path) -> Path:
    return logs_dir(project_root) / "cron.log"


def all_state_dirs(project_root: Path) -> list[Path]:
    """Directories created by ``ppg init``."""
    return [
        ppg_dir(project_root),
        results_dir(project_root),
        logs_dir(project_root),
        templates_dir(project_root),
        prompts_dir(project_root),
        swarms_dir(project_root),
        agent_prompts_dir(project_root),
        exits_dir(project_root),
    ]
