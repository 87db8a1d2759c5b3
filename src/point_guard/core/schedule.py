"""Cron-style schedules and the daemon that fires them.

Schedules live in ``.ppg/schedules.yaml``::

    schedules:
      - name: nightly-review
        swarm: code-review
        cron: "0 2 * * *"
        vars:
          CONTEXT: the last day of commits
"""

from __future__ import annotations

import logging
import os
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import yaml
from croniter import croniter
from pydantic import ValidationError

from point_guard.core.agents import AgentSupervisor
from point_guard.core.errors import InvalidArgsError, PpgError
from point_guard.core.swarm import run_swarm, to_worktree_name
from point_guard.schemas.schedule import ScheduleEntry, SchedulesConfig
from point_guard.utils.paths import cron_log_path, cron_pid_path, schedules_path

logger = logging.getLogger(__name__)

TICK_SECONDS = 30.0
LOG_FORMAT = "[%(asctime)s] %(message)s"

Trigger = Callable[[ScheduleEntry], Any]


def load_schedules(project_root: Path) -> list[ScheduleEntry]:
    """Read and validate ``.ppg/schedules.yaml``.

    Raises:
        InvalidArgsError: If the file is missing or any entry is invalid
    """
    path = schedules_path(project_root)
    if not path.exists():
        raise InvalidArgsError("No schedules file found. Create .ppg/schedules.yaml first.")

    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidArgsError(f"Invalid schedules.yaml: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("schedules"), list):
        raise InvalidArgsError('Invalid schedules.yaml: missing "schedules" array')

    entries = []
    for index, raw in enumerate(data["schedules"]):
        try:
            entries.append(ScheduleEntry.model_validate(raw))
        except ValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise InvalidArgsError(f"schedules[{index}]: {messages}") from e
    return entries


def save_schedules(project_root: Path, entries: list[ScheduleEntry]) -> None:
    path = schedules_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    config = SchedulesConfig(schedules=entries)
    with open(path, "w") as f:
        yaml.dump(
            config.model_dump(exclude_none=True),
            f,
            default_flow_style=False,
            sort_keys=False,
        )


def add_schedule(project_root: Path, entry: ScheduleEntry) -> list[ScheduleEntry]:
    """Append a schedule, creating the file if needed.

    Raises:
        InvalidArgsError: If a schedule with the same name exists
    """
    entries = load_schedules(project_root) if schedules_path(project_root).exists() else []
    if any(e.name == entry.name for e in entries):
        raise InvalidArgsError(f'Schedule "{entry.name}" already exists')
    entries.append(entry)
    save_schedules(project_root, entries)
    return entries


def remove_schedule(project_root: Path, name: str) -> list[ScheduleEntry]:
    entries = load_schedules(project_root)
    remaining = [e for e in entries if e.name != name]
    if len(remaining) == len(entries):
        raise InvalidArgsError(f'Schedule "{name}" not found')
    save_schedules(project_root, remaining)
    return remaining


def schedule_trigger(supervisor: AgentSupervisor, clock: Callable[[], float] = time.time) -> Trigger:
    """Trigger that runs a swarm, or spawns from a template into a fresh worktree."""

    def fire(entry: ScheduleEntry) -> Any:
        if entry.swarm:
            return run_swarm(supervisor, entry.swarm, vars=entry.vars)
        name = f"cron-{to_worktree_name(entry.name)}-{int(clock())}"
        return supervisor.spawn(name=name, template=entry.prompt, vars=entry.vars)

    return fire


def next_run(cron: str, after: datetime | None = None) -> datetime:
    """Next time ``cron`` fires strictly after ``after`` (default: now, local time)."""
    return croniter(cron, after or datetime.now()).get_next(datetime)


@dataclass
class ScheduleState:
    entry: ScheduleEntry
    next_run: datetime
    last_triggered: datetime | None = None


class ScheduleDaemon:
    """Polls schedules and fires the due ones until stopped."""

    def __init__(
        self,
        project_root: Path,
        trigger: Trigger,
        interval: float = TICK_SECONDS,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the daemon.

        Args:
            project_root: Root of the project
            trigger: Called with each due schedule entry
            interval: Seconds between ticks
            now: Clock returning local datetimes
            sleep: Sleep function between ticks
        """
        self.project_root = Path(project_root)
        self.trigger = trigger
        self.interval = interval
        self.now = now
        self.sleep = sleep
        self.states: list[ScheduleState] = []
        self._stopping = False

    def load(self) -> list[ScheduleState]:
        start = self.now()
        self.states = [
            ScheduleState(entry=entry, next_run=next_run(entry.cron, start))
            for entry in load_schedules(self.project_root)
        ]
        logger.info("Loaded %d schedule(s)", len(self.states))
        for state in self.states:
            logger.info("  %s: next run at %s", state.entry.name, state.next_run.isoformat())
        return self.states

    def tick(self) -> list[str]:
        """Fire every due schedule once; returns the names fired."""
        fired = []
        for state in self.states:
            current = self.now()
            if current < state.next_run:
                continue
            logger.info("Triggering schedule: %s (%s)", state.entry.name, state.entry.target)
            try:
                self.trigger(state.entry)
                logger.info("  Success: %s", state.entry.name)
            except PpgError as e:
                logger.error("  Failed: %s [%s] %s", state.entry.name, e.code, e.message)
            except Exception:
                logger.exception("  Error triggering %s", state.entry.name)
            state.last_triggered = current
            state.next_run = next_run(state.entry.cron, current)
            logger.info("  %s: next run at %s", state.entry.name, state.next_run.isoformat())
            fired.append(state.entry.name)
        return fired

    def stop(self, *_: Any) -> None:
        """Request shutdown; the current tick is allowed to finish."""
        self._stopping = True

    def run(self) -> None:
        """Claim the PID file, tick until stopped, then remove the PID file.

        Raises:
            InvalidArgsError: If another daemon already holds the PID file
        """
        pid_path = claim_pid_file(self.project_root)

        handler = attach_cron_log(self.project_root)
        previous = {sig: signal.signal(sig, self.stop) for sig in (signal.SIGTERM, signal.SIGINT)}
        try:
            logger.info("Cron daemon starting (pid %d)", os.getpid())
            self.load()
            while not self._stopping:
                self.tick()
                self._wait()
            logger.info("Cron daemon stopping")
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)
            pid_path.unlink(missing_ok=True)
            logging.getLogger("point_guard").removeHandler(handler)
            handler.close()

    def _wait(self) -> None:
        # Sleep in short slices so a stop request is honoured promptly.
        remaining = self.interval
        while remaining > 0 and not self._stopping:
            step = min(1.0, remaining)
            self.sleep(step)
            remaining -= step


def attach_cron_log(project_root: Path) -> logging.FileHandler:
    """Add a timestamped file handler for ``.ppg/logs/cron.log``."""
    path = cron_log_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    handler.setLevel(logging.INFO)
    package_logger = logging.getLogger("point_guard")
    package_logger.addHandler(handler)
    if package_logger.getEffectiveLevel() > logging.INFO:
        package_logger.setLevel(logging.INFO)
    return handler


def claim_pid_file(project_root: Path) -> Path:
    """Create the PID file atomically, replacing only a stale one.

    Raises:
        InvalidArgsError: If a live daemon holds the file or it cannot be claimed
    """
    pid_path = cron_pid_path(project_root)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(2):
        try:
            fd = os.open(pid_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            pid = daemon_pid(project_root)
            if pid is not None:
                raise InvalidArgsError(f"Cron daemon is already running (PID: {pid})")
            # daemon_pid removed a stale file; try once more.
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        return pid_path
    raise InvalidArgsError(f"Cannot claim {pid_path}; remove it if no daemon is running")


def daemon_pid(project_root: Path) -> int | None:
    """PID of the running daemon; a stale PID file is removed."""
    pid_path = cron_pid_path(project_root)
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
    except (FileNotFoundError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        pid_path.unlink(missing_ok=True)
        return None
    except PermissionError:
        pass
    return pid


def stop_daemon(project_root: Path) -> int | None:
    """Send SIGTERM to the daemon; returns its PID or None if none was running."""
    pid = daemon_pid(project_root)
    if pid is None:
        return None
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    cron_pid_path(project_root).unlink(missing_ok=True)
    logger.info("Stopped cron daemon (pid %d)", pid)
    return pid


def read_log(project_root: Path, lines: int = 20) -> list[str]:
    """Last ``lines`` lines of the cron log."""
    path = cron_log_path(project_root)
    if not path.exists():
        return []
    content = path.read_text(encoding="utf-8").splitlines()
    return [line for line in content if line.strip()][-lines:]
