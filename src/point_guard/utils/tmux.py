"""tmux session management for agent panes.

All agents of a project share one tmux session; each worktree owns a window
and each agent a pane inside it. Targets use tmux's ``session:window.pane``
syntax.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from point_guard.core.errors import SessionCommandError, ToolNotFoundError
from point_guard.utils.git import CommandResult, run_command

logger = logging.getLogger(__name__)

PANE_FORMAT = "#{pane_id}|#{pane_pid}|#{pane_current_command}|#{pane_dead}|#{pane_dead_status}"


@dataclass
class PaneInfo:
    """Liveness details of a tmux pane."""

    pane_id: str
    pid: int | None = None
    current_command: str = ""
    dead: bool = False
    dead_status: int | None = None


def parse_pane_info(line: str) -> PaneInfo | None:
    """Parse one line rendered with :data:`PANE_FORMAT`."""
    parts = line.strip().split("|")
    if len(parts) < 5 or not parts[0]:
        return None
    pane_id, pid, command, dead, dead_status = parts[:5]
    return PaneInfo(
        pane_id=pane_id,
        pid=int(pid) if pid.isdigit() else None,
        current_command=command,
        dead=dead == "1",
        dead_status=int(dead_status) if dead_status.lstrip("-").isdigit() else None,
    )


class SessionController(Protocol):
    """Terminal multiplexer operations the orchestrator depends on."""

    def check(self) -> None: ...

    def ensure_session(self, name: str) -> None: ...

    def create_window(self, session: str, label: str, cwd: str | Path) -> str: ...

    def create_pane(self, window_ref: str, cwd: str | Path, horizontal: bool = True) -> str: ...

    def capture(self, target: str, lines: int | None = None) -> str: ...

    def send_keys(
        self,
        target: str,
        text: str,
        append_enter: bool = True,
        literal: bool = True,
    ) -> None: ...

    def send_ctrl_c(self, target: str) -> None: ...

    def is_alive(self, target: str) -> bool: ...

    def pane_info(self, target: str) -> PaneInfo | None: ...

    def kill(self, target: str) -> None: ...

    def kill_window(self, target: str) -> None: ...

    def own_target(self) -> str | None: ...


def tmux_binary() -> str:
    """tmux executable, overridable with the ``PPG_TMUX`` environment variable."""
    return os.environ.get("PPG_TMUX", "tmux")


def current_pane_id() -> str | None:
    """tmux pane id (``%N``) of this process; None outside tmux."""
    return os.environ.get("TMUX_PANE") or None


def would_affect(target: str, own_target: str | None) -> bool:
    """Whether killing ``target`` would also kill the pane at ``own_target``.

    A window target (``session:window``) covers every pane in the window.
    """
    if not own_target:
        return False
    if target == own_target:
        return True
    window, dot, _ = own_target.rpartition(".")
    return bool(dot) and target == window


class TmuxController:
    """Drives a tmux server through its command line."""

    def __init__(self, binary: str | None = None, timeout: int = 10):
        """Initialize the controller.

        Args:
            binary: tmux executable (defaults to ``PPG_TMUX`` or ``tmux``)
            timeout: Timeout in seconds for each tmux call
        """
        self.binary = binary or tmux_binary()
        self.timeout = timeout
        self._checked = False

    def _run(self, *args: str) -> CommandResult:
        return run_command([self.binary, *args], timeout=self.timeout)

    def _run_checked(self, action: str, *args: str) -> CommandResult:
        result = self._run(*args)
        if not result.ok:
            raise SessionCommandError(action, result.output)
        return result

    def check(self) -> None:
        """Verify tmux can be executed.

        Raises:
            ToolNotFoundError: If the tmux binary is missing
        """
        if self._checked:
            return
        if not self._run("-V").ok:
            raise ToolNotFoundError("tmux")
        self._checked = True

    def session_exists(self, name: str) -> bool:
        # '=' forces an exact match; 'ppg' would otherwise also match 'ppg-dev'.
        return self._run("has-session", "-t", f"={name}").ok

    def ensure_session(self, name: str) -> None:
        """Create a detached session unless one with this name exists."""
        if self.session_exists(name):
            return
        logger.info("Creating tmux session %s", name)
        self._run_checked("new-session", "new-session", "-d", "-s", name, "-x", "220", "-y", "50")
        self._run("set-option", "-t", f"={name}", "history-limit", "50000")

    def create_window(self, session: str, label: str, cwd: str | Path) -> str:
        """Open a window in ``session`` rooted at ``cwd``.

        Returns:
            Window target as ``session:index``
        """
        result = self._run_checked(
            "new-window",
            "new-window",
            "-d",
            "-t",
            f"={session}:",
            "-n",
            label,
            "-c",
            str(cwd),
            "-P",
            "-F",
            "#{window_index}",
        )
        return f"{session}:{result.stdout.strip()}"

    def create_pane(self, window_ref: str, cwd: str | Path, horizontal: bool = True) -> str:
        """Split a window and return the new pane target."""
        result = self._run_checked(
            "split-window",
            "split-window",
            "-h" if horizontal else "-v",
            "-d",
            "-t",
            window_ref,
            "-c",
            str(cwd),
            "-P",
            "-F",
            "#{session_name}:#{window_index}.#{pane_index}",
        )
        self._run("select-layout", "-t", window_ref, "tiled")
        return result.stdout.strip()

    def capture(self, target: str, lines: int | None = None) -> str:
        """Capture pane text; ``lines=None`` captures the whole scrollback."""
        start = "-" if lines is None else f"-{lines}"
        result = self._run("capture-pane", "-p", "-J", "-t", target, "-S", start)
        return result.stdout if result.ok else ""

    def send_keys(
        self,
        target: str,
        text: str,
        append_enter: bool = True,
        literal: bool = True,
    ) -> None:
        """Type text into a pane.

        Args:
            target: Pane target
            text: Text, or tmux key names when ``literal`` is False
            append_enter: Press Enter afterwards
            literal: Send text verbatim instead of interpreting key names
        """
        if text:
            if literal:
                self._run_checked("send-keys", "send-keys", "-t", target, "-l", text)
            else:
                self._run_checked("send-keys", "send-keys", "-t", target, *text.split())
        if append_enter:
            self._run_checked("send-keys", "send-keys", "-t", target, "Enter")

    def send_ctrl_c(self, target: str) -> None:
        self._run("send-keys", "-t", target, "C-c")

    def pane_info(self, target: str) -> PaneInfo | None:
        """Look up a pane; None when it no longer exists."""
        result = self._run("display-message", "-p", "-t", target, PANE_FORMAT)
        if not result.ok:
            return None
        return parse_pane_info(result.stdout)

    def is_alive(self, target: str) -> bool:
        info = self.pane_info(target)
        return info is not None and not info.dead

    def kill(self, target: str) -> None:
        """Kill a pane; a pane that is already gone is not an error."""
        result = self._run("kill-pane", "-t", target)
        if not result.ok:
            logger.debug("kill-pane %s: %s", target, result.output)

    def kill_window(self, target: str) -> None:
        result = self._run("kill-window", "-t", target)
        if not result.ok:
            logger.debug("kill-window %s: %s", target, result.output)

    def own_target(self) -> str | None:
        """``session:window.pane`` of the pane running this process, if any."""
        pane_id = current_pane_id()
        if pane_id is None:
            return None
        result = self._run(
            "display-message", "-p", "-t", pane_id, "#{session_name}:#{window_index}.#{pane_index}"
        )
        target = result.stdout.strip()
        return target if result.ok and target else None
