"""Error taxonomy with stable codes.

Clients branch on ``code``, never on the message text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from point_guard.core.agents import WaitResult


class PpgError(Exception):
    """Base error carrying a stable code and a process exit code."""

    def __init__(
        self,
        message: str,
        code: str,
        exit_code: int = 1,
        hint: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.exit_code = exit_code
        self.hint = hint

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            data["hint"] = self.hint
        return data


class InvalidArgsError(PpgError):
    def __init__(self, message: str):
        super().__init__(message, "INVALID_ARGS")


class NotGitRepoError(PpgError):
    def __init__(self, directory: str):
        super().__init__(f"Not a git repository: {directory}", "NOT_GIT_REPO")


class ToolNotFoundError(PpgError):
    def __init__(self, tool: str = "tmux"):
        super().__init__(
            f"{tool} is not installed or not in PATH",
            "TMUX_NOT_FOUND",
            hint=f"Install {tool} with your package manager (e.g. brew install {tool})",
        )


class NotInitializedError(PpgError):
    def __init__(self, directory: str):
        super().__init__(
            f"Point Guard is not initialized in {directory}",
            "NOT_INITIALIZED",
            hint="Run 'ppg init' first",
        )


class ManifestLockError(PpgError):
    def __init__(self, timeout: float):
        super().__init__(
            f"Could not acquire manifest lock within {timeout:.0f}s. "
            "Another ppg process may be running.",
            "MANIFEST_LOCK",
            hint="Retry the command",
        )


class ManifestInvalidError(PpgError):
    """Manifest has an unexpected schema version or is unreadable."""

    def __init__(self, message: str):
        super().__init__(message, "MANIFEST_INVALID")


class WorktreeNotFoundError(PpgError):
    def __init__(self, ref: str):
        super().__init__(
            f"Worktree not found: {ref}",
            "WORKTREE_NOT_FOUND",
            hint="Run 'ppg status' to list worktrees",
        )


class AgentNotFoundError(PpgError):
    def __init__(self, agent_id: str):
        super().__init__(
            f"Agent not found: {agent_id}",
            "AGENT_NOT_FOUND",
            hint="Run 'ppg status' to list agents",
        )


class AgentsRunningError(PpgError):
    def __init__(self, agent_ids: list[str], action: str = "merge"):
        self.agent_ids = agent_ids
        super().__init__(
            f"{len(agent_ids)} agent(s) still running: {', '.join(agent_ids)}",
            "AGENTS_RUNNING",
            hint=f"Wait for them to finish or use --force to {action} anyway",
        )


class UnmergedWorkError(PpgError):
    def __init__(self, names: list[str]):
        self.names = names
        listing = "\n".join(f"  {name}" for name in names)
        super().__init__(
            f"{len(names)} worktree(s) have completed work that hasn't been "
            f"merged or PR'd:\n{listing}",
            "UNMERGED_WORK",
            hint="Use --force to reset anyway, or merge the worktrees first",
        )


class MergeConflictError(PpgError):
    """git refused the merge; conflicting files are never auto-resolved."""

    def __init__(self, branch: str, conflicts: list[str], detail: str = ""):
        self.branch = branch
        self.conflicts = conflicts
        message = f"Merge of {branch} failed"
        if conflicts:
            message += f"; conflicting files: {', '.join(conflicts)}"
        elif detail:
            message += f": {detail}"
        super().__init__(message, "MERGE_FAILED")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["conflicts"] = self.conflicts
        return data


class WaitTimeoutError(PpgError):
    def __init__(self, result: WaitResult, timeout: float):
        self.result = result
        super().__init__(
            f"Timed out after {timeout:g}s waiting for agents",
            "WAIT_TIMEOUT",
            exit_code=2,
        )


class AgentsFailedError(PpgError):
    def __init__(self, result: WaitResult, agent_ids: list[str]):
        self.result = result
        self.agent_ids = agent_ids
        super().__init__(
            f"{len(agent_ids)} agent(s) failed or were lost: {', '.join(agent_ids)}",
            "AGENTS_FAILED",
        )


class StateTransitionError(PpgError):
    """An invalid state transition was attempted."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_TRANSITION")


class SessionCommandError(PpgError):
    """A tmux command failed; carries its stderr."""

    def __init__(self, action: str, detail: str):
        self.detail = detail
        super().__init__(f"tmux {action} failed: {detail}", "TMUX_COMMAND_FAILED")


class GitCommandError(PpgError):
    """A git command failed; carries its stderr."""

    def __init__(self, action: str, detail: str):
        self.detail = detail
        super().__init__(f"git {action} failed: {detail}", "GIT_FAILED")


class GhNotFoundError(PpgError):
    def __init__(self) -> None:
        super().__init__(
            "GitHub CLI (gh) is not installed or not in PATH",
            "GH_NOT_FOUND",
            hint="Install it from https://cli.github.com (e.g. brew install gh)",
        )
