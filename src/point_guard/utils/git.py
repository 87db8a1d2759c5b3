"""Git operations utility functions."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a subprocess execution."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stderr/stdout, whichever carries the diagnostic."""
        return (self.stderr.strip() or self.stdout.strip())


@dataclass
class FileDiffStats:
    """Statistics for a file diff."""

    file: str
    lines_added: int
    lines_removed: int


def run_command(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: int = 60,
) -> CommandResult:
    """Run a command without a shell and return the result.

    Args:
        args: Program and arguments
        cwd: Working directory for the command
        timeout: Timeout in seconds

    Returns:
        CommandResult with returncode, stdout, stderr
    """
    start = time.time()
    logger.debug("run: %s (cwd=%s)", " ".join(args), cwd)

    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        duration_ms = int((time.time() - start) * 1000)

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=duration_ms,
        )
    except subprocess.TimeoutExpired:
        duration_ms = int((time.time() - start) * 1000)
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout} seconds",
            duration_ms=duration_ms,
        )
    except OSError as e:
        duration_ms = int((time.time() - start) * 1000)
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=str(e),
            duration_ms=duration_ms,
        )


def git(*args: str, cwd: str | Path | None = None, timeout: int = 60) -> CommandResult:
    """Run a git subcommand."""
    return run_command(["git", *args], cwd=cwd, timeout=timeout)


def get_repo_root(path: str | Path | None = None) -> Path | None:
    """Get the root directory of a git repository.

    Args:
        path: Path within the repository (defaults to cwd)

    Returns:
        Path to repository root, or None if not in a repo
    """
    result = git("rev-parse", "--show-toplevel", cwd=path)
    if result.ok:
        return Path(result.stdout.strip())
    return None


def get_current_branch(cwd: str | Path | None = None) -> str | None:
    """Get the current git branch name.

    Args:
        cwd: Working directory

    Returns:
        Branch name, or None if detached or not in a repo
    """
    result = git("branch", "--show-current", cwd=cwd)
    if result.ok:
        branch = result.stdout.strip()
        return branch or None
    return None


def branch_exists(branch_name: str, cwd: str | Path | None = None) -> bool:
    """Check whether a local branch exists."""
    result = git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}", cwd=cwd)
    return result.ok


def checkout_branch(branch_name: str, cwd: str | Path | None = None) -> CommandResult:
    """Checkout an existing branch."""
    return git("checkout", branch_name, cwd=cwd)


def add_worktree(
    repo_root: Path,
    worktree_path: Path,
    branch_name: str,
    base_branch: str | None = None,
) -> CommandResult:
    """Create a worktree on a new branch.

    Args:
        repo_root: Repository root
        worktree_path: Directory to check the worktree out into
        branch_name: New branch to create
        base_branch: Start point (defaults to HEAD)

    Returns:
        CommandResult from git worktree add
    """
    args = ["worktree", "add", "-b", branch_name, str(worktree_path)]
    if base_branch:
        args.append(base_branch)
    return git(*args, cwd=repo_root)


def remove_worktree(
    repo_root: Path,
    worktree_path: Path,
    force: bool = False,
) -> CommandResult:
    """Remove a worktree checkout."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return git(*args, cwd=repo_root)


def prune_worktrees(repo_root: Path) -> CommandResult:
    """Prune worktree records whose directories are gone."""
    return git("worktree", "prune", cwd=repo_root)


def delete_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    force: bool = False,
) -> CommandResult:
    """Delete a branch.

    Args:
        branch_name: Branch to delete
        cwd: Working directory
        force: Force delete even if not merged

    Returns:
        CommandResult from git branch -d/-D
    """
    flag = "-D" if force else "-d"
    return git("branch", flag, branch_name, cwd=cwd)


def merge_squash(branch_name: str, message: str, cwd: str | Path | None = None) -> CommandResult:
    """Squash-merge a branch into the current branch and commit it.

    A branch with nothing new to contribute stages nothing; no commit is made.
    """
    result = git("merge", "--squash", branch_name, cwd=cwd)
    if not result.ok:
        return result
    if git("diff", "--cached", "--quiet", cwd=cwd).ok:
        return result
    return git("commit", "-m", message, cwd=cwd)


def merge_no_ff(branch_name: str, message: str, cwd: str | Path | None = None) -> CommandResult:
    """Merge a branch with an explicit merge commit."""
    return git("merge", "--no-ff", branch_name, "-m", message, cwd=cwd)


def get_conflicted_files(cwd: str | Path | None = None) -> list[str]:
    """List files with unresolved merge conflicts."""
    result = git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
    if not result.ok:
        return []
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]


def abort_merge(cwd: str | Path | None = None) -> CommandResult:
    """Return the working tree to its pre-merge state.

    ``git merge --abort`` does not apply to squash merges, which leave no
    MERGE_HEAD, so fall back to ``git reset --merge``.
    """
    result = git("merge", "--abort", cwd=cwd)
    if result.ok:
        return result
    return git("reset", "--merge", cwd=cwd)


def diff_range(
    range_spec: str,
    cwd: str | Path | None = None,
    stat: bool = False,
    name_only: bool = False,
) -> CommandResult:
    """Run git diff over a revision range."""
    args = ["diff"]
    if stat:
        args.append("--stat")
    elif name_only:
        args.append("--name-only")
    args.append(range_spec)
    return git(*args, cwd=cwd)


def diff_numstat(range_spec: str, cwd: str | Path | None = None) -> list[FileDiffStats]:
    """Get per-file line counts for a revision range.

    Binary files report ``-`` in numstat output and are counted as zero.
    """
    result = git("diff", "--numstat", range_spec, cwd=cwd)
    if not result.ok:
        return []

    stats: list[FileDiffStats] = []
    for line in result.stdout.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, removed, file_path = parts[0], parts[1], parts[2]
        stats.append(
            FileDiffStats(
                file=file_path,
                lines_added=int(added) if added.isdigit() else 0,
                lines_removed=int(removed) if removed.isdigit() else 0,
            )
        )
    return stats
