"""Push a worktree branch and open a GitHub pull request with ``gh``."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from point_guard.core.errors import GhNotFoundError, InvalidArgsError
from point_guard.core.liveness import refresh_manifest
from point_guard.schemas.manifest import AgentEntry, Manifest
from point_guard.utils import git
from point_guard.utils.git import run_command
from point_guard.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)

# GitHub caps PR bodies at 65536 characters; the rest is room for the notice.
MAX_BODY_LENGTH = 60_000
RESULT_SEPARATOR = "\n\n---\n\n"
TRUNCATION_NOTICE = "\n\n---\n\n*[Truncated: full results are in `.ppg/results/`]*"
PUSH_TIMEOUT = 300


def gh_binary() -> str:
    """gh executable, overridable with the ``PPG_GH`` environment variable."""
    return os.environ.get("PPG_GH", "gh")


@dataclass
class PrResult:
    worktree_id: str
    branch: str
    base_branch: str
    pr_url: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "worktreeId": self.worktree_id,
            "branch": self.branch,
            "baseBranch": self.base_branch,
            "prUrl": self.pr_url,
        }


def truncate_body(body: str) -> str:
    if len(body) <= MAX_BODY_LENGTH:
        return body
    return body[:MAX_BODY_LENGTH] + TRUNCATION_NOTICE


def build_body_from_results(agents: Iterable[AgentEntry]) -> str:
    """Join the agents' result files into a PR body; missing files are left out."""
    contents = []
    for agent in agents:
        path = Path(agent.result_file) if agent.result_file else None
        if path is not None and path.is_file():
            contents.append(path.read_text(encoding="utf-8"))
    if not contents:
        return ""
    return truncate_body(RESULT_SEPARATOR.join(contents))


def create_pr(
    worktrees: WorktreeManager,
    ref: str,
    title: str | None = None,
    body: str | None = None,
    draft: bool = False,
) -> PrResult:
    """Push a worktree's branch to ``origin`` and open a PR against its base.

    Args:
        worktrees: Worktree manager for the project
        ref: Worktree id, name or branch
        title: PR title (defaults to the worktree name)
        body: PR body (defaults to the agents' result files)
        draft: Open the PR as a draft

    Returns:
        PrResult with the URL printed by ``gh``

    Raises:
        GhNotFoundError: If gh cannot be executed
        InvalidArgsError: If the push or ``gh pr create`` fails
    """
    project_root = worktrees.project_root
    manifest = refresh_manifest(worktrees.store, worktrees.session, worktrees.config)
    wt = worktrees.get(ref, manifest)

    gh = gh_binary()
    if not run_command([gh, "--version"]).ok:
        raise GhNotFoundError()

    logger.info("Pushing %s to origin", wt.branch)
    pushed = git.git("push", "-u", "origin", wt.branch, cwd=project_root, timeout=PUSH_TIMEOUT)
    if not pushed.ok:
        raise InvalidArgsError(f"Failed to push branch {wt.branch}: {pushed.output}")

    title = title or wt.name
    if body is None:
        body = build_body_from_results(wt.agents.values())

    args = [
        gh,
        "pr",
        "create",
        "--head",
        wt.branch,
        "--base",
        wt.base_branch,
        "--title",
        title,
        "--body",
        body,
    ]
    if draft:
        args.append("--draft")

    logger.info("Creating PR for %s: %s", wt.branch, title)
    created = run_command(args, cwd=project_root, timeout=PUSH_TIMEOUT)
    if not created.ok:
        raise InvalidArgsError(f"Failed to create PR: {created.output}")
    pr_url = created.stdout.strip()

    def record(m: Manifest) -> None:
        entry = m.worktrees.get(wt.id)
        if entry is not None:
            entry.pr_url = pr_url

    worktrees.store.update(record)
    return PrResult(
        worktree_id=wt.id,
        branch=wt.branch,
        base_branch=wt.base_branch,
        pr_url=pr_url,
    )
