"""Collect the results of finished agents into one document."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from point_guard.core.errors import WorktreeNotFoundError
from point_guard.core.liveness import refresh_manifest
from point_guard.core.manifest import ManifestStore
from point_guard.schemas.config import Config
from point_guard.schemas.manifest import AgentEntry, AgentStatus, Manifest, WorktreeEntry
from point_guard.utils.tmux import SessionController

logger = logging.getLogger(__name__)

REPORTABLE = (AgentStatus.COMPLETED, AgentStatus.FAILED)
PR_SECTION = re.compile(r"^##\s+PR\s*$(.*?)(?=^##\s|\Z)", re.MULTILINE | re.DOTALL | re.IGNORECASE)
URL = re.compile(r"https?://\S+")


class ResultSource(str, Enum):
    FILE = "file"
    PANE = "pane"
    UNAVAILABLE = "unavailable"


@dataclass
class AggregatedResult:
    agent_id: str
    worktree_id: str | None
    worktree_name: str | None
    branch: str | None
    status: str
    content: str
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "worktreeId": self.worktree_id,
            "worktreeName": self.worktree_name,
            "branch": self.branch,
            "status": self.status,
            "content": self.content,
            "source": self.source,
        }


def extract_pr_url(content: str) -> str | None:
    """First URL under a ``## PR`` heading, if any."""
    section = PR_SECTION.search(content)
    if not section:
        return None
    match = URL.search(section.group(1))
    return match.group(0).rstrip(").,>") if match else None


def collect_result(agent: AgentEntry, session: SessionController) -> tuple[str, ResultSource]:
    """Result file content, else a capture of the whole pane."""
    if agent.result_file:
        path = Path(agent.result_file)
        if path.is_file():
            return path.read_text(encoding="utf-8"), ResultSource.FILE

    if agent.tmux_target and session.pane_info(agent.tmux_target) is not None:
        captured = session.capture(agent.tmux_target)
        return (
            f"*[No result file; pane capture fallback]*\n\n```\n{captured.rstrip()}\n```",
            ResultSource.PANE,
        )
    return "*[No result file and pane not available]*", ResultSource.UNAVAILABLE


def aggregate(
    store: ManifestStore,
    session: SessionController,
    config: Config | None = None,
    worktree: str | None = None,
    all: bool = False,
) -> list[AggregatedResult]:
    """Gather results of completed and failed agents.

    Without ``worktree`` or ``all``, only worktrees with a completed agent are
    considered. One unreadable agent never fails the whole call.
    """
    manifest = refresh_manifest(store, session, config or Config())

    pairs: list[tuple[WorktreeEntry | None, AgentEntry]]
    if worktree:
        wt = manifest.resolve_worktree(worktree)
        if wt is None:
            raise WorktreeNotFoundError(worktree)
        pairs = [(wt, a) for a in wt.agents.values()]
    elif all:
        pairs = list(manifest.iter_agents())
    else:
        pairs = [
            (wt, a)
            for wt in manifest.worktrees.values()
            if any(a.status == AgentStatus.COMPLETED for a in wt.agents.values())
            for a in wt.agents.values()
        ]

    results: list[AggregatedResult] = []
    pr_urls: dict[str, str] = {}
    for wt, agent in pairs:
        if agent.status not in REPORTABLE:
            continue
        try:
            content, source = collect_result(agent, session)
        except OSError as e:
            logger.warning("Could not read result of %s: %s", agent.id, e)
            content, source = f"*[Result unreadable: {e}]*", ResultSource.UNAVAILABLE

        if wt is not None and source == ResultSource.FILE and not wt.pr_url:
            url = extract_pr_url(content)
            if url:
                pr_urls[wt.id] = url

        results.append(
            AggregatedResult(
                agent_id=agent.id,
                worktree_id=wt.id if wt else None,
                worktree_name=wt.name if wt else None,
                branch=wt.branch if wt else None,
                status=agent.status.value,
                content=content,
                source=source.value,
            )
        )

    if pr_urls:
        def record(m: Manifest) -> None:
            for wt_id, url in pr_urls.items():
                if wt_id in m.worktrees and not m.worktrees[wt_id].pr_url:
                    m.worktrees[wt_id].pr_url = url

        store.update(record)
        logger.info("Recorded PR URLs for %s", ", ".join(pr_urls))

    return results


def render_markdown(results: list[AggregatedResult]) -> str:
    """Combine results into one markdown document."""
    sections = []
    for r in results:
        header = [f"# Agent: {r.agent_id}"]
        if r.worktree_id:
            header.append(f"**Worktree:** {r.worktree_name} ({r.worktree_id})")
            header.append(f"**Branch:** {r.branch}")
        header.append(f"**Status:** {r.status}")
        sections.append("\n".join([*header, "", r.content.rstrip(), "", "---", ""]))
    return "\n".join(sections)
