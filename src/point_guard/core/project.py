"""Project discovery and ``ppg init``."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from point_guard.bundled import BUNDLED_PROMPTS, BUNDLED_SWARMS, DEFAULT_TEMPLATE, GITIGNORE_ENTRIES
from point_guard.core.errors import NotGitRepoError, NotInitializedError
from point_guard.core.manifest import ManifestStore
from point_guard.schemas.config import Config
from point_guard.utils.git import get_repo_root
from point_guard.utils.paths import (
    all_state_dirs,
    config_path,
    manifest_path,
    ppg_dir,
    prompts_dir,
    swarms_dir,
    templates_dir,
)
from point_guard.utils.tmux import SessionController

logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "ppg"


@dataclass
class InitResult:
    project_root: Path
    session_name: str
    written: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "projectRoot": str(self.project_root),
            "sessionName": self.session_name,
            "ppgDir": str(ppg_dir(self.project_root)),
            "written": self.written,
        }


def find_project_root(path: str | Path | None = None) -> Path:
    """Root of the git repository containing ``path``.

    Raises:
        NotGitRepoError: If ``path`` is not inside a git repository
    """
    start = Path(path) if path else Path.cwd()
    root = get_repo_root(start)
    if root is None:
        raise NotGitRepoError(str(start))
    return root


def require_initialized(project_root: Path) -> None:
    if not manifest_path(project_root).exists():
        raise NotInitializedError(str(project_root))


def sanitize_session_name(name: str) -> str:
    """tmux uses ``.`` and ``:`` as target separators."""
    return re.sub(r"[.:]", "-", name)


def load_config(project_root: Path) -> Config:
    return Config.load(config_path(project_root))


def update_gitignore(project_root: Path) -> list[str]:
    """Append missing state entries to ``.gitignore``; returns what was added."""
    path = project_root / ".gitignore"
    content = path.read_text(encoding="utf-8") if path.exists() else ""
    present = set(content.splitlines())
    missing = [entry for entry in GITIGNORE_ENTRIES if entry not in present]
    if not missing:
        return []
    prefix = "" if not content or content.endswith("\n") else "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(prefix + "\n# Point Guard\n" + "\n".join(missing) + "\n")
    return missing


def _write_if_missing(path: Path, content: str, written: list[str], root: Path) -> None:
    if path.exists():
        return
    path.write_text(content, encoding="utf-8")
    written.append(str(path.relative_to(root)))


def init_project(
    path: str | Path | None = None,
    session: SessionController | None = None,
) -> InitResult:
    """Create the ``.ppg`` state tree for a repository.

    Existing config, templates, prompts and swarms are left untouched; the
    manifest is written fresh.

    Args:
        path: Any directory inside the repository (defaults to cwd)
        session: Session controller used to verify tmux is available

    Raises:
        NotGitRepoError: If ``path`` is not inside a git repository
        ToolNotFoundError: If tmux is not available
    """
    root = find_project_root(path)
    if session is not None:
        session.check()

    for directory in all_state_dirs(root):
        directory.mkdir(parents=True, exist_ok=True)

    written: list[str] = []
    cfg_path = config_path(root)
    if not cfg_path.exists():
        Config().save(cfg_path)
        written.append(str(cfg_path.relative_to(root)))
    config = load_config(root)

    raw_name = config.session_name
    if raw_name == DEFAULT_SESSION_NAME:
        raw_name = f"{DEFAULT_SESSION_NAME}-{root.name}"
    session_name = sanitize_session_name(raw_name)

    ManifestStore(root).create(session_name)
    written.append(str(manifest_path(root).relative_to(root)))

    if update_gitignore(root):
        written.append(".gitignore")

    _write_if_missing(templates_dir(root) / "default.md", DEFAULT_TEMPLATE, written, root)
    for name, content in BUNDLED_PROMPTS.items():
        _write_if_missing(prompts_dir(root) / f"{name}.md", content, written, root)
    for name, content in BUNDLED_SWARMS.items():
        _write_if_missing(swarms_dir(root) / f"{name}.yaml", content, written, root)

    logger.info("Initialized %s (session %s)", root, session_name)
    return InitResult(project_root=root, session_name=session_name, written=written)
