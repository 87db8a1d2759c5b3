"""Markdown templates and prompts with ``{{VAR}}`` placeholders."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from point_guard.core.errors import InvalidArgsError
from point_guard.utils.ids import validate_safe_name
from point_guard.utils.paths import global_prompts_dir, global_templates_dir, prompts_dir, templates_dir

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class TemplateInfo:
    """A template file and the variables it references."""

    name: str
    description: str = ""
    variables: list[str] = field(default_factory=list)
    source: str = "local"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "variables": self.variables,
            "source": self.source,
        }


def render_template(content: str, context: Mapping[str, str | None]) -> str:
    """Substitute ``{{KEY}}`` placeholders.

    Placeholders without a value in ``context`` are left intact so that a
    partially rendered prompt still shows what is missing.
    """

    def replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return PLACEHOLDER.sub(replace, content)


def template_variables(content: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    seen: list[str] = []
    for name in PLACEHOLDER.findall(content):
        if name not in seen:
            seen.append(name)
    return seen


def parse_vars(pairs: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=value`` arguments.

    Raises:
        InvalidArgsError: If an entry has no ``=`` or an empty key
    """
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise InvalidArgsError(f'Invalid --var format: "{pair}" (expected KEY=value)')
        result[key] = value
    return result


def search_dirs(local: Path, global_: Path) -> list[tuple[Path, str]]:
    """Directories searched for named files, project-local first."""
    return [(local, "local"), (global_, "global")]


def named_files(
    dirs: list[tuple[Path, str]], suffixes: tuple[str, ...] = (".md",)
) -> list[tuple[str, Path, str]]:
    """``(name, path, source)`` for every file; a local name hides a global one."""
    found: list[tuple[str, Path, str]] = []
    seen: set[str] = set()
    for directory, source in dirs:
        if not directory.is_dir():
            continue
        paths = [p for p in directory.iterdir() if p.suffix in suffixes and p.is_file()]
        for path in sorted(paths, key=lambda p: (p.stem, suffixes.index(p.suffix))):
            if path.stem not in seen:
                seen.add(path.stem)
                found.append((path.stem, path, source))
    return found


def find_named(dirs: list[tuple[Path, str]], name: str, suffixes: tuple[str, ...] = (".md",)) -> Path | None:
    for directory, _ in dirs:
        for suffix in suffixes:
            path = directory / f"{name}{suffix}"
            if path.is_file():
                return path
    return None


def _read_named(dirs: list[tuple[Path, str]], name: str, kind: str) -> str:
    validate_safe_name(name, kind)
    path = find_named(dirs, name)
    if path is None:
        available = ", ".join(n for n, _, _ in named_files(dirs)) or "none"
        raise InvalidArgsError(f'{kind.capitalize()} "{name}" not found (available: {available})')
    return path.read_text(encoding="utf-8")


def _template_dirs(project_root: Path) -> list[tuple[Path, str]]:
    return search_dirs(templates_dir(project_root), global_templates_dir())


def _prompt_dirs(project_root: Path) -> list[tuple[Path, str]]:
    return search_dirs(prompts_dir(project_root), global_prompts_dir())


def load_template(project_root: Path, name: str) -> str:
    """Read a template from ``.ppg/templates``, falling back to ``~/.ppg/templates``."""
    return _read_named(_template_dirs(project_root), name, "template")


def load_prompt(project_root: Path, name: str) -> str:
    """Read a prompt from ``.ppg/prompts``, falling back to ``~/.ppg/prompts``."""
    return _read_named(_prompt_dirs(project_root), name, "prompt")


def describe(content: str) -> str:
    """First non-empty line of a template, stripped of heading markers."""
    for line in content.splitlines():
        text = line.strip().lstrip("#").strip()
        if text:
            return text
    return ""


def _describe_files(dirs: list[tuple[Path, str]]) -> list[TemplateInfo]:
    infos = []
    for name, path, source in named_files(dirs):
        content = path.read_text(encoding="utf-8")
        infos.append(
            TemplateInfo(
                name=name,
                description=describe(content),
                variables=template_variables(content),
                source=source,
            )
        )
    return infos


def list_templates(project_root: Path) -> list[TemplateInfo]:
    return _describe_files(_template_dirs(project_root))


def list_prompts(project_root: Path) -> list[TemplateInfo]:
    return _describe_files(_prompt_dirs(project_root))
