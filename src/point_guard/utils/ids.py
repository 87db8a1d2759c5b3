"""Identifier generation and user-supplied name validation."""

from __future__ import annotations

import re
import secrets
import uuid

from point_guard.core.errors import InvalidArgsError

ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

# Worktree names flow into filesystem paths, branch names and tmux targets.
WORKTREE_NAME = re.compile(r"[A-Za-z0-9-]+")

# Template, prompt, swarm and schedule names.
SAFE_NAME = re.compile(r"[A-Za-z0-9_-]+")


def _random(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def worktree_id() -> str:
    return f"wt-{_random(6)}"


def agent_id() -> str:
    return f"ag-{_random(8)}"


def session_id() -> str:
    return str(uuid.uuid4())


def validate_worktree_name(name: str) -> str:
    """Reject names that are not letters, digits and hyphens.

    Raises:
        InvalidArgsError: If the name is empty or contains anything else
    """
    if not name or not WORKTREE_NAME.fullmatch(name) or name.startswith("-"):
        raise InvalidArgsError(
            f'Invalid worktree name: "{name}" (letters, digits and hyphens only)'
        )
    return name


def validate_safe_name(name: str, kind: str) -> str:
    if not isinstance(name, str) or not SAFE_NAME.fullmatch(name):
        raise InvalidArgsError(
            f'Invalid {kind} name: "{name}" (letters, digits, hyphens or underscores)'
        )
    return name
