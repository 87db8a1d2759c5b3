"""Point Guard: local multi-agent orchestration.

Creates isolated git worktrees, spawns coding agents inside tmux panes,
tracks their lifecycle in a persisted manifest, and merges or discards
their work.
"""

__version__ = "0.1.0"
