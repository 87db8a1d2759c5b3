"""Git worktree lifecycle."""
