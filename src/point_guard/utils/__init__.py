"""Subprocess helpers for git and tmux, plus on-disk layout."""
