"""Workspace isolation: git worktrees, their allocation and their eviction."""
