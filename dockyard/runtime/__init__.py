"""Workspace lifecycle manager and workflow run coordinator."""
