"""Dockyard - isolated git workspaces and workflow runs for AI coding agents."""
