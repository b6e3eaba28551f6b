"""Run a backlog of tasks through an autonomous coding agent."""

__version__ = "0.1.0"
