"""Task execution orchestrator for agent-driven backlogs.

The executors never edit code themselves. They hand each backlog task to an
external agent CLI, watch its report, and own everything around the call:
retries, model fallback on rate limits, persistent deferral counters, and
in parallel mode, one git worktree per task with serialized merge-back.
"""
