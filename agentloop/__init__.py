"""
agentloop - Autonomous iteration loop for AI coding agents.

This package drives a coding-agent CLI against a task list until every task
is done, with retry/backoff, stall detection, resumable sessions and
dependency-aware parallel execution.
"""

__version__ = "0.1.0"
