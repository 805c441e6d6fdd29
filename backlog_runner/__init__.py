"""
Backlog Runner - Autonomous backlog execution.

This package drives a backlog of issue-tracker tasks through a code-generation
agent, enforcing dependency, priority, budget, and approval policies, and
records outcome and cost telemetry for every run.
"""

__version__ = "0.1.0"
