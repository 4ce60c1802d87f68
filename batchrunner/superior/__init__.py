"""Orchestration layer for experiment batches.

This package hosts the "superior" orchestrator which declares the resource
request, prepares the environment once per job and drives the external
search binary through subprocess calls, one experiment at a time.
"""

__all__ = [
    "superior_orchestrator",
    "run_single",
    "scheduler",
    "output_router",
]
