"""Utility modules for the orchestrator."""

from cloudide.utils.best_effort import best_effort
from cloudide.utils.locks import WorkspaceLocks

__all__ = ["WorkspaceLocks", "best_effort"]
