"""Execution coordination and retry scheduling."""

from .coordinator import ExecutionCoordinator, ExecutionOutcome
from .scheduler import RetryScheduler, RetryHandle

__all__ = ["ExecutionCoordinator", "ExecutionOutcome", "RetryScheduler", "RetryHandle"]
