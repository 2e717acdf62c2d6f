from waggle.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ExecutionBackend,
    PlanningBackend,
)
from waggle.backends.command import CommandExecutionBackend, CommandPlanningBackend

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CommandExecutionBackend",
    "CommandPlanningBackend",
    "ExecutionBackend",
    "PlanningBackend",
]
