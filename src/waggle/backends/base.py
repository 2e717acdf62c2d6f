from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from typing import Any

from waggle.graph import Graph, Node
from waggle.packets import AgentPacket


class BackendExecutionError(RuntimeError):
    """Raised when a collaborator call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class BackendTimeoutError(BackendExecutionError):
    """Raised when a collaborator call exceeds its time budget."""


class BackendProcessError(BackendExecutionError):
    """Raised when a collaborator process cannot be started or read."""


class PlanningBackend(ABC):
    @abstractmethod
    async def plan(self, goal: str, settings: Mapping[str, Any]) -> AsyncIterator[str]:
        """Stream raw plan document text for a goal."""


class ExecutionBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        node: Node,
        graph: Graph,
        prior_results: Mapping[str, Any],
    ) -> AsyncIterator[AgentPacket]:
        """Stream progress packets for one task, ending with a terminal packet."""
