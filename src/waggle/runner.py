from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from contextlib import suppress
from typing import Any

from waggle.backends.base import ExecutionBackend
from waggle.graph import Graph, Node
from waggle.packets import (
    AgentPacket,
    ErrorPacket,
    StartingPacket,
    TaskOutcome,
    WorkingPacket,
    find_finish_packet,
    is_terminal,
)

PacketSink = Callable[[str, AgentPacket], None]
EventHook = Callable[[dict[str, Any]], None]

ABORTED_MESSAGE = "Signal aborted"


class TaskRunner:
    """Executes one node through the execution backend.

    Always resolves to a terminal packet. Backend failures, timeouts and
    cancellation become fatal error outcomes; nothing is retried here.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        timeout_seconds: float = 0.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(
        self,
        node: Node,
        graph: Graph,
        prior_results: Mapping[str, Any],
        *,
        sink: PacketSink | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TaskOutcome:
        def _forward(packet: AgentPacket) -> None:
            if sink is not None:
                sink(node.id, packet)

        cancel = cancel or asyncio.Event()
        if cancel.is_set():
            return ErrorPacket(severity="fatal", error=ABORTED_MESSAGE)

        _forward(StartingPacket())

        async def _consume() -> TaskOutcome:
            packets: list[AgentPacket] = []
            _forward(WorkingPacket())
            async for packet in self.backend.execute(node, graph, prior_results):
                packets.append(packet)
                if not is_terminal(packet):
                    _forward(packet)
            return find_finish_packet(packets)

        consumer = asyncio.create_task(_consume())
        aborted = asyncio.create_task(cancel.wait())
        timeout = self.timeout_seconds if self.timeout_seconds > 0 else None
        try:
            done, _ = await asyncio.wait(
                {consumer, aborted},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            consumer.cancel()
            raise
        finally:
            aborted.cancel()

        if consumer in done:
            try:
                return consumer.result()
            except Exception as exc:
                self._emit(
                    {
                        "event": "task_backend_error",
                        "node_id": node.id,
                        "error_type": type(exc).__name__,
                        "message": str(exc),
                    }
                )
                return ErrorPacket(severity="fatal", error=str(exc) or type(exc).__name__)

        consumer.cancel()
        with suppress(asyncio.CancelledError):
            await consumer
        if cancel.is_set():
            return ErrorPacket(severity="fatal", error=ABORTED_MESSAGE)
        self._emit({"event": "task_timeout", "node_id": node.id, "timeout_seconds": timeout})
        return ErrorPacket(
            severity="fatal",
            error=f"Task {node.id} timed out after {self.timeout_seconds:.1f}s",
        )
