from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from waggle.packets import (
    AgentPacket,
    ArtifactPacket,
    DonePacket,
    ErrorPacket,
    TaskStatus,
    WaitingOnHumanPacket,
    is_terminal,
    packet_to_dict,
    status_for_packet,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Latest observed state of one node, plus every packet seen so far."""

    node_id: str
    value: AgentPacket
    packets: tuple[AgentPacket, ...] = ()
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def first(cls, node_id: str, packet: AgentPacket) -> TaskResult:
        return cls(node_id=node_id, value=packet, packets=(packet,))

    @property
    def status(self) -> TaskStatus:
        return status_for_packet(self.value)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.value)

    @property
    def is_done(self) -> bool:
        return isinstance(self.value, DonePacket)

    @property
    def result(self) -> Any:
        if isinstance(self.value, DonePacket):
            return self.value.value
        return None

    @property
    def error(self) -> str | None:
        if isinstance(self.value, ErrorPacket):
            return self.value.error
        if isinstance(self.value, WaitingOnHumanPacket):
            return self.value.reason
        return None

    @property
    def artifact_urls(self) -> list[str]:
        return [packet.url for packet in self.packets if isinstance(packet, ArtifactPacket)]

    def with_packet(self, packet: AgentPacket) -> TaskResult:
        return replace(
            self,
            value=packet,
            packets=(*self.packets, packet),
            updated_at=_utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "value": packet_to_dict(self.value),
            "packet_count": len(self.packets),
            "artifact_urls": self.artifact_urls,
            "updated_at": self.updated_at.replace(microsecond=0).isoformat(),
        }


def apply_packet(
    results: Mapping[str, TaskResult], node_id: str, packet: AgentPacket
) -> TaskResult:
    current = results.get(node_id)
    if current is None:
        return TaskResult.first(node_id, packet)
    return current.with_packet(packet)


def completed_ids(results: Mapping[str, TaskResult]) -> frozenset[str]:
    return frozenset(node_id for node_id, result in results.items() if result.is_done)
