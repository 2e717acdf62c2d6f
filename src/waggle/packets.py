from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Literal

Severity = Literal["warn", "human", "fatal"]

FATAL_ERROR_TYPES = {"handleChainError", "handleLLMError", "handleAgentError"}
DONE_TYPES = {"done", "handleAgentEnd"}


class TaskStatus(str, Enum):
    idle = "idle"
    starting = "starting"
    working = "working"
    done = "done"
    waiting_on_human = "waitingOnHuman"
    error = "error"


@dataclass(frozen=True, slots=True)
class IdlePacket:
    type: ClassVar[str] = "idle"


@dataclass(frozen=True, slots=True)
class StartingPacket:
    type: ClassVar[str] = "starting"


@dataclass(frozen=True, slots=True)
class WorkingPacket:
    type: ClassVar[str] = "working"


@dataclass(frozen=True, slots=True)
class TokenPacket:
    type: ClassVar[str] = "t"
    text: str


@dataclass(frozen=True, slots=True)
class ProgressPacket:
    """Any intermediate collaborator event (tool calls, LLM start/end, text)."""

    type: ClassVar[str] = "progress"
    kind: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ArtifactPacket:
    type: ClassVar[str] = "artifact"
    url: str


@dataclass(frozen=True, slots=True)
class DonePacket:
    type: ClassVar[str] = "done"
    value: Any


@dataclass(frozen=True, slots=True)
class ErrorPacket:
    type: ClassVar[str] = "error"
    severity: Severity
    error: str

    @property
    def is_fatal(self) -> bool:
        return self.severity == "fatal"


@dataclass(frozen=True, slots=True)
class WaitingOnHumanPacket:
    type: ClassVar[str] = "waitingOnHuman"
    reason: str


AgentPacket = (
    IdlePacket
    | StartingPacket
    | WorkingPacket
    | TokenPacket
    | ProgressPacket
    | ArtifactPacket
    | DonePacket
    | ErrorPacket
    | WaitingOnHumanPacket
)
TaskOutcome = DonePacket | ErrorPacket | WaitingOnHumanPacket


def is_terminal(packet: AgentPacket) -> bool:
    return isinstance(packet, (DonePacket, ErrorPacket, WaitingOnHumanPacket))


def status_for_packet(packet: AgentPacket | None) -> TaskStatus:
    match packet:
        case None | IdlePacket():
            return TaskStatus.idle
        case StartingPacket():
            return TaskStatus.starting
        case DonePacket():
            return TaskStatus.done
        case ErrorPacket():
            return TaskStatus.error
        case WaitingOnHumanPacket():
            return TaskStatus.waiting_on_human
        case _:
            return TaskStatus.working


def _severity(value: Any) -> Severity:
    normalized = str(value or "fatal").strip().lower()
    if normalized in {"warn", "warning"}:
        return "warn"
    if normalized == "human":
        return "human"
    return "fatal"


def _error_text(payload: dict[str, Any]) -> str:
    for key in ("error", "message", "err"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if value is not None:
            return str(value)
    return "Unknown error"


def packet_from_dict(payload: dict[str, Any]) -> AgentPacket:
    """Map one collaborator wire event onto the packet variant."""
    packet_type = str(payload.get("type", "")).strip()
    if packet_type == "idle":
        return IdlePacket()
    if packet_type == "starting":
        return StartingPacket()
    if packet_type == "working":
        return WorkingPacket()
    if packet_type == "t":
        return TokenPacket(text=str(payload.get("t", "")))
    if packet_type == "artifact":
        return ArtifactPacket(url=str(payload.get("url", "")))
    if packet_type in DONE_TYPES:
        return DonePacket(value=payload.get("value"))
    if packet_type == "waitingOnHuman":
        return WaitingOnHumanPacket(reason=str(payload.get("reason", "")))
    if packet_type == "error":
        severity = _severity(payload.get("severity"))
        if severity == "human":
            return WaitingOnHumanPacket(reason=_error_text(payload))
        return ErrorPacket(severity=severity, error=_error_text(payload))
    if packet_type in FATAL_ERROR_TYPES:
        return ErrorPacket(severity="fatal", error=_error_text(payload))
    data = {key: value for key, value in payload.items() if key != "type"}
    return ProgressPacket(kind=packet_type or "unknown", data=data)


def packet_to_dict(packet: AgentPacket) -> dict[str, Any]:
    match packet:
        case TokenPacket(text=text):
            return {"type": packet.type, "t": text}
        case ProgressPacket(kind=kind, data=data):
            return {"type": kind, **data}
        case ArtifactPacket(url=url):
            return {"type": packet.type, "url": url}
        case DonePacket(value=value):
            return {"type": packet.type, "value": value}
        case ErrorPacket(severity=severity, error=error):
            return {"type": packet.type, "severity": severity, "error": error}
        case WaitingOnHumanPacket(reason=reason):
            return {"type": packet.type, "reason": reason}
        case _:
            return {"type": packet.type}


def find_finish_packet(packets: list[AgentPacket]) -> TaskOutcome:
    """Return the last terminal packet, or a fatal error when there is none.

    Non-fatal errors are only terminal when nothing follows them.
    """
    for packet in reversed(packets):
        if isinstance(packet, (DonePacket, WaitingOnHumanPacket)):
            return packet
        if isinstance(packet, ErrorPacket):
            if packet.is_fatal or packet is packets[-1]:
                return packet
    return ErrorPacket(severity="fatal", error="No result packet found")
