from waggle.graph import Edge, Graph, Node
from waggle.packets import DonePacket, ErrorPacket, WaitingOnHumanPacket
from waggle.results import TaskResult
from waggle.scheduler import Orchestrator, RunHandle, RunResult, RunStatus

__version__ = "0.1.0"

__all__ = [
    "DonePacket",
    "Edge",
    "ErrorPacket",
    "Graph",
    "Node",
    "Orchestrator",
    "RunHandle",
    "RunResult",
    "RunStatus",
    "TaskResult",
    "WaitingOnHumanPacket",
    "__version__",
]
