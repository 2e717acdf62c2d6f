from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from waggle.backends.base import BackendTimeoutError, ExecutionBackend, PlanningBackend
from waggle.config import WaggleConfig
from waggle.graph import (
    ROOT_NODE_ID,
    Graph,
    GraphStructureError,
    Node,
    create_graph,
    root_node,
)
from waggle.ingest import NoPlanError, PlanIngester, PlanningError
from waggle.metrics import summarize
from waggle.packets import (
    AgentPacket,
    DonePacket,
    ErrorPacket,
    StartingPacket,
    TaskOutcome,
    WorkingPacket,
)
from waggle.readiness import ready
from waggle.results import TaskResult, apply_packet, completed_ids
from waggle.runner import ABORTED_MESSAGE, TaskRunner

EventHook = Callable[[dict[str, Any]], None]
ResultSink = Callable[[str, AgentPacket], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds")


class RunError(RuntimeError):
    """Raised when a run ends without reaching its goal."""


class TaskFailedError(RunError):
    def __init__(self, node_id: str, detail: str) -> None:
        super().__init__(f"Task {node_id} failed: {detail}")
        self.node_id = node_id
        self.detail = detail


class StalledRunError(RunError):
    """No task can make progress although the plan is complete."""

    def __init__(self, pending_ids: list[str]) -> None:
        super().__init__(
            "No task is ready while tasks remain pending: " + ", ".join(pending_ids)
        )
        self.pending_ids = pending_ids


class RunCancelledError(RunError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} was cancelled.")
        self.run_id = run_id


class RunStatus(str, Enum):
    running = "running"
    goal_reached = "goal_reached"
    failed = "failed"
    cancelled = "cancelled"


@dataclass(slots=True)
class RunResult:
    run_id: str
    goal: str
    status: RunStatus
    results: dict[str, TaskResult]
    graph: Graph
    error: BaseException | None = None
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None
    dispatch_log: dict[str, datetime] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.goal_reached

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error
        if self.status is RunStatus.cancelled:
            raise RunCancelledError(self.run_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "goal": self.goal,
            "status": self.status.value,
            "error": str(self.error) if self.error is not None else None,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "graph": self.graph.to_dict(),
            "results": {node_id: result.to_dict() for node_id, result in self.results.items()},
            "dispatch_log": {node_id: _iso(at) for node_id, at in self.dispatch_log.items()},
            "metrics": dict(self.metrics),
        }


@dataclass(slots=True)
class RunHandle:
    run_id: str
    goal: str
    cancel_event: asyncio.Event
    task: asyncio.Task[RunResult] | None = None

    async def wait(self) -> RunResult:
        if self.task is None:
            raise RuntimeError(f"Run {self.run_id} was never started.")
        return await self.task


# Messages sent to the scheduling loop. The loop is the only writer of run state.


@dataclass(frozen=True, slots=True)
class _GraphPublished:
    graph: Graph
    settled_ids: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class _FirstTaskOffered:
    node: Node


@dataclass(frozen=True, slots=True)
class _PacketReceived:
    node_id: str
    packet: AgentPacket


@dataclass(frozen=True, slots=True)
class _TaskFinished:
    node_id: str
    outcome: TaskOutcome


@dataclass(frozen=True, slots=True)
class _PlanningFinished:
    error: BaseException | None = None


_Message = (
    _GraphPublished | _FirstTaskOffered | _PacketReceived | _TaskFinished | _PlanningFinished
)


@dataclass(slots=True)
class _RunState:
    run_id: str
    goal: str
    graph: Graph
    cancel: asyncio.Event
    queue: asyncio.Queue[_Message] = field(default_factory=asyncio.Queue)
    results: dict[str, TaskResult] = field(default_factory=dict)
    scheduled: set[str] = field(default_factory=set)
    settled: set[str] = field(default_factory=set)
    in_flight: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    dispatch_log: dict[str, datetime] = field(default_factory=dict)
    planning_finished: bool = False
    status: RunStatus = RunStatus.running
    error: BaseException | None = None
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None


class Orchestrator:
    """Plans a goal into a task graph and executes it layer by layer.

    Planning streams into the graph while ready tasks are already running.
    Every task completion is posted back to a single loop that owns the run
    state, so observers only ever see snapshots.
    """

    def __init__(
        self,
        planner: PlanningBackend,
        executor: ExecutionBackend,
        config: WaggleConfig | None = None,
        *,
        event_hook: EventHook | None = None,
        result_sink: ResultSink | None = None,
    ) -> None:
        self.planner = planner
        self.executor = executor
        self.config = (config or WaggleConfig.default()).validate()
        self.event_hook = event_hook
        self.result_sink = result_sink
        self.runner = TaskRunner(
            executor,
            timeout_seconds=self.config.executor.timeout_seconds,
            event_hook=event_hook,
        )
        self._state: _RunState | None = None
        self._handle: RunHandle | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def active(self) -> bool:
        handle = self._handle
        return handle is not None and handle.task is not None and not handle.task.done()

    def start(self, goal: str) -> RunHandle:
        """Begin a run on the current event loop and return its handle."""
        if self.active:
            raise RuntimeError("A run is already active; cancel or reset it first.")
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        cancel = asyncio.Event()
        state = _RunState(
            run_id=run_id,
            goal=goal,
            graph=create_graph(root_node(goal)),
            cancel=cancel,
        )
        handle = RunHandle(run_id=run_id, goal=goal, cancel_event=cancel)
        self._state = state
        self._handle = handle
        handle.task = asyncio.create_task(self._drive(state))
        return handle

    def cancel(self, handle: RunHandle) -> None:
        if not handle.cancel_event.is_set():
            self._emit({"event": "run_cancel_requested", "run_id": handle.run_id})
        handle.cancel_event.set()

    def reset(self) -> None:
        """Cancel any active run and forget its state."""
        if self._handle is not None:
            self.cancel(self._handle)
        self._handle = None
        self._state = None

    async def run(self, goal: str) -> RunResult:
        return await self.start(goal).wait()

    def snapshot(self) -> RunResult | None:
        state = self._state
        if state is None:
            return None
        return self._result(state)

    def _result(self, state: _RunState) -> RunResult:
        return RunResult(
            run_id=state.run_id,
            goal=state.goal,
            status=state.status,
            results=dict(state.results),
            graph=state.graph,
            error=state.error,
            started_at=state.started_at,
            ended_at=state.ended_at,
            dispatch_log=dict(state.dispatch_log),
            metrics=summarize(state.graph),
        )

    def _record(self, state: _RunState, node_id: str, packet: AgentPacket) -> None:
        state.results[node_id] = apply_packet(state.results, node_id, packet)
        if self.result_sink:
            self.result_sink(node_id, packet)

    def _set_error(self, state: _RunState, error: BaseException) -> None:
        # First error wins. Errors raised while the run is winding down are only reported.
        if state.error is not None or state.cancel.is_set():
            self._emit(
                {
                    "event": "run_error_suppressed",
                    "run_id": state.run_id,
                    "error_type": type(error).__name__,
                    "message": str(error),
                }
            )
            return
        state.error = error
        state.cancel.set()

    async def _plan(self, state: _RunState, ingester: PlanIngester) -> None:
        async def _chunks() -> AsyncIterator[str]:
            first = True
            async for chunk in self.planner.plan(state.goal, self.config.planner.settings()):
                if first:
                    first = False
                    state.queue.put_nowait(_PacketReceived(ROOT_NODE_ID, WorkingPacket()))
                yield chunk

        error: BaseException | None = None
        timeout = self.config.planner.timeout_seconds
        try:
            ingest = ingester.ingest(_chunks(), cancel=state.cancel)
            if timeout > 0:
                await asyncio.wait_for(ingest, timeout=timeout)
            else:
                await ingest
        except TimeoutError:
            error = BackendTimeoutError(
                f"Planning timed out after {timeout:.1f}s", backend="planner"
            )
        except (PlanningError, GraphStructureError) as exc:
            error = exc
        except Exception as exc:
            error = PlanningError(f"Planning failed: {exc}")
            error.__cause__ = exc
        state.queue.put_nowait(_PlanningFinished(error))

    def _dispatch(
        self,
        state: _RunState,
        node: Node,
        *,
        semaphore: asyncio.Semaphore,
        speculative: bool = False,
    ) -> None:
        state.scheduled.add(node.id)
        state.dispatch_log[node.id] = _utcnow()
        graph = state.graph
        prior_results = {
            node_id: result.result
            for node_id, result in state.results.items()
            if node_id != ROOT_NODE_ID and result.is_done
        }

        def _sink(node_id: str, packet: AgentPacket) -> None:
            state.queue.put_nowait(_PacketReceived(node_id, packet))

        async def _execute() -> None:
            async with semaphore:
                if state.cancel.is_set():
                    outcome: TaskOutcome = ErrorPacket(severity="fatal", error=ABORTED_MESSAGE)
                else:
                    outcome = await self.runner.run(
                        node, graph, prior_results, sink=_sink, cancel=state.cancel
                    )
            state.queue.put_nowait(_TaskFinished(node.id, outcome))

        state.in_flight[node.id] = asyncio.create_task(_execute())
        self._emit(
            {
                "event": "task_dispatched",
                "run_id": state.run_id,
                "node_id": node.id,
                "speculative": speculative,
                "in_flight": len(state.in_flight),
            }
        )

    def _handle_message(
        self, state: _RunState, message: _Message, semaphore: asyncio.Semaphore
    ) -> None:
        match message:
            case _GraphPublished(graph=graph, settled_ids=settled_ids):
                if len(graph.nodes) >= len(state.graph.nodes) and len(graph.edges) >= len(
                    state.graph.edges
                ):
                    state.graph = graph
                state.settled.update(settled_ids)
            case _FirstTaskOffered(node=node):
                if node.id not in state.scheduled and not state.cancel.is_set():
                    self._dispatch(state, node, semaphore=semaphore, speculative=True)
            case _PacketReceived(node_id=node_id, packet=packet):
                current = state.results.get(node_id)
                if current is None or not current.is_terminal:
                    self._record(state, node_id, packet)
            case _TaskFinished(node_id=node_id, outcome=outcome):
                state.in_flight.pop(node_id, None)
                self._record(state, node_id, outcome)
                self._emit(
                    {
                        "event": "task_finished",
                        "run_id": state.run_id,
                        "node_id": node_id,
                        "status": state.results[node_id].status.value,
                    }
                )
                if isinstance(outcome, ErrorPacket) and outcome.is_fatal:
                    self._set_error(state, TaskFailedError(node_id, outcome.error))
            case _PlanningFinished(error=error):
                state.planning_finished = True
                if error is not None:
                    self._record(
                        state, ROOT_NODE_ID, ErrorPacket(severity="fatal", error=str(error))
                    )
                    self._set_error(state, error)
                    return
                task_count = len(state.graph.task_nodes())
                self._record(
                    state,
                    ROOT_NODE_ID,
                    DonePacket(value={"nodes": task_count, "edges": len(state.graph.edges)}),
                )
                if task_count == 0:
                    self._set_error(state, NoPlanError())

    async def _drive(self, state: _RunState) -> RunResult:
        scheduler_config = self.config.scheduler
        semaphore = asyncio.Semaphore(scheduler_config.max_concurrency)
        self._emit({"event": "run_started", "run_id": state.run_id, "goal": state.goal})
        self._record(state, ROOT_NODE_ID, StartingPacket())

        def _on_first_task(node: Node, graph: Graph) -> None:
            state.queue.put_nowait(_FirstTaskOffered(node))

        def _on_publish(graph: Graph) -> None:
            state.queue.put_nowait(_GraphPublished(graph, ingester.settled_ids))

        ingester = PlanIngester(
            state.graph,
            on_publish=_on_publish,
            on_first_task=_on_first_task if scheduler_config.start_first_task_early else None,
            event_hook=self.event_hook,
        )
        planning = asyncio.create_task(self._plan(state, ingester))

        try:
            while True:
                while not state.queue.empty():
                    self._handle_message(state, state.queue.get_nowait(), semaphore)

                if state.error is not None:
                    state.status = RunStatus.failed
                    break
                if state.cancel.is_set():
                    state.status = RunStatus.cancelled
                    break

                completed = completed_ids(state.results)
                task_nodes = state.graph.task_nodes()
                if state.planning_finished and all(node.id in completed for node in task_nodes):
                    state.status = RunStatus.goal_reached
                    break

                context_complete = (
                    state.planning_finished or not scheduler_config.require_context_complete
                )
                ready_nodes = ready(
                    state.graph,
                    completed,
                    state.scheduled,
                    settled_ids=None if context_complete else state.settled,
                )
                for node in ready_nodes:
                    self._dispatch(state, node, semaphore=semaphore)

                if state.planning_finished and not ready_nodes and not state.in_flight:
                    pending = [node.id for node in task_nodes if node.id not in completed]
                    self._set_error(state, StalledRunError(pending))
                    continue

                await asyncio.sleep(scheduler_config.poll_interval_seconds)
        finally:
            state.cancel.set()
            planning.cancel()
            await asyncio.gather(planning, *state.in_flight.values(), return_exceptions=True)
            state.ended_at = _utcnow()

        result = self._result(state)
        self._emit(
            {
                "event": "run_finished",
                "run_id": state.run_id,
                "status": state.status.value,
                "error": str(state.error) if state.error is not None else None,
                "metrics": result.metrics,
            }
        )
        return result
