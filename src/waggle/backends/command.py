from __future__ import annotations

import asyncio
import json
import shlex
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import suppress
from pathlib import Path
from typing import Any

from waggle.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    ExecutionBackend,
    PlanningBackend,
)
from waggle.graph import Graph, Node
from waggle.packets import AgentPacket, ProgressPacket, packet_from_dict

EventHook = Callable[[dict[str, Any]], None]


class _CommandProcess:
    """Runs one collaborator command with a JSON request on stdin."""

    def __init__(
        self,
        name: str,
        command: str | list[str],
        working_directory: Path | None,
        event_hook: EventHook | None,
    ) -> None:
        self.name = name
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def start(
        self, request: dict[str, Any]
    ) -> tuple[asyncio.subprocess.Process, asyncio.StreamReader]:
        if not self.command:
            raise BackendProcessError(f"No command configured for {self.name}.", backend=self.name)
        self._emit(
            {"event": "command_backend_start", "backend": self.name, "command": self.command[:4]}
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Command not found for {self.name}: {self.command[0]}",
                backend=self.name,
            ) from exc

        stdout = process.stdout
        if stdout is None:
            raise BackendProcessError(
                f"{self.name} command did not expose stdout.", backend=self.name
            )
        if process.stdin is not None:
            process.stdin.write(json.dumps(request, ensure_ascii=False).encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        return process, stdout

    async def wait(self, process: asyncio.subprocess.Process) -> None:
        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit(
            {
                "event": "command_backend_exit",
                "backend": self.name,
                "exit_code": return_code,
                "stderr": stderr_output[:400],
            }
        )
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} command failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
            )

    @staticmethod
    async def terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()


class CommandPlanningBackend(PlanningBackend):
    """Streams the stdout of a planner command as plan text."""

    def __init__(
        self,
        command: str | list[str],
        *,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self._process = _CommandProcess("planner", command, working_directory, event_hook)

    async def plan(self, goal: str, settings: Mapping[str, Any]) -> AsyncIterator[str]:
        process, stdout = await self._process.start({"goal": goal, "settings": dict(settings)})
        try:
            async for raw_line in stdout:
                yield raw_line.decode("utf-8", errors="replace")
            await self._process.wait(process)
        finally:
            await self._process.terminate(process)


class CommandExecutionBackend(ExecutionBackend):
    """Reads JSON-lines packets from an executor command's stdout."""

    def __init__(
        self,
        command: str | list[str],
        *,
        working_directory: Path | None = None,
        settings: Mapping[str, Any] | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self._process = _CommandProcess("executor", command, working_directory, event_hook)
        self.settings = dict(settings or {})

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def build_request(
        self, node: Node, graph: Graph, prior_results: Mapping[str, Any]
    ) -> dict[str, Any]:
        return {
            "task": {"id": node.id, "name": node.name, "context": node.context},
            "graph": graph.to_dict(),
            "prior_results": dict(prior_results),
            "settings": self.settings,
        }

    async def execute(
        self,
        node: Node,
        graph: Graph,
        prior_results: Mapping[str, Any],
    ) -> AsyncIterator[AgentPacket]:
        request = self.build_request(node, graph, prior_results)
        process, stdout = await self._process.start(request)
        try:
            parse_buffer = ""
            async for raw_line in stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield ProgressPacket(kind="text", data={"text": line})
                    continue
                if isinstance(event, dict):
                    yield packet_from_dict(event)
                else:
                    yield ProgressPacket(kind="text", data={"text": line})

            if parse_buffer:
                yield ProgressPacket(kind="text", data={"text": parse_buffer})
            await self._process.wait(process)
        finally:
            await self._process.terminate(process)
