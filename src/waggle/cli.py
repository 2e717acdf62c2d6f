from __future__ import annotations

import asyncio
import json
import tomllib
from pathlib import Path
from typing import Any

import click

from waggle.backends import (
    CommandExecutionBackend,
    CommandPlanningBackend,
    ExecutionBackend,
    PlanningBackend,
)
from waggle.config import DEFAULT_CONFIG_FILENAME, WaggleConfig, load_config, save_config
from waggle.graph import GraphStructureError, create_graph, root_node
from waggle.ingest import PlanIngester
from waggle.metrics import summarize
from waggle.scheduler import EventHook, Orchestrator, RunResult, RunStatus


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config_or_fail(config_path: Path) -> WaggleConfig:
    try:
        return load_config(config_path)
    except (tomllib.TOMLDecodeError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _build_backends(
    config: WaggleConfig, repo_root: Path, event_hook: EventHook | None
) -> tuple[PlanningBackend, ExecutionBackend]:
    planner = CommandPlanningBackend(
        config.planner.command,
        working_directory=repo_root,
        event_hook=event_hook,
    )
    executor = CommandExecutionBackend(
        config.executor.command,
        working_directory=repo_root,
        settings={"model": config.executor.model},
        event_hook=event_hook,
    )
    return planner, executor


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event", "event")
    details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    click.echo(f"[{name}] {details}".rstrip(), err=True)


def _echo_summary(result: RunResult) -> None:
    click.echo(f"Goal: {result.goal}")
    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Status: {result.status.value}")
    task_nodes = result.graph.task_nodes()
    done = sum(
        1 for node in task_nodes if node.id in result.results and result.results[node.id].is_done
    )
    click.echo(f"Tasks: {done}/{len(task_nodes)}")
    click.echo(f"Critical path: {result.metrics.get('critical_path_length', 0)}")
    click.echo(f"Speedup: {result.metrics.get('speedup_factor', 0.0)}x")


@click.group()
def cli() -> None:
    """Waggle CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config_or_fail(config_path)
    save_config(config_path, config)

    click.echo(f"Initialized Waggle in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Planner: {config.planner.command}")
    click.echo(f"Executor: {config.executor.command}")


@cli.command("run")
@click.argument("goal")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--json", "as_json", is_flag=True, default=False)
def run_command(goal: str, config_value: str, verbose: bool, as_json: bool) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(repo_root, config_value))
    event_hook = _echo_event if verbose else None
    planner, executor = _build_backends(config, repo_root, event_hook)
    orchestrator = Orchestrator(planner, executor, config, event_hook=event_hook)

    result = asyncio.run(orchestrator.run(goal))

    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
    else:
        _echo_summary(result)
    if result.status is not RunStatus.goal_reached:
        try:
            result.raise_for_status()
        except RuntimeError as exc:
            raise click.ClickException(str(exc)) from exc


@cli.command("metrics")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--goal", default="", help="Goal text for the root node.")
def metrics_command(plan_file: Path, goal: str) -> None:
    ingester = PlanIngester(create_graph(root_node(goal)))
    try:
        ingester.feed(plan_file.read_text(encoding="utf-8"))
        graph = ingester.finish()
    except GraphStructureError as exc:
        raise click.ClickException(str(exc)) from exc
    if not graph.task_nodes():
        raise click.ClickException("No plan found")

    summary = summarize(graph)
    click.echo(f"Nodes: {summary['nodes']}")
    click.echo(f"Edges: {summary['edges']}")
    click.echo(f"Critical path: {summary['critical_path_length']}")
    click.echo(f"Speedup: {summary['speedup_factor']}x")
