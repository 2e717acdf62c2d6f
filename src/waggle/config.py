from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "waggle.toml"


@dataclass(slots=True)
class PlannerConfig:
    command: str = "waggle-planner"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    timeout_seconds: float = 0.0

    def settings(self) -> dict[str, Any]:
        return {"model": self.model, "max_tokens": self.max_tokens}


@dataclass(slots=True)
class ExecutorConfig:
    command: str = "waggle-executor"
    model: str = "claude-sonnet-4-5"
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class SchedulerConfig:
    poll_interval_seconds: float = 0.1
    max_concurrency: int = 8
    start_first_task_early: bool = True
    require_context_complete: bool = True


@dataclass(slots=True)
class WaggleConfig:
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def default(cls) -> WaggleConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WaggleConfig:
        return cls(
            planner=PlannerConfig(**data.get("planner", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
        )

    def validate(self) -> WaggleConfig:
        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("scheduler.poll_interval_seconds must be positive.")
        if self.scheduler.max_concurrency < 1:
            raise ValueError("scheduler.max_concurrency must be at least 1.")
        if self.planner.max_tokens < 1:
            raise ValueError("planner.max_tokens must be at least 1.")
        for section, timeout in (
            ("planner", self.planner.timeout_seconds),
            ("executor", self.executor.timeout_seconds),
        ):
            if timeout < 0:
                raise ValueError(f"{section}.timeout_seconds must not be negative.")
        return self

    def to_dict(self) -> dict:
        return {
            "planner": {
                "command": self.planner.command,
                "model": self.planner.model,
                "max_tokens": self.planner.max_tokens,
                "timeout_seconds": self.planner.timeout_seconds,
            },
            "executor": {
                "command": self.executor.command,
                "model": self.executor.model,
                "timeout_seconds": self.executor.timeout_seconds,
            },
            "scheduler": {
                "poll_interval_seconds": self.scheduler.poll_interval_seconds,
                "max_concurrency": self.scheduler.max_concurrency,
                "start_first_task_early": self.scheduler.start_first_task_early,
                "require_context_complete": self.scheduler.require_context_complete,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WaggleConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("planner", "executor", "scheduler"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WaggleConfig:
    if not path.exists():
        return WaggleConfig.default()
    return WaggleConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8"))).validate()


def save_config(path: Path, config: WaggleConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
