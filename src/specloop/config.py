from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from specloop.agents.base import AgentType

CONFIG_FILENAME = "specloop.toml"

DEFAULT_GATE_COMMANDS = [
    "npm run typecheck",
    "npm run lint",
    "npm run test",
    "npm run build",
]


class ConfigNotFoundError(RuntimeError):
    """Raised when a command needs an initialized project and none is found."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"Project not initialized: {path} not found. Run 'specloop init' first.")
        self.path = path


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    agent: AgentType = "claude"
    model: str | None = None


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 0
    max_task_retries: int = 3
    iteration_timeout_seconds: float = 3600.0
    failure_backoff_seconds: float = 2.0
    max_failure_backoff_seconds: float = 60.0
    retry_output_chars: int = 2000


@dataclass(slots=True)
class QualityGatesConfig:
    commands: list[str] = field(default_factory=lambda: list(DEFAULT_GATE_COMMANDS))
    optional: list[str] = field(default_factory=list)
    timeout_seconds: float = 120.0
    stop_on_required_failure: bool = True
    max_output_bytes: int = 10 * 1024 * 1024


@dataclass(slots=True)
class SessionConfig:
    grace_period_seconds: float = 5.0
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class SpecloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    quality_gates: QualityGatesConfig = field(default_factory=QualityGatesConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def default(cls) -> SpecloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecloopConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            loop=LoopConfig(**data.get("loop", {})),
            quality_gates=QualityGatesConfig(**data.get("quality_gates", {})),
            session=SessionConfig(**data.get("session", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "agent": self.project.agent,
                "model": self.project.model,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "max_task_retries": self.loop.max_task_retries,
                "iteration_timeout_seconds": self.loop.iteration_timeout_seconds,
                "failure_backoff_seconds": self.loop.failure_backoff_seconds,
                "max_failure_backoff_seconds": self.loop.max_failure_backoff_seconds,
                "retry_output_chars": self.loop.retry_output_chars,
            },
            "quality_gates": {
                "commands": list(self.quality_gates.commands),
                "optional": list(self.quality_gates.optional),
                "timeout_seconds": self.quality_gates.timeout_seconds,
                "stop_on_required_failure": self.quality_gates.stop_on_required_failure,
                "max_output_bytes": self.quality_gates.max_output_bytes,
            },
            "session": {
                "grace_period_seconds": self.session.grace_period_seconds,
                "poll_interval_seconds": self.session.poll_interval_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "loop", "quality_gates", "session"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; an absent key falls back to the dataclass default.
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecloopConfig:
    if not path.exists():
        return SpecloopConfig.default()
    return SpecloopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def require_config(path: Path) -> SpecloopConfig:
    if not path.exists():
        raise ConfigNotFoundError(path)
    return load_config(path)


def save_config(path: Path, config: SpecloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
