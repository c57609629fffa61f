from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentType = Literal["claude", "codex", "gemini", "cursor", "droid", "amp", "opencode"]


class AgentError(RuntimeError):
    """Base class for agent launch and lookup failures."""

    def __init__(self, message: str, *, agent: str | None = None) -> None:
        super().__init__(message)
        self.agent = agent


class UnknownAgentError(AgentError, KeyError):
    """Raised when an agent type is not part of the catalog."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class AgentNotInstalledError(AgentError):
    """Raised before a run when the agent program cannot be resolved on PATH."""

    def __init__(self, agent: str, program: str, install_hint: str) -> None:
        super().__init__(
            f"Agent '{agent}' is not installed ({program} not found in PATH).\n\n{install_hint}",
            agent=agent,
        )
        self.program = program
        self.install_hint = install_hint


class AgentProcessError(AgentError):
    """Raised when an agent process cannot be launched or driven."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message, agent=agent)
        self.exit_code = exit_code
        self.retriable = retriable


@dataclass(slots=True)
class AgentOptions:
    model: str | None = None
    prompt_file: Path | None = None
    verbose: bool = False


@dataclass(slots=True)
class AgentCommand:
    """A concrete launch: argv plus where the prompt for stdin comes from."""

    program: str
    args: list[str] = field(default_factory=list)
    prompt_file: Path | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    type: str
    name: str
    program: str
    base_args: tuple[str, ...]
    model_flag: str
    install_hint: str
    model_choices: frozenset[str] | None = None
    verbose_flag: str | None = None

    def build_command(self, options: AgentOptions | None = None) -> AgentCommand:
        options = options or AgentOptions()
        args = list(self.base_args)
        model = (options.model or "").strip()
        if model and (self.model_choices is None or model in self.model_choices):
            args.extend([self.model_flag, model])
        if options.verbose and self.verbose_flag:
            args.append(self.verbose_flag)
        return AgentCommand(program=self.program, args=args, prompt_file=options.prompt_file)

    def check_installed(self) -> bool:
        try:
            return shutil.which(self.program) is not None
        except (OSError, ValueError):
            return False

    def install_instructions(self) -> str:
        return self.install_hint
