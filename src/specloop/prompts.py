from __future__ import annotations

import logging
from collections.abc import Sequence
from importlib import resources
from pathlib import Path
from typing import Literal

from specloop.gates import GateResult
from specloop.markers import DONE_MARKER
from specloop.state.models import Spec, Task
from specloop.state.transitions import completed_tasks

logger = logging.getLogger(__name__)

PromptMode = Literal["build", "plan"]

FALLBACK_PREAMBLES: dict[str, str] = {
    "build": (
        "You are an autonomous software engineer. Complete exactly the task assigned "
        "below, search the codebase before assuming anything is missing, and do not "
        "run version control operations."
    ),
    "plan": (
        "Read the specifications under .specloop/specs/ and write the implementation "
        "plan to .specloop/implementation.json. Print <STATUS>DONE</STATUS> when finished."
    ),
}

DEFAULT_MAX_OUTPUT_CHARS = 2000


def load_preamble(mode: PromptMode, override: Path | None = None) -> str:
    """Project override first, then the packaged template, then a built-in fallback."""
    if override is not None and override.is_file():
        return override.read_text(encoding="utf-8").strip()
    try:
        template = resources.files("specloop") / "templates" / f"{mode}.md"
        return template.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        logger.debug("Packaged %s template missing; using fallback", mode)
        return FALLBACK_PREAMBLES[mode]


def _bullets(items: Sequence[str], mark: str, placeholder: str) -> str:
    if not items:
        return placeholder
    return "\n".join(f"- {mark} {item}" for item in items)


def compose_task_prompt(spec: Spec, task: Task, preamble: str | None = None) -> str:
    """Build the text for one task: its own assignment plus completed context only."""
    if preamble is None:
        preamble = load_preamble("build")
    completed = [item.description for item in completed_tasks(spec) if item.id != task.id]
    context = (spec.context or "").strip() or "_No additional context provided._"
    sections = [
        preamble.strip(),
        "---",
        f"# Task: {task.description}",
        "## Spec Context\n\n"
        f"You are working on: **{spec.name}**\n\n"
        f"{context}",
        "## Completed Tasks\n\n"
        + _bullets(completed, "[x]", "_No tasks completed yet._"),
        "## Your Assignment\n\n"
        "Complete ONLY this task:\n\n"
        f"> {task.description}",
        "## Acceptance Criteria\n\n"
        + _bullets(task.acceptance_criteria or [], "[ ]", "_No specific acceptance criteria._"),
        "## Rules\n\n"
        "1. Work on this task only. Other tasks are handled in separate sessions.\n"
        "2. Search the codebase before assuming something is not implemented.\n"
        "3. Do not commit, push or otherwise touch version control.\n"
        "4. Make sure the project still builds and its checks pass before finishing.",
        "## Completion\n\n"
        f"When the task is complete, output:\n\n{DONE_MARKER}\n\n"
        "If you cannot complete the task, output:\n\n"
        '<TASK_BLOCKED reason="explain what is blocking you">',
    ]
    return "\n\n".join(sections) + "\n"


def truncate_output(output: str, max_chars: int = DEFAULT_MAX_OUTPUT_CHARS) -> str:
    if len(output) <= max_chars:
        return output
    head = max_chars // 2
    tail = max_chars - head
    omitted = len(output) - head - tail
    return f"{output[:head]}\n\n... (truncated {omitted} chars) ...\n\n{output[-tail:]}"


def compose_retry_prompt(
    spec: Spec,
    task: Task,
    failed_gates: Sequence[GateResult],
    previous_attempt: int,
    *,
    preamble: str | None = None,
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
) -> str:
    """Base task prompt followed by the failing gates of the previous attempt.

    ``previous_attempt`` counts failed attempts so far; the announced attempt
    number is the next one, 1-based.
    """
    lines = [
        compose_task_prompt(spec, task, preamble).rstrip(),
        "",
        "## Previous Attempt Failed",
        "",
        f"This is retry attempt #{previous_attempt + 1}. "
        "The previous attempt failed quality gates:",
    ]
    for gate in failed_gates:
        exit_code = "unknown" if gate.exit_code is None else gate.exit_code
        lines.extend(
            [
                "",
                f"### {gate.name} (exit code {exit_code})",
                "",
                "```",
                truncate_output(gate.output.strip(), max_output_chars),
                "```",
            ]
        )
    lines.extend(["", "Please fix the issues and complete the task."])
    return "\n".join(lines) + "\n"
