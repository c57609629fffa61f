from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from specloop import processes

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILURE_EXIT_CODE = 127

GateHook = Callable[["QualityGate"], None]
GateResultHook = Callable[["GateResult"], None]


@dataclass(frozen=True, slots=True)
class QualityGate:
    name: str
    command: str
    required: bool = True


@dataclass(slots=True)
class GateResult:
    name: str
    command: str
    passed: bool
    exit_code: int | None
    output: str
    duration_seconds: float = 0.0
    timed_out: bool = False
    required: bool = True


def gate_name(command: str) -> str:
    parts = command.split()
    return parts[-1] if parts else command


def parse_quality_gates(
    commands: Iterable[str], optional: Iterable[str] = ()
) -> list[QualityGate]:
    """Turn configured commands into gates named after their trailing token."""
    optional_names = {item.strip() for item in optional}
    gates: list[QualityGate] = []
    for command in commands:
        command = command.strip()
        if not command:
            continue
        name = gate_name(command)
        gates.append(
            QualityGate(
                name=name,
                command=command,
                required=name not in optional_names and command not in optional_names,
            )
        )
    return gates


async def _read_bounded(stream: asyncio.StreamReader, max_bytes: int) -> tuple[bytes, bool]:
    kept = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        room = max_bytes - len(kept)
        if room > 0:
            kept.extend(chunk[:room])
        if len(chunk) > room:
            truncated = True
    return bytes(kept), truncated


async def _stop_gate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        processes.kill(process.pid)
    await process.wait()


async def run_quality_gate(
    gate: QualityGate,
    cwd: Path,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> GateResult:
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            gate.command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        return GateResult(
            name=gate.name,
            command=gate.command,
            passed=False,
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            output=f"Failed to launch gate command: {exc}",
            duration_seconds=time.monotonic() - started,
            required=gate.required,
        )

    assert process.stdout is not None
    reader = asyncio.ensure_future(_read_bounded(process.stdout, max_output_bytes))
    timed_out = False
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout_seconds)
    except TimeoutError:
        timed_out = True
        logger.warning("Quality gate %s timed out after %.0fs", gate.name, timeout_seconds)
        await _stop_gate_process(process)
    except asyncio.CancelledError:
        reader.cancel()
        await _stop_gate_process(process)
        raise

    # Grandchildren that inherited stdout can hold the pipe open after the shell exits.
    try:
        raw, truncated = await asyncio.wait_for(asyncio.shield(reader), timeout=5.0)
    except TimeoutError:
        processes.kill(process.pid)
        reader.cancel()
        raw, truncated = b"", True

    output = raw.decode("utf-8", errors="replace")
    if truncated:
        output += f"\n[output truncated at {max_output_bytes} bytes]"
    exit_code = TIMEOUT_EXIT_CODE if timed_out else process.returncode
    if timed_out:
        output += f"\nCommand timed out after {timeout_seconds:.0f}s"
    return GateResult(
        name=gate.name,
        command=gate.command,
        passed=not timed_out and exit_code == 0,
        exit_code=exit_code,
        output=output,
        duration_seconds=time.monotonic() - started,
        timed_out=timed_out,
        required=gate.required,
    )


async def run_quality_gates(
    gates: Sequence[QualityGate],
    cwd: Path,
    *,
    on_gate_start: GateHook | None = None,
    on_gate_complete: GateResultHook | None = None,
    stop_on_required_failure: bool = True,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> list[GateResult]:
    """Run gates in order, stopping after the first required failure by default."""
    results: list[GateResult] = []
    for gate in gates:
        if on_gate_start:
            on_gate_start(gate)
        result = await run_quality_gate(
            gate,
            cwd,
            timeout_seconds=timeout_seconds,
            max_output_bytes=max_output_bytes,
        )
        results.append(result)
        if on_gate_complete:
            on_gate_complete(result)
        if not result.passed and gate.required and stop_on_required_failure:
            break
    return results


def all_required_passed(results: Sequence[GateResult], gates: Sequence[QualityGate]) -> bool:
    """Every required gate must have run and passed; a skipped gate counts as failing."""
    by_name = {result.command: result for result in results}
    for gate in gates:
        if not gate.required:
            continue
        result = by_name.get(gate.command)
        if result is None or not result.passed:
            return False
    return True


def failed_gates(results: Sequence[GateResult]) -> list[GateResult]:
    return [result for result in results if not result.passed]


def format_gate_results(results: Sequence[GateResult]) -> str:
    lines: list[str] = []
    for result in results:
        icon = "✓" if result.passed else "✗"
        suffix = "" if result.required else " (optional)"
        status = "passed" if result.passed else f"failed (exit code {result.exit_code})"
        lines.append(f"{icon} {result.name}{suffix}: {status} in {result.duration_seconds:.1f}s")
    return "\n".join(lines)


def gate_summary(results: Sequence[GateResult]) -> str:
    passed = sum(1 for result in results if result.passed)
    failed = len(results) - passed
    if failed == 0:
        return f"All {passed} gates passed"
    return f"{passed} passed, {failed} failed"
