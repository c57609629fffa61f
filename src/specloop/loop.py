from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from specloop.agents import AgentDefinition, AgentOptions, AgentProcessError, AgentRunner
from specloop.agents.process import AgentRunResult
from specloop.config import SpecloopConfig
from specloop.gates import (
    GateResult,
    QualityGate,
    all_required_passed,
    failed_gates,
    format_gate_results,
    gate_summary,
    parse_quality_gates,
    run_quality_gates,
)
from specloop.paths import ProjectPaths
from specloop.prompts import compose_retry_prompt, compose_task_prompt, load_preamble
from specloop.session_log import SessionLog
from specloop.state.models import Spec, StateError, Task, utcnow_iso
from specloop.state.sessions import Session, SessionStore
from specloop.state.store import ImplementationStore
from specloop.state.transitions import (
    mark_blocked,
    mark_completed,
    mark_failed,
    mark_in_progress,
    next_pending_task,
)

logger = logging.getLogger(__name__)

LoopEventHook = Callable[[dict[str, Any]], None]
LoopStatus = Literal["completed", "stopped"]


@dataclass(slots=True)
class LoopSummary:
    session_id: str
    mode: str
    status: LoopStatus
    iterations: int
    reason: str = ""
    tasks_completed: int = 0
    tasks_blocked: int = 0
    tasks_failed: int = 0


class BuildLoop:
    """Drives one session: one agent invocation per iteration until work runs out."""

    def __init__(
        self,
        paths: ProjectPaths,
        config: SpecloopConfig,
        agent: AgentDefinition,
        session: Session,
        *,
        store: ImplementationStore | None = None,
        sessions: SessionStore | None = None,
        runner: AgentRunner | None = None,
        options: AgentOptions | None = None,
        event_hook: LoopEventHook | None = None,
        install_signal_handlers: bool = False,
    ) -> None:
        self.paths = paths
        self.config = config
        self.agent = agent
        self.session = session
        self.store = store or ImplementationStore(paths)
        self.sessions = sessions or SessionStore(paths)
        self.runner = runner or AgentRunner(
            paths.root,
            timeout_seconds=config.loop.iteration_timeout_seconds,
            grace_period_seconds=config.session.grace_period_seconds,
        )
        self.options = options or AgentOptions(model=session.model)
        self.event_hook = event_hook
        self.install_signal_handlers = install_signal_handlers
        self.log = SessionLog(paths.session_log(session.id))
        self.gates: list[QualityGate] = parse_quality_gates(
            config.quality_gates.commands, config.quality_gates.optional
        )
        self._retry_context: dict[str, list[GateResult]] = {}
        self._consecutive_failures = 0
        self._interrupted = False
        self._summary = LoopSummary(
            session_id=session.id,
            mode=session.mode,
            status="stopped",
            iterations=session.iteration,
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _update_session(self, **changes: Any) -> Session:
        """Mutate the record only while it is running; a stopped record is final."""

        def _apply(item: Session) -> Session:
            if item.status == "running":
                for key, value in changes.items():
                    setattr(item, key, value)
            return item

        self.session = self.sessions.update(self.session.id, _apply)
        return self.session

    def _stop_requested(self) -> bool:
        if self._interrupted:
            return True
        current = self.sessions.get(self.session.id)
        return current is None or current.stop_requested

    def _finish(self, status: LoopStatus, reason: str = "") -> None:
        """Terminal session write; a record already stopped elsewhere is left alone."""

        def _apply(item: Session) -> Session:
            if item.status == "running":
                item.status = status
                item.stopped_at = utcnow_iso()
                item.process_id = None
                if reason:
                    item.stop_reason = reason
            return item

        self.session = self.sessions.update(self.session.id, _apply)
        self._summary.status = status
        self._summary.reason = reason
        self.log.write(f"Session {status}" + (f" ({reason})" if reason else ""))
        self._emit({"event": "session_finished", "status": status, "reason": reason})

    def _handle_signal(self, signum: int, task: asyncio.Task[Any]) -> None:
        if self._interrupted:
            return
        self._interrupted = True
        name = signal.Signals(signum).name
        logger.info("Received %s; stopping session %s", name, self.session.id)
        self.log.write(f"Received {name}, stopping session")

        def _apply(item: Session) -> Session:
            if item.status == "running":
                item.status = "stopped"
                item.stopped_at = utcnow_iso()
                item.stop_reason = "signal"
            return item

        self.session = self.sessions.update(self.session.id, _apply)
        task.cancel()

    def _backoff_delay(self) -> float:
        base = max(0.0, self.config.loop.failure_backoff_seconds)
        delay = base * (2 ** max(0, self._consecutive_failures - 1))
        return min(delay, max(0.0, self.config.loop.max_failure_backoff_seconds))

    async def run(self) -> LoopSummary:
        loop = asyncio.get_running_loop()
        current = asyncio.current_task()
        installed: list[int] = []
        if self.install_signal_handlers and current is not None:
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, self._handle_signal, signum, current)
                    installed.append(signum)
                except (NotImplementedError, RuntimeError):
                    logger.debug("Signal handlers unavailable for %s", signum)
        try:
            if self.session.mode == "plan":
                await self._run_plan()
            else:
                await self._run_build()
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            if current is not None:
                current.uncancel()
            self._summary.status = "stopped"
            self._summary.reason = "signal"
            self.log.write("Session stopped")
        except (StateError, AgentProcessError) as exc:
            self.log.write(f"Fatal error: {exc}")
            self._finish("stopped", reason="error")
            raise
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
        self._summary.iterations = self.session.iteration
        return self._summary

    def _external_stop(self) -> None:
        self.log.write("Stop requested; loop exiting")
        self._emit({"event": "session_stop_observed"})
        if self.sessions.get(self.session.id) is None:
            self._summary.status = "stopped"
            self._summary.reason = "session record removed"
            return
        self._finish("stopped", reason="stop requested")

    def _cap_reached(self) -> bool:
        cap = self.config.loop.max_iterations
        return cap > 0 and self.session.iteration >= cap

    def _next_iteration(self) -> int:
        iteration = self.session.iteration + 1
        self._update_session(iteration=iteration)
        self._summary.iterations = iteration
        return iteration

    async def _run_agent(self, prompt: str, iteration: int) -> AgentRunResult:
        command = self.agent.build_command(self.options)

        def _spawned(pid: int) -> None:
            self._update_session(process_id=pid)
            self.log.write(f"Agent {self.agent.type} started (pid {pid})")
            self._emit({"event": "agent_started", "iteration": iteration, "pid": pid})

        def _line(line: str) -> None:
            self.log.agent_line(line)
            self._emit({"event": "agent_output", "iteration": iteration, "line": line})

        try:
            result = await self.runner.run(command, prompt, on_spawn=_spawned, on_line=_line)
        finally:
            if not self._interrupted:
                self._update_session(process_id=None)
        self.log.write(
            f"Agent exited with code {result.exit_code}"
            + (" after timing out" if result.timed_out else "")
        )
        return result

    async def _iteration_failed(self, iteration: int, result: AgentRunResult) -> None:
        self._consecutive_failures += 1
        delay = self._backoff_delay()
        if result.timed_out:
            detail = f"timed out after {self.config.loop.iteration_timeout_seconds:.0f}s"
        else:
            detail = f"exit code {result.exit_code}, no completion marker"
        self.log.write(f"Iteration {iteration} failed ({detail}); retrying in {delay:.1f}s")
        self._emit(
            {
                "event": "iteration_failed",
                "iteration": iteration,
                "exit_code": result.exit_code,
                "timed_out": result.timed_out,
                "delay_seconds": delay,
            }
        )
        if delay > 0:
            await asyncio.sleep(delay)

    def _compose(self, spec: Spec, task: Task, preamble: str) -> str:
        previous = self._retry_context.get(task.id)
        if previous and task.retry_count:
            return compose_retry_prompt(
                spec,
                task,
                previous,
                task.retry_count,
                preamble=preamble,
                max_output_chars=self.config.loop.retry_output_chars,
            )
        return compose_task_prompt(spec, task, preamble)

    async def _run_build(self) -> None:
        preamble = load_preamble("build", self.paths.prompt_override("build"))
        while True:
            if self._stop_requested():
                self._external_stop()
                return
            if self._cap_reached():
                self.log.write(f"Reached max iterations ({self.config.loop.max_iterations})")
                self._finish("completed", reason="max_iterations")
                return

            document = self.store.load()
            if document is None:
                raise StateError(
                    f"No implementation plan at {self.store.path}. Run 'specloop start plan'."
                )
            selection = next_pending_task(document)
            if selection is None:
                self.store.save(document, updated_by="build")
                self.log.write("No pending tasks remaining")
                self._finish("completed", reason="no pending tasks")
                return
            spec, task = selection

            iteration = self._next_iteration()
            mark_in_progress(document, spec.id, task.id)
            self.store.save(document, updated_by="build")
            self.log.write(f"Iteration {iteration}: task {task.id} [{spec.name}] {task.description}")
            self._emit(
                {
                    "event": "task_started",
                    "iteration": iteration,
                    "spec_id": spec.id,
                    "task_id": task.id,
                    "description": task.description,
                    "retry": task.id in self._retry_context,
                }
            )

            result = await self._run_agent(self._compose(spec, task, preamble), iteration)

            if self._stop_requested():
                self._external_stop()
                return

            if result.blocked_reason is not None:
                self._consecutive_failures = 0
                self._settle_blocked(spec.id, task.id, result.blocked_reason)
            elif result.done and not result.timed_out:
                self._consecutive_failures = 0
                await self._verify(spec.id, task.id)
            else:
                await self._iteration_failed(iteration, result)

    def _settle_blocked(self, spec_id: str, task_id: str, reason: str) -> None:
        document = self.store.require()
        mark_blocked(document, spec_id, task_id, reason)
        self.store.save(document, updated_by="build")
        self._retry_context.pop(task_id, None)
        self._summary.tasks_blocked += 1
        self.log.write(f"Task {task_id} blocked: {reason}")
        self._emit({"event": "task_blocked", "task_id": task_id, "reason": reason})

    async def _verify(self, spec_id: str, task_id: str) -> None:
        gates_config = self.config.quality_gates
        self.log.write(f"Task {task_id} reported done; running {len(self.gates)} quality gates")

        def _started(gate: QualityGate) -> None:
            self.log.write(f"Running quality gate: {gate.name} ({gate.command})")
            self._emit({"event": "gate_started", "task_id": task_id, "gate": gate.name})

        def _completed(gate_result: GateResult) -> None:
            self.log.write(format_gate_results([gate_result]))
            if not gate_result.passed and gate_result.output.strip():
                self.log.write(gate_result.output.strip())
            self._emit(
                {
                    "event": "gate_completed",
                    "task_id": task_id,
                    "gate": gate_result.name,
                    "passed": gate_result.passed,
                    "exit_code": gate_result.exit_code,
                }
            )

        results = await run_quality_gates(
            self.gates,
            self.paths.root,
            on_gate_start=_started,
            on_gate_complete=_completed,
            stop_on_required_failure=gates_config.stop_on_required_failure,
            timeout_seconds=gates_config.timeout_seconds,
            max_output_bytes=gates_config.max_output_bytes,
        )
        if results:
            self.log.write(gate_summary(results))

        document = self.store.require()
        if all_required_passed(results, self.gates):
            mark_completed(document, spec_id, task_id)
            self.store.save(document, updated_by="build")
            self._retry_context.pop(task_id, None)
            self._summary.tasks_completed += 1
            self.log.write(f"Task {task_id} completed")
            self._emit({"event": "task_completed", "task_id": task_id})
            return

        failures = [item for item in failed_gates(results) if item.required]
        retry_count = mark_failed(document, spec_id, task_id)
        self._summary.tasks_failed += 1
        max_retries = self.config.loop.max_task_retries
        if retry_count >= max_retries:
            names = ", ".join(item.name for item in failures) or "unknown"
            reason = (
                f"Exceeded maximum retries ({max_retries}) with failing quality gates: {names}"
            )
            mark_blocked(document, spec_id, task_id, reason)
            self.store.save(document, updated_by="build")
            self._retry_context.pop(task_id, None)
            self._summary.tasks_blocked += 1
            self.log.write(f"Task {task_id} blocked: {reason}")
            self._emit({"event": "task_blocked", "task_id": task_id, "reason": reason})
            return

        self.store.save(document, updated_by="build")
        self._retry_context[task_id] = failures
        self.log.write(
            f"Task {task_id} failed quality gates (attempt {retry_count}/{max_retries}); "
            "will retry with failure context"
        )
        self._emit(
            {
                "event": "task_failed",
                "task_id": task_id,
                "retry_count": retry_count,
                "gates": [item.name for item in failures],
            }
        )

    async def _run_plan(self) -> None:
        preamble = load_preamble("plan", self.paths.prompt_override("plan"))
        while True:
            if self._stop_requested():
                self._external_stop()
                return
            if self._cap_reached():
                self.log.write(f"Reached max iterations ({self.config.loop.max_iterations})")
                self._finish("completed", reason="max_iterations")
                return

            iteration = self._next_iteration()
            self.log.write(f"Iteration {iteration}: planning")
            self._emit({"event": "plan_iteration", "iteration": iteration})
            result = await self._run_agent(preamble, iteration)

            if self._stop_requested():
                self._external_stop()
                return
            if result.markers.plan_done:
                self._consecutive_failures = 0
                self.log.write("Planning complete")
                self._finish("completed", reason="plan complete")
                return
            if result.timed_out or result.exit_code != 0:
                await self._iteration_failed(iteration, result)
            else:
                self._consecutive_failures = 0

