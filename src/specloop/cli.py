from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from specloop import __version__
from specloop.agents import (
    AGENTS,
    AgentDefinition,
    AgentError,
    AgentNotInstalledError,
    AgentOptions,
    all_agents,
    get_agent,
)
from specloop.config import (
    CONFIG_FILENAME,
    ConfigNotFoundError,
    SpecloopConfig,
    load_config,
    require_config,
    save_config,
)
from specloop.lifecycle import SessionManager
from specloop.loop import BuildLoop, LoopSummary
from specloop.paths import ProjectPaths
from specloop.session_log import SessionLog
from specloop.state import (
    ImplementationStore,
    SessionConflictError,
    SessionStore,
    StateError,
)
from specloop.state.transitions import (
    find_task,
    implementation_progress,
    in_progress_tasks,
    reset_retries,
    reset_to_pending,
    spec_progress,
)

AGENT_CHOICE = click.Choice(sorted(AGENTS))
STATUS_ICONS = {
    "pending": "○",
    "in_progress": "◐",
    "completed": "●",
    "blocked": "✗",
    "failed": "!",
}


@dataclass(slots=True)
class Runtime:
    paths: ProjectPaths
    config_path: Path
    config: SpecloopConfig
    store: ImplementationStore
    sessions: SessionStore
    manager: SessionManager


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str, *, grace_period: float | None = None) -> Runtime:
    paths = ProjectPaths.for_root(Path.cwd())
    config_path = _resolve_config_path(paths.root, config_value)
    try:
        config = require_config(config_path)
    except ConfigNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    if not paths.state_dir.exists():
        raise click.ClickException(
            f"Project not initialized: {paths.state_dir} not found. Run 'specloop init' first."
        )
    sessions = SessionStore(paths)
    manager = SessionManager(
        paths,
        sessions,
        grace_period_seconds=(
            config.session.grace_period_seconds if grace_period is None else grace_period
        ),
    )
    return Runtime(
        paths=paths,
        config_path=config_path,
        config=config,
        store=ImplementationStore(paths),
        sessions=sessions,
        manager=manager,
    )


def _render_event(event: dict[str, Any], verbose: bool) -> None:
    kind = event.get("event")
    if kind == "agent_output":
        if verbose:
            click.echo(f"  │ {event['line']}")
        return
    if kind == "task_started":
        prefix = "↻ Retrying" if event.get("retry") else "▶ Starting"
        click.echo(f"{prefix} {event['task_id']}: {event['description']}")
    elif kind == "gate_started":
        click.echo(f"  ⋯ gate {event['gate']}")
    elif kind == "gate_completed":
        icon = "✓" if event["passed"] else "✗"
        click.echo(f"  {icon} gate {event['gate']} (exit {event['exit_code']})")
    elif kind == "task_completed":
        click.echo(f"✓ Completed {event['task_id']}")
    elif kind == "task_failed":
        click.echo(
            f"✗ {event['task_id']} failed gates {', '.join(event['gates'])} "
            f"(attempt {event['retry_count']})"
        )
    elif kind == "task_blocked":
        click.echo(f"✗ Blocked {event['task_id']}: {event['reason']}")
    elif kind == "iteration_failed":
        click.echo(
            f"! Iteration {event['iteration']} inconclusive (exit {event['exit_code']}); "
            f"retrying in {event['delay_seconds']:.1f}s"
        )
    elif kind == "plan_iteration":
        click.echo(f"▶ Planning iteration {event['iteration']}")
    elif kind == "session_finished":
        reason = f" ({event['reason']})" if event.get("reason") else ""
        click.echo(f"Session {event['status']}{reason}")


def _reset_interrupted_tasks(runtime: Runtime) -> list[str]:
    document = runtime.store.load()
    if document is None:
        return []
    reset: list[str] = []
    for spec, task in in_progress_tasks(document):
        reset_to_pending(document, spec.id, task.id)
        reset.append(task.id)
    if reset:
        runtime.store.save(document, updated_by="user")
    return reset


@click.group()
@click.version_option(__version__, prog_name="specloop")
def cli() -> None:
    """Run coding agents task by task against a spec-driven implementation plan."""


@cli.command("init")
@click.option("--agent", "agent_type", type=AGENT_CHOICE, default=None)
@click.option("--model", default=None)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing setup.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(agent_type: str | None, model: str | None, force: bool, config_value: str) -> None:
    paths = ProjectPaths.for_root(Path.cwd())
    config_path = _resolve_config_path(paths.root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(
            f"{config_path.name} already exists. Use --force to reinitialize."
        )
    config = load_config(config_path)
    config.project.name = paths.root.name
    if agent_type:
        config.project.agent = agent_type  # type: ignore[assignment]
    if model:
        config.project.model = model
    save_config(config_path, config)

    paths.ensure()
    store = ImplementationStore(paths)
    if force or not store.exists():
        store.create_empty()

    click.echo(f"Initialized specloop in {paths.root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.project.agent}")
    click.echo(f"Specs directory: {paths.specs_dir}")
    agent = get_agent(config.project.agent)
    if not agent.check_installed():
        click.echo(f"Warning: {agent.program} not found in PATH.\n\n{agent.install_instructions()}")


@cli.command("start")
@click.argument("mode", type=click.Choice(["plan", "build"]), default="build")
@click.option("-a", "--agent", "agent_type", type=AGENT_CHOICE, default=None)
@click.option("-m", "--model", default=None)
@click.option("-n", "--max-iterations", type=click.IntRange(min=0), default=None)
@click.option("-v", "--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def start_command(
    mode: str,
    agent_type: str | None,
    model: str | None,
    max_iterations: int | None,
    verbose: bool,
    config_value: str,
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    runtime = _load_runtime(config_value)
    config = runtime.config
    if max_iterations is not None:
        config.loop.max_iterations = max_iterations
    try:
        agent: AgentDefinition = get_agent(agent_type or config.project.agent)
    except AgentError as exc:
        raise click.ClickException(str(exc)) from exc
    if not agent.check_installed():
        error = AgentNotInstalledError(agent.type, agent.program, agent.install_instructions())
        raise click.ClickException(str(error))
    if mode == "build" and not runtime.store.exists():
        raise click.ClickException("No implementation plan found. Run 'specloop start plan' first.")

    model = model or config.project.model
    try:
        session = runtime.manager.start_session(mode, agent.type, model)  # type: ignore[arg-type]
    except (SessionConflictError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Session {session.id} started ({mode}, agent {agent.type})")
    click.echo(f"Log: {runtime.paths.session_log(session.id)}")
    loop = BuildLoop(
        runtime.paths,
        config,
        agent,
        session,
        store=runtime.store,
        sessions=runtime.sessions,
        options=AgentOptions(model=model, verbose=verbose),
        event_hook=lambda event: _render_event(event, verbose),
        install_signal_handlers=True,
    )
    try:
        summary: LoopSummary = asyncio.run(loop.run())
    except (StateError, AgentError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Session {summary.session_id} {summary.status} after {summary.iterations} iterations"
    )
    if mode == "build":
        click.echo(
            f"Tasks: {summary.tasks_completed} completed, {summary.tasks_blocked} blocked, "
            f"{summary.tasks_failed} failed attempts"
        )


@cli.command("stop")
@click.option("--force", is_flag=True, default=False, help="Send SIGKILL without asking.")
@click.option("--yes", is_flag=True, default=False, help="Confirm force kill automatically.")
@click.option("--grace-period", type=float, default=None, help="Seconds to wait after SIGTERM.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def stop_command(force: bool, yes: bool, grace_period: float | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, grace_period=grace_period)
    manager = runtime.manager
    try:
        session = manager.running_session()
        if session is None:
            click.echo("No running session.")
            return
        click.echo(f"Stopping session {session.id}...")
        outcome = asyncio.run(manager.request_stop(session.id))
        if not outcome.stopped:
            click.echo(
                f"Process {outcome.pid} did not exit within "
                f"{manager.grace_period_seconds:.0f}s of SIGTERM."
            )
            if not (force or yes or click.confirm("Force kill it with SIGKILL?", default=False)):
                click.echo("Process left running. Re-run 'specloop stop --force' to kill it.")
                return
            outcome = asyncio.run(manager.force_kill(session.id))
        reset = _reset_interrupted_tasks(runtime)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Session {outcome.session.id} stopped ({outcome.path}).")
    for task_id in reset:
        click.echo(f"Reset interrupted task {task_id} to pending.")


def _print_status(runtime: Runtime) -> None:
    config = runtime.config
    click.echo(f"Project: {config.project.name}")
    model = f" ({config.project.model})" if config.project.model else ""
    click.echo(f"Agent: {config.project.agent}{model}")

    document = runtime.store.load()
    if document is None or not document.specs:
        click.echo("\nNo implementation plan yet. Run 'specloop start plan'.")
    else:
        overall = implementation_progress(document)
        click.echo(
            f"\nProgress: {overall.completed}/{overall.total} tasks ({overall.percentage}%)"
        )
        for spec in sorted(document.specs, key=lambda item: item.priority):
            progress = spec_progress(spec)
            click.echo(
                f"  {STATUS_ICONS.get(spec.status, '?')} {spec.name} "
                f"[{progress.completed}/{progress.total}]"
            )
            for task in spec.tasks:
                if task.status in {"in_progress", "blocked", "failed"}:
                    detail = f": {task.blocked_reason}" if task.blocked_reason else ""
                    click.echo(f"      {STATUS_ICONS[task.status]} {task.id}{detail}")

    sessions = runtime.sessions.list_sessions()[:5]
    click.echo("\nRecent sessions:")
    if not sessions:
        click.echo("  none")
    for item in sessions:
        pid = f" pid {item.process_id}" if item.process_id else ""
        click.echo(
            f"  {item.id} {item.mode:<5} {item.status:<9} iter {item.iteration} "
            f"{item.agent_type} {item.started_at}{pid}"
        )


@cli.command("status")
@click.option("--watch", is_flag=True, default=False, help="Poll the running session.")
@click.option("--interval", type=float, default=None, help="Polling interval in seconds.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(watch: bool, interval: float | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        runtime.manager.running_session()
        _print_status(runtime)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not watch:
        return

    async def _watch() -> None:
        poll = interval or runtime.config.session.poll_interval_seconds
        async for snapshot in runtime.manager.watch(poll):
            session = snapshot.session
            if session is None:
                click.echo("No sessions yet.")
                return
            state = "alive" if snapshot.process_alive else "idle"
            click.echo(
                f"[{time.strftime('%H:%M:%S')}] {session.id} {session.status} "
                f"iteration {session.iteration} process {state}"
            )
            if not session.is_running:
                return

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        click.echo("")


@cli.command("logs")
@click.option("-s", "--session-id", default=None)
@click.option("-n", "--lines", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("-f", "--follow", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def logs_command(session_id: str | None, lines: int, follow: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if session_id is None:
        latest = runtime.sessions.latest()
        if latest is None:
            raise click.ClickException("No sessions found.")
        session_id = latest.id
    log_path = runtime.paths.session_log(session_id)
    if not log_path.exists():
        raise click.ClickException(f"No log for session {session_id}.")
    for line in SessionLog(log_path).tail(lines):
        click.echo(line)
    if not follow:
        return
    try:
        with log_path.open(encoding="utf-8", errors="replace") as handle:
            handle.seek(0, 2)
            while True:
                line = handle.readline()
                if line:
                    click.echo(line.rstrip("\n"))
                    continue
                time.sleep(0.5)
    except KeyboardInterrupt:
        return


@cli.command("agents")
def agents_command() -> None:
    for agent in all_agents():
        state = "installed" if agent.check_installed() else "not installed"
        click.echo(f"{agent.type:<9} {agent.name:<14} {agent.program:<9} {state}")


@cli.command("reset")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def reset_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        if runtime.manager.running_session() is not None:
            raise click.ClickException("Stop the running session before resetting tasks.")
        document = runtime.store.require()
        found = find_task(document, task_id)
        if found is None:
            raise click.ClickException(f"Task not found: {task_id}")
        spec, task = found
        previous = task.status
        reset_to_pending(document, spec.id, task.id)
        reset_retries(document, spec.id, task.id)
        runtime.store.save(document, updated_by="user")
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} reset from {previous} to pending.")
