import asyncio
import os
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from specloop.lifecycle import SessionManager
from specloop.paths import ProjectPaths
from specloop.state import SessionConflictError
from specloop.state.sessions import Session, SessionStore

SLEEPER = "import time\nprint('ready', flush=True)\ntime.sleep(30)\n"
STUBBORN = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


def _spawn(code: str) -> subprocess.Popen[str]:
    proc = subprocess.Popen(
        [sys.executable, "-c", code],
        stdout=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    assert proc.stdout is not None
    assert proc.stdout.readline().strip() == "ready"
    # Reap promptly so a terminated child does not linger as a zombie.
    threading.Thread(target=proc.wait, daemon=True).start()
    return proc


def _manager(tmp_path: Path, grace: float = 2.0) -> tuple[SessionManager, SessionStore]:
    paths = ProjectPaths.for_root(tmp_path)
    paths.ensure()
    sessions = SessionStore(paths)
    return (
        SessionManager(paths, sessions, grace_period_seconds=grace, poll_interval_seconds=0.05),
        sessions,
    )


def _running_session(sessions: SessionStore, process_id: int | None) -> Session:
    session = sessions.create("build", "claude")

    def _attach(item: Session) -> Session:
        item.process_id = process_id
        return item

    return sessions.update(session.id, _attach)


def _log(manager: SessionManager, session: Session) -> str:
    return manager.paths.session_log(session.id).read_text(encoding="utf-8")


def test_graceful_stop_terminates_process(tmp_path: Path) -> None:
    manager, sessions = _manager(tmp_path)
    proc = _spawn(SLEEPER)
    session = _running_session(sessions, proc.pid)

    outcome = asyncio.run(manager.request_stop(session.id))
    stored = sessions.get(session.id)

    assert outcome.stopped is True
    assert outcome.path == "graceful"
    assert proc.wait(timeout=5) != 0
    assert stored.status == "stopped"
    assert stored.stopped_at is not None
    assert stored.stop_requested_at is not None
    assert stored.process_id is None
    log = _log(manager, session)
    assert f"Sending SIGTERM to process {proc.pid}..." in log
    assert "Task stopped by user (SIGTERM)" in log


def test_sigterm_ignoring_process_needs_force_kill(tmp_path: Path) -> None:
    manager, sessions = _manager(tmp_path, grace=0.3)
    proc = _spawn(STUBBORN)
    session = _running_session(sessions, proc.pid)

    outcome = asyncio.run(manager.request_stop(session.id))

    assert outcome.state == "still_alive"
    assert outcome.pid == proc.pid
    assert proc.poll() is None
    assert sessions.get(session.id).status == "running"

    killed = asyncio.run(manager.force_kill(session.id))

    assert killed.stopped is True
    assert killed.path == "forced"
    assert proc.wait(timeout=5) == -9
    assert sessions.get(session.id).status == "stopped"
    assert "Task force-killed by user (SIGKILL)" in _log(manager, session)


def test_stop_of_already_exited_process_is_success(tmp_path: Path) -> None:
    manager, sessions = _manager(tmp_path)
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    session = _running_session(sessions, proc.pid)

    outcome = asyncio.run(manager.request_stop(session.id))

    assert outcome.stopped is True
    assert outcome.path == "already_exited"
    assert sessions.get(session.id).status == "stopped"
    assert "Process already exited" in _log(manager, session)


def test_stale_session_is_reconciled(tmp_path: Path) -> None:
    manager, sessions = _manager(tmp_path)
    dead = subprocess.Popen([sys.executable, "-c", "pass"])
    dead.wait()
    stale = sessions.create("build", "claude", controller_pid=dead.pid)

    assert manager.running_session() is None
    record = sessions.get(stale.id)
    assert record.status == "stopped"
    assert record.stop_reason == "stale"


def test_second_session_is_rejected_while_one_runs(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    first = manager.start_session("build", "claude", "sonnet")

    assert first.controller_pid == os.getpid()
    with pytest.raises(SessionConflictError) as excinfo:
        manager.start_session("build", "codex")
    assert excinfo.value.session.id == first.id


def test_watch_yields_snapshots(tmp_path: Path) -> None:
    manager, sessions = _manager(tmp_path)
    proc = _spawn(SLEEPER)
    _running_session(sessions, proc.pid)

    async def _collect() -> list[bool]:
        return [snapshot.process_alive async for snapshot in manager.watch(0.01, iterations=2)]

    try:
        assert asyncio.run(_collect()) == [True, True]
    finally:
        proc.kill()
        proc.wait(timeout=5)
