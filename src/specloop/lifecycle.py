from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal

from specloop import processes
from specloop.paths import ProjectPaths
from specloop.session_log import SessionLog
from specloop.state.models import StateError, utcnow_iso
from specloop.state.sessions import (
    Session,
    SessionConflictError,
    SessionMode,
    SessionStore,
)

logger = logging.getLogger(__name__)

StopPath = Literal["graceful", "forced", "already_exited"]

STOP_MESSAGES: dict[str, str] = {
    "graceful": "Task stopped by user (SIGTERM)",
    "forced": "Task force-killed by user (SIGKILL)",
    "already_exited": "Process already exited",
}


@dataclass(slots=True)
class StopOutcome:
    state: Literal["stopped", "still_alive"]
    session: Session
    pid: int | None = None
    path: StopPath | None = None

    @property
    def stopped(self) -> bool:
        return self.state == "stopped"


@dataclass(slots=True)
class SessionSnapshot:
    session: Session | None
    process_alive: bool


class SessionManager:
    """Start, stop and force-kill sessions through their persisted records."""

    def __init__(
        self,
        paths: ProjectPaths,
        sessions: SessionStore | None = None,
        *,
        grace_period_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.paths = paths
        self.sessions = sessions or SessionStore(paths)
        self.grace_period_seconds = grace_period_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def log_for(self, session_id: str) -> SessionLog:
        return SessionLog(self.paths.session_log(session_id))

    @staticmethod
    def _target_pid(session: Session) -> int | None:
        for pid in (session.process_id, session.controller_pid):
            if pid and pid != os.getpid():
                return pid
        return None

    def _reconcile_stale(self, session: Session) -> Session | None:
        """A running record whose controller died can never be stopped by it."""
        if session.controller_pid is None or processes.is_process_alive(session.controller_pid):
            return session
        logger.warning(
            "Session %s lost its controller (pid %s); marking stopped",
            session.id,
            session.controller_pid,
        )

        def _mark(item: Session) -> Session:
            if item.status == "running":
                item.status = "stopped"
                item.stopped_at = utcnow_iso()
                item.stop_reason = "stale"
                item.process_id = None
            return item

        self.sessions.update(session.id, _mark)
        self.log_for(session.id).write("Session marked stopped: controller process is gone")
        return None

    def running_session(self) -> Session | None:
        for session in self.sessions.running():
            live = self._reconcile_stale(session)
            if live is not None:
                return live
        return None

    def ensure_no_running_session(self) -> None:
        session = self.running_session()
        if session is not None:
            raise SessionConflictError(session)

    def start_session(
        self, mode: SessionMode, agent_type: str, model: str | None = None
    ) -> Session:
        self.ensure_no_running_session()
        session = self.sessions.create(
            mode, agent_type, model=model, controller_pid=os.getpid()
        )
        self.log_for(session.id).write(
            f"Session {session.id} started: mode={mode} agent={agent_type}"
            + (f" model={model}" if model else "")
        )
        return session

    def _complete_stop(self, session_id: str, path: StopPath) -> Session:
        def _mark(item: Session) -> Session:
            if item.status == "running":
                item.status = "stopped"
                item.stopped_at = utcnow_iso()
            item.stop_reason = item.stop_reason or ("forced" if path == "forced" else "user")
            item.process_id = None
            return item

        session = self.sessions.update(session_id, _mark)
        self.log_for(session_id).write(STOP_MESSAGES[path])
        return session

    async def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            if not processes.is_process_alive(pid):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    def _require(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise StateError(f"Unknown session: {session_id}")
        return session

    async def request_stop(self, session_id: str) -> StopOutcome:
        """SIGTERM the session's process and wait up to the grace period.

        Returns ``still_alive`` without escalating when the process outlives
        the grace period; the caller decides whether to ``force_kill``.
        """

        def _flag(item: Session) -> Session:
            item.stop_requested_at = item.stop_requested_at or utcnow_iso()
            return item

        session = self.sessions.update(session_id, _flag)
        pid = self._target_pid(session)
        if pid is None or not processes.is_process_alive(pid):
            return StopOutcome(
                "stopped", self._complete_stop(session_id, "already_exited"), pid, "already_exited"
            )

        self.log_for(session_id).write(f"Sending SIGTERM to process {pid}...")
        if not processes.terminate(pid):
            return StopOutcome(
                "stopped", self._complete_stop(session_id, "already_exited"), pid, "already_exited"
            )

        if await self._wait_for_exit(pid, self.grace_period_seconds):
            return StopOutcome("stopped", self._complete_stop(session_id, "graceful"), pid, "graceful")

        self.log_for(session_id).write(
            f"Process {pid} still running after {self.grace_period_seconds:.0f}s grace period"
        )
        return StopOutcome("still_alive", self._require(session_id), pid)

    async def force_kill(self, session_id: str) -> StopOutcome:
        pid = self._target_pid(self._require(session_id))
        if pid is not None:
            if processes.kill(pid):
                self.log_for(session_id).write(f"Sent SIGKILL to process {pid}")
            await self._wait_for_exit(pid, 1.0)
        return StopOutcome("stopped", self._complete_stop(session_id, "forced"), pid, "forced")

    async def watch(
        self, interval: float, *, iterations: int | None = None
    ) -> AsyncIterator[SessionSnapshot]:
        """Poll the latest session for display; never feeds back into orchestration."""
        count = 0
        while iterations is None or count < iterations:
            try:
                session = self.sessions.latest()
            except StateError as exc:
                logger.debug("Session poll failed: %s", exc)
                session = None
            pid = self._target_pid(session) if session and session.is_running else None
            alive = pid is not None and processes.is_process_alive(pid)
            yield SessionSnapshot(session=session, process_alive=alive)
            count += 1
            if iterations is not None and count >= iterations:
                break
            await asyncio.sleep(interval)

