from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Literal

from specloop.paths import ProjectPaths
from specloop.state.models import SCHEMA_VERSION, StateError, utcnow_iso
from specloop.state.store import read_json, state_lock, write_json_atomic

logger = logging.getLogger(__name__)

SessionMode = Literal["plan", "build"]
SessionStatus = Literal["running", "stopped", "completed"]

_FIELDS: dict[str, str] = {
    "id": "id",
    "mode": "mode",
    "status": "status",
    "iteration": "iteration",
    "started_at": "startedAt",
    "stopped_at": "stoppedAt",
    "agent_type": "agentType",
    "model": "model",
    "process_id": "processId",
    "controller_pid": "controllerPid",
    "stop_requested_at": "stopRequestedAt",
    "stop_reason": "stopReason",
}


class SessionConflictError(RuntimeError):
    """Raised when a second loop would start while one is already running."""

    def __init__(self, session: Session) -> None:
        super().__init__(
            f"Session {session.id} is already running ({session.mode}, pid "
            f"{session.controller_pid}). Stop it first with 'specloop stop'."
        )
        self.session = session


def new_session_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass(slots=True)
class Session:
    id: str
    mode: SessionMode
    agent_type: str
    status: SessionStatus = "running"
    iteration: int = 0
    started_at: str = ""
    stopped_at: str | None = None
    model: str | None = None
    process_id: int | None = None
    controller_pid: int | None = None
    stop_requested_at: str | None = None
    stop_reason: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def stop_requested(self) -> bool:
        return self.stop_requested_at is not None or self.status != "running"

    @classmethod
    def from_dict(cls, payload: Any) -> Session:
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
            raise StateError("session entry must be an object with an id")
        values = {attr: payload.get(key) for attr, key in _FIELDS.items() if key in payload}
        values.setdefault("mode", "build")
        values.setdefault("agent_type", "claude")
        values.setdefault("started_at", "")
        if values.get("iteration") is None:
            values["iteration"] = 0
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for attr, key in _FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                payload[key] = value
        return payload


class SessionStore:
    """Session records for one project, kept in ``sessions.json``."""

    def __init__(self, paths: ProjectPaths) -> None:
        self.paths = paths
        self.path = paths.sessions_file
        self.lock_file = self.path.with_name(self.path.name + ".lock")

    def _read(self) -> dict[str, Session]:
        payload = read_json(self.path)
        if payload is None:
            return {}
        if not isinstance(payload, dict) or not isinstance(payload.get("sessions", {}), dict):
            raise StateError(f"Corrupt session file {self.path}")
        return {
            session_id: Session.from_dict(item)
            for session_id, item in payload.get("sessions", {}).items()
        }

    def _write(self, sessions: dict[str, Session]) -> None:
        write_json_atomic(
            self.path,
            {
                "schemaVersion": SCHEMA_VERSION,
                "updatedAt": utcnow_iso(),
                "sessions": {session_id: item.to_dict() for session_id, item in sessions.items()},
            },
        )

    def get(self, session_id: str) -> Session | None:
        return self._read().get(session_id)

    def list_sessions(self) -> list[Session]:
        return sorted(self._read().values(), key=lambda item: item.started_at, reverse=True)

    def running(self) -> list[Session]:
        return [item for item in self.list_sessions() if item.is_running]

    def latest(self) -> Session | None:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None

    def save(self, session: Session) -> Session:
        with state_lock(self.lock_file):
            sessions = self._read()
            sessions[session.id] = session
            self._write(sessions)
        return session

    def update(self, session_id: str, updater: Callable[[Session], Session | None]) -> Session:
        """Apply ``updater`` to the stored record under the lock; persist only a change."""
        with state_lock(self.lock_file):
            sessions = self._read()
            current = sessions.get(session_id)
            if current is None:
                raise StateError(f"Unknown session: {session_id}")
            working = replace(current)
            updated = updater(working) or working
            if updated != current:
                sessions[session_id] = updated
                self._write(sessions)
        return updated

    def create(
        self,
        mode: SessionMode,
        agent_type: str,
        *,
        model: str | None = None,
        controller_pid: int | None = None,
    ) -> Session:
        session = Session(
            id=new_session_id(),
            mode=mode,
            agent_type=agent_type,
            status="running",
            started_at=utcnow_iso(),
            model=model,
            controller_pid=controller_pid,
        )
        logger.debug("Created %s session %s", mode, session.id)
        return self.save(session)
