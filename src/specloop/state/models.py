from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Status = Literal["pending", "in_progress", "completed", "blocked", "failed"]
UpdatedBy = Literal["plan", "build", "user"]

STATUSES: frozenset[str] = frozenset({"pending", "in_progress", "completed", "blocked", "failed"})
SCHEMA_VERSION = 1
_DOCUMENT_KEYS = frozenset({"schemaVersion", "updatedAt", "updatedBy", "specs"})


class StateError(RuntimeError):
    """Raised when persisted state is unreadable, malformed or locked."""


def utcnow_iso() -> str:
    # Microsecond precision keeps back-to-back completions distinguishable.
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _require(payload: dict[str, Any], key: str, kind: type, where: str) -> Any:
    value = payload.get(key)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise StateError(f"{where}: field '{key}' must be {kind.__name__}")
    return value


def _status(payload: dict[str, Any], where: str) -> Status:
    value = payload.get("status", "pending")
    if value not in STATUSES:
        raise StateError(f"{where}: unknown status {value!r}")
    return value


def _string_list(payload: dict[str, Any], key: str, where: str) -> list[str] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise StateError(f"{where}: field '{key}' must be a list of strings")
    return list(value)


@dataclass(slots=True)
class Task:
    id: str
    description: str
    status: Status = "pending"
    acceptance_criteria: list[str] | None = None
    blocked_reason: str | None = None
    retry_count: int | None = None
    completed_at: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> Task:
        if not isinstance(payload, dict):
            raise StateError("task entry must be an object")
        task_id = _require(payload, "id", str, "task")
        where = f"task {task_id}"
        retry_count = payload.get("retryCount")
        if retry_count is not None and (
            not isinstance(retry_count, int) or isinstance(retry_count, bool)
        ):
            raise StateError(f"{where}: field 'retryCount' must be int")
        return cls(
            id=task_id,
            description=_require(payload, "description", str, where),
            status=_status(payload, where),
            acceptance_criteria=_string_list(payload, "acceptanceCriteria", where),
            blocked_reason=payload.get("blockedReason"),
            retry_count=retry_count,
            completed_at=payload.get("completedAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "status": self.status,
        }
        if self.acceptance_criteria is not None:
            payload["acceptanceCriteria"] = list(self.acceptance_criteria)
        if self.blocked_reason is not None:
            payload["blockedReason"] = self.blocked_reason
        if self.retry_count is not None:
            payload["retryCount"] = self.retry_count
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at
        return payload


@dataclass(slots=True)
class Spec:
    id: str
    file: str
    name: str
    priority: int = 0
    status: Status = "pending"
    context: str | None = None
    tasks: list[Task] = field(default_factory=list)
    acceptance_criteria: list[str] | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> Spec:
        if not isinstance(payload, dict):
            raise StateError("spec entry must be an object")
        spec_id = _require(payload, "id", str, "spec")
        where = f"spec {spec_id}"
        tasks = payload.get("tasks", [])
        if not isinstance(tasks, list):
            raise StateError(f"{where}: field 'tasks' must be a list")
        return cls(
            id=spec_id,
            file=str(payload.get("file", "")),
            name=str(payload.get("name", spec_id)),
            priority=_require(payload, "priority", int, where)
            if "priority" in payload
            else 0,
            status=_status(payload, where),
            context=payload.get("context"),
            tasks=[Task.from_dict(item) for item in tasks],
            acceptance_criteria=_string_list(payload, "acceptanceCriteria", where),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "file": self.file,
            "name": self.name,
            "priority": self.priority,
            "status": self.status,
        }
        if self.context is not None:
            payload["context"] = self.context
        payload["tasks"] = [task.to_dict() for task in self.tasks]
        if self.acceptance_criteria is not None:
            payload["acceptanceCriteria"] = list(self.acceptance_criteria)
        return payload


@dataclass(slots=True)
class ImplementationDocument:
    schema_version: int = SCHEMA_VERSION
    updated_at: str = field(default_factory=utcnow_iso)
    updated_by: UpdatedBy = "user"
    specs: list[Spec] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> ImplementationDocument:
        if not isinstance(payload, dict):
            raise StateError("implementation document must be a JSON object")
        specs = payload.get("specs", [])
        if not isinstance(specs, list):
            raise StateError("implementation document: field 'specs' must be a list")
        updated_by = payload.get("updatedBy", "user")
        if updated_by not in {"plan", "build", "user"}:
            raise StateError(f"implementation document: unknown updatedBy {updated_by!r}")
        schema_version = payload.get("schemaVersion", SCHEMA_VERSION)
        if not isinstance(schema_version, int) or schema_version > SCHEMA_VERSION:
            raise StateError(f"implementation document: unsupported schema {schema_version!r}")
        return cls(
            schema_version=schema_version,
            updated_at=str(payload.get("updatedAt") or utcnow_iso()),
            updated_by=updated_by,
            specs=[Spec.from_dict(item) for item in specs],
            extra={key: value for key, value in payload.items() if key not in _DOCUMENT_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "updatedAt": self.updated_at,
            "updatedBy": self.updated_by,
        }
        payload.update(self.extra)
        payload["specs"] = [spec.to_dict() for spec in self.specs]
        return payload
