"""Task and spec state transitions over an in-memory implementation document.

Every helper is total: an unknown spec or task id leaves the document
untouched. Callers persist the document afterwards through
``ImplementationStore.save``.
"""

from __future__ import annotations

from dataclasses import dataclass

from specloop.state.models import ImplementationDocument, Spec, Status, Task, utcnow_iso

# Statuses the loop may (re)dispatch. in_progress covers a run interrupted by a
# crash, failed covers a task waiting for its retry attempt.
RESUMABLE_STATUSES: tuple[Status, ...] = ("in_progress", "failed", "pending")


@dataclass(slots=True)
class Progress:
    completed: int
    total: int

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 0
        return round(self.completed * 100 / self.total)


def find_spec(document: ImplementationDocument, spec_id: str) -> Spec | None:
    for spec in document.specs:
        if spec.id == spec_id:
            return spec
    return None


def find_task(document: ImplementationDocument, task_id: str) -> tuple[Spec, Task] | None:
    for spec in document.specs:
        for task in spec.tasks:
            if task.id == task_id:
                return spec, task
    return None


def _lookup(document: ImplementationDocument, spec_id: str, task_id: str) -> Task | None:
    spec = find_spec(document, spec_id)
    if spec is None:
        return None
    for task in spec.tasks:
        if task.id == task_id:
            return task
    return None


def _set_status(task: Task, status: Status, *, reason: str | None = None) -> None:
    if status == "completed":
        if task.status != "completed" or task.completed_at is None:
            task.completed_at = utcnow_iso()
    else:
        task.completed_at = None
    task.blocked_reason = reason if status == "blocked" else None
    task.status = status


def active_spec(document: ImplementationDocument) -> Spec | None:
    for spec in document.specs:
        if spec.status == "in_progress":
            return spec
    return None


def active_spec_id(document: ImplementationDocument) -> str | None:
    spec = active_spec(document)
    return spec.id if spec else None


def _promote_next_spec(document: ImplementationDocument) -> Spec | None:
    pending = [spec for spec in document.specs if spec.status == "pending"]
    if not pending:
        return None
    # min() keeps the first of equal priorities, so ties follow document order.
    spec = min(pending, key=lambda item: item.priority)
    spec.status = "in_progress"
    return spec


def next_pending_task(document: ImplementationDocument) -> tuple[Spec, Task] | None:
    """Return the next task to dispatch, promoting or completing specs as needed."""
    while True:
        spec = active_spec(document) or _promote_next_spec(document)
        if spec is None:
            return None
        for status in RESUMABLE_STATUSES:
            for task in spec.tasks:
                if task.status == status:
                    return spec, task
        if all(task.status == "completed" for task in spec.tasks):
            spec.status = "completed"
            continue
        # Only blocked work is left; park the spec so the remaining specs can run.
        spec.status = "blocked"


def _check_spec_completion(document: ImplementationDocument, spec_id: str) -> None:
    spec = find_spec(document, spec_id)
    if spec is None or not spec.tasks:
        return
    if all(task.status == "completed" for task in spec.tasks):
        spec.status = "completed"


def mark_in_progress(document: ImplementationDocument, spec_id: str, task_id: str) -> None:
    task = _lookup(document, spec_id, task_id)
    if task is None:
        return
    _set_status(task, "in_progress")
    spec = find_spec(document, spec_id)
    if spec is not None and spec.status == "pending" and active_spec(document) is None:
        spec.status = "in_progress"


def mark_completed(document: ImplementationDocument, spec_id: str, task_id: str) -> None:
    task = _lookup(document, spec_id, task_id)
    if task is None:
        return
    _set_status(task, "completed")
    _check_spec_completion(document, spec_id)


def mark_blocked(
    document: ImplementationDocument, spec_id: str, task_id: str, reason: str
) -> None:
    task = _lookup(document, spec_id, task_id)
    if task is None:
        return
    _set_status(task, "blocked", reason=reason)


def mark_failed(document: ImplementationDocument, spec_id: str, task_id: str) -> int:
    """Mark a failed attempt and return the task's updated retry count."""
    task = _lookup(document, spec_id, task_id)
    if task is None:
        return 0
    _set_status(task, "failed")
    task.retry_count = (task.retry_count or 0) + 1
    return task.retry_count


def reset_to_pending(document: ImplementationDocument, spec_id: str, task_id: str) -> None:
    task = _lookup(document, spec_id, task_id)
    if task is None:
        return
    _set_status(task, "pending")
    spec = find_spec(document, spec_id)
    if spec is not None and spec.status in {"completed", "blocked"}:
        spec.status = "in_progress" if active_spec(document) is None else "pending"


def reset_retries(document: ImplementationDocument, spec_id: str, task_id: str) -> None:
    task = _lookup(document, spec_id, task_id)
    if task is not None:
        task.retry_count = None


def in_progress_tasks(document: ImplementationDocument) -> list[tuple[Spec, Task]]:
    return [
        (spec, task)
        for spec in document.specs
        for task in spec.tasks
        if task.status == "in_progress"
    ]


def completed_tasks(spec: Spec) -> list[Task]:
    return [task for task in spec.tasks if task.status == "completed"]


def spec_progress(spec: Spec) -> Progress:
    return Progress(completed=len(completed_tasks(spec)), total=len(spec.tasks))


def implementation_progress(document: ImplementationDocument) -> Progress:
    completed = 0
    total = 0
    for spec in document.specs:
        progress = spec_progress(spec)
        completed += progress.completed
        total += progress.total
    return Progress(completed=completed, total=total)

