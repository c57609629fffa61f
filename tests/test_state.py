import json
import os
from pathlib import Path

import pytest

from specloop.paths import ProjectPaths
from specloop.state import ImplementationDocument, ImplementationStore, Spec, StateError, Task
from specloop.state.sessions import Session, SessionStore
from specloop.state.store import state_lock
from specloop.state.transitions import (
    active_spec_id,
    completed_tasks,
    find_task,
    implementation_progress,
    mark_blocked,
    mark_completed,
    mark_failed,
    mark_in_progress,
    next_pending_task,
    reset_to_pending,
    spec_progress,
)


def _document() -> ImplementationDocument:
    return ImplementationDocument(
        specs=[
            Spec(
                id="payments",
                file=".specloop/specs/payments.md",
                name="Payments",
                priority=2,
                tasks=[
                    Task(id="payments-1", description="Add Stripe client"),
                    Task(id="payments-2", description="Charge endpoint"),
                ],
            ),
            Spec(
                id="auth",
                file=".specloop/specs/auth.md",
                name="Auth",
                priority=1,
                context="See src/auth/",
                tasks=[
                    Task(id="auth-1", description="Login form", acceptance_criteria=["renders"]),
                    Task(id="auth-2", description="Session cookie"),
                ],
            ),
        ]
    )


def test_next_pending_task_promotes_lowest_priority_spec() -> None:
    document = _document()

    spec, task = next_pending_task(document)

    assert (spec.id, task.id) == ("auth", "auth-1")
    assert active_spec_id(document) == "auth"
    assert [item.status for item in document.specs] == ["pending", "in_progress"]


def test_at_most_one_spec_is_active_across_transitions() -> None:
    document = _document()
    for _ in range(4):
        selection = next_pending_task(document)
        assert selection is not None
        spec, task = selection
        mark_in_progress(document, spec.id, task.id)
        assert sum(1 for item in document.specs if item.status == "in_progress") <= 1
        mark_completed(document, spec.id, task.id)
        assert sum(1 for item in document.specs if item.status == "in_progress") <= 1

    assert next_pending_task(document) is None
    assert all(item.status == "completed" for item in document.specs)


def test_spec_completes_only_when_every_task_completes() -> None:
    document = _document()
    spec, task = next_pending_task(document)
    mark_completed(document, spec.id, task.id)

    assert spec.status == "in_progress"
    mark_completed(document, spec.id, "auth-2")
    assert spec.status == "completed"


def test_completed_at_is_stamped_once_and_cleared_on_reset() -> None:
    document = _document()
    spec, task = next_pending_task(document)
    mark_in_progress(document, spec.id, task.id)
    assert task.completed_at is None

    mark_completed(document, spec.id, task.id)
    stamped = task.completed_at
    assert stamped is not None
    mark_completed(document, spec.id, task.id)
    assert task.completed_at == stamped

    reset_to_pending(document, spec.id, task.id)
    assert task.status == "pending"
    assert task.completed_at is None


def test_blocked_reason_only_while_blocked() -> None:
    document = _document()
    spec, task = next_pending_task(document)

    mark_blocked(document, spec.id, task.id, 'needs "OAuth" creds · ask ops')
    assert task.status == "blocked"
    assert task.blocked_reason == 'needs "OAuth" creds · ask ops'
    assert task.completed_at is None

    mark_in_progress(document, spec.id, task.id)
    assert task.blocked_reason is None


def test_mark_failed_increments_retry_count_and_task_is_picked_again() -> None:
    document = _document()
    spec, task = next_pending_task(document)
    mark_in_progress(document, spec.id, task.id)

    assert mark_failed(document, spec.id, task.id) == 1
    assert mark_failed(document, spec.id, task.id) == 2
    assert task.status == "failed"
    assert next_pending_task(document) == (spec, task)


def test_unknown_ids_are_no_ops() -> None:
    document = _document()
    before = document.to_dict()

    mark_completed(document, "auth", "auth-99")
    mark_blocked(document, "nope", "auth-1", "x")
    assert mark_failed(document, "auth", "missing") == 0
    reset_to_pending(document, "ghost", "ghost-1")

    assert document.to_dict() == before


def test_blocked_tasks_park_their_spec() -> None:
    document = _document()
    spec, task = next_pending_task(document)
    mark_blocked(document, spec.id, "auth-1", "missing API key")
    mark_completed(document, spec.id, "auth-2")

    nxt_spec, nxt_task = next_pending_task(document)

    assert spec.status == "blocked"
    assert (nxt_spec.id, nxt_task.id) == ("payments", "payments-1")
    reset_to_pending(document, spec.id, "auth-1")
    assert spec.status == "pending"


def test_progress_helpers() -> None:
    document = _document()
    spec, task = next_pending_task(document)
    mark_completed(document, spec.id, task.id)

    assert [item.id for item in completed_tasks(spec)] == ["auth-1"]
    assert spec_progress(spec).percentage == 50
    overall = implementation_progress(document)
    assert (overall.completed, overall.total, overall.percentage) == (1, 4, 25)
    assert find_task(document, "payments-2")[1].description == "Charge endpoint"


def test_store_roundtrip_and_atomic_save(tmp_path: Path) -> None:
    paths = ProjectPaths.for_root(tmp_path)
    store = ImplementationStore(paths)
    assert store.load() is None

    document = _document()
    document.extra["notes"] = {"planner": "v2"}
    store.save(document, updated_by="plan")
    raw = json.loads(paths.implementation_file.read_text(encoding="utf-8"))
    loaded = store.load()

    assert raw["updatedBy"] == "plan"
    assert raw["specs"][1]["tasks"][0]["acceptanceCriteria"] == ["renders"]
    assert "completedAt" not in raw["specs"][1]["tasks"][0]
    assert loaded.to_dict() == raw
    assert loaded.extra == {"notes": {"planner": "v2"}}
    assert [item.name for item in paths.state_dir.iterdir() if item.suffix == ".tmp"] == []


def test_store_corruption_is_fatal(tmp_path: Path) -> None:
    paths = ProjectPaths.for_root(tmp_path)
    paths.ensure()
    paths.implementation_file.write_text("{not json", encoding="utf-8")

    with pytest.raises(StateError):
        ImplementationStore(paths).load()

    paths.implementation_file.write_text(
        json.dumps({"specs": [{"id": "a", "tasks": [{"id": "a-1", "status": "weird"}]}]}),
        encoding="utf-8",
    )
    with pytest.raises(StateError):
        ImplementationStore(paths).load()


def test_state_lock_times_out_and_recovers_stale_owner(tmp_path: Path) -> None:
    lock_file = tmp_path / "state.lock"
    lock_file.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(StateError):
        with state_lock(lock_file, timeout_seconds=0.1):
            pass

    lock_file.write_text("999999999", encoding="utf-8")
    with state_lock(lock_file, timeout_seconds=0.1):
        assert lock_file.read_text(encoding="utf-8") == str(os.getpid())
    assert not lock_file.exists()


def test_session_store_create_update_and_order(tmp_path: Path) -> None:
    sessions = SessionStore(ProjectPaths.for_root(tmp_path))
    first = sessions.create("plan", "claude")
    second = sessions.create("build", "codex", model="gpt-5", controller_pid=os.getpid())

    def _bump(item: Session) -> Session:
        item.iteration += 1
        item.process_id = 4242
        return item

    updated = sessions.update(second.id, _bump)
    raw = json.loads(sessions.path.read_text(encoding="utf-8"))

    assert updated.iteration == 1
    assert raw["sessions"][second.id]["processId"] == 4242
    assert raw["sessions"][second.id]["agentType"] == "codex"
    assert "stoppedAt" not in raw["sessions"][first.id]
    assert [item.id for item in sessions.list_sessions()] == [second.id, first.id]
    assert {item.id for item in sessions.running()} == {first.id, second.id}
    with pytest.raises(StateError):
        sessions.update("missing", _bump)
