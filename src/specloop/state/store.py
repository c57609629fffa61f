from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from specloop.paths import ProjectPaths
from specloop.processes import is_process_alive
from specloop.state.models import ImplementationDocument, StateError, UpdatedBy, utcnow_iso

logger = logging.getLogger(__name__)


def _lock_owner(lock_file: Path) -> int | None:
    try:
        return int(lock_file.read_text(encoding="utf-8").strip() or "0") or None
    except (OSError, ValueError):
        return None


@contextmanager
def state_lock(lock_file: Path, timeout_seconds: float = 3.0) -> Iterator[None]:
    """Hold an exclusive lock file for the duration of a read-modify-write."""
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            owner = _lock_owner(lock_file)
            if owner is not None and owner != os.getpid() and not is_process_alive(owner):
                logger.warning("Removing stale lock %s left by pid %s", lock_file, owner)
                try:
                    lock_file.unlink()
                except FileNotFoundError:
                    pass
                continue
            if time.monotonic() - start > timeout_seconds:
                raise StateError(f"Timed out waiting for state lock {lock_file}.") from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass


def read_json(path: Path) -> Any:
    """Return the decoded file, ``None`` if absent; corruption raises."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateError(f"Cannot read {path}: {exc}") from exc
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise StateError(f"Corrupt state file {path}: {exc}") from exc


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class ImplementationStore:
    """Whole-document persistence for ``implementation.json``."""

    def __init__(self, paths: ProjectPaths) -> None:
        self.paths = paths
        self.path = paths.implementation_file
        self.lock_file = self.path.with_name(self.path.name + ".lock")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ImplementationDocument | None:
        payload = read_json(self.path)
        if payload is None:
            return None
        return ImplementationDocument.from_dict(payload)

    def require(self) -> ImplementationDocument:
        document = self.load()
        if document is None:
            raise StateError(f"No implementation plan at {self.path}. Run 'specloop start plan'.")
        return document

    def save(self, document: ImplementationDocument, updated_by: UpdatedBy = "build") -> None:
        document.updated_at = utcnow_iso()
        document.updated_by = updated_by
        with state_lock(self.lock_file):
            write_json_atomic(self.path, document.to_dict())

    def create_empty(self) -> ImplementationDocument:
        document = ImplementationDocument(updated_by="user")
        self.save(document, updated_by="user")
        return document
