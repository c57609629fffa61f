from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

STATE_DIRNAME = ".specloop"


@dataclass(frozen=True, slots=True)
class ProjectPaths:
    """Filesystem layout of an initialized project."""

    root: Path

    @classmethod
    def for_root(cls, root: Path) -> ProjectPaths:
        return cls(root=root.resolve())

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIRNAME

    @property
    def implementation_file(self) -> Path:
        return self.state_dir / "implementation.json"

    @property
    def sessions_file(self) -> Path:
        return self.state_dir / "sessions.json"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def specs_dir(self) -> Path:
        return self.state_dir / "specs"

    def session_log(self, session_id: str) -> Path:
        return self.logs_dir / f"{session_id}.log"

    def prompt_override(self, mode: str) -> Path:
        return self.state_dir / f"PROMPT_{mode}.md"

    def ensure(self) -> None:
        for directory in (self.state_dir, self.logs_dir, self.specs_dir):
            directory.mkdir(parents=True, exist_ok=True)
