from __future__ import annotations

from collections import deque
from pathlib import Path

from specloop.state.models import utcnow_iso


class SessionLog:
    """Append-only ``[timestamp] message`` log for one session."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, message: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            for line in message.splitlines() or [""]:
                handle.write(f"[{utcnow_iso()}] {line}\n")

    def agent_line(self, line: str) -> None:
        self.write(f"[agent] {line}")

    def tail(self, lines: int = 50) -> list[str]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8", errors="replace") as handle:
            return [line.rstrip("\n") for line in deque(handle, maxlen=max(0, lines))]
