from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

DONE_MARKER = "<TASK_DONE>"
PLAN_DONE_MARKER = "<STATUS>DONE</STATUS>"

# The reason runs up to the first `">`, so embedded quotes survive.
BLOCKED_PATTERN = re.compile(r'<TASK_BLOCKED\s+reason="(.*?)">', re.DOTALL)


@dataclass(slots=True)
class MarkerScan:
    done: bool = False
    plan_done: bool = False
    blocked_reason: str | None = None

    @property
    def blocked(self) -> bool:
        return self.blocked_reason is not None

    def merge(self, other: MarkerScan) -> None:
        self.done = self.done or other.done
        self.plan_done = self.plan_done or other.plan_done
        if self.blocked_reason is None and other.blocked_reason is not None:
            self.blocked_reason = other.blocked_reason


def blocked_marker(reason: str) -> str:
    return f'<TASK_BLOCKED reason="{reason}">'


def _string_values(payload: Any) -> list[str]:
    if isinstance(payload, str):
        return [payload]
    if isinstance(payload, dict):
        values: list[str] = []
        for item in payload.values():
            values.extend(_string_values(item))
        return values
    if isinstance(payload, list):
        values = []
        for item in payload:
            values.extend(_string_values(item))
        return values
    return []


def _scan_text(text: str) -> MarkerScan:
    match = BLOCKED_PATTERN.search(text)
    return MarkerScan(
        done=DONE_MARKER in text,
        plan_done=PLAN_DONE_MARKER in text,
        blocked_reason=match.group(1) if match else None,
    )


def scan_line(line: str) -> MarkerScan:
    """Find markers in one output line.

    Stream-json agents wrap their text in JSON events, where quotes inside a
    blocked reason arrive escaped. Decoded string values are scanned first so
    the reason is recovered verbatim; the raw line is the fallback.
    """
    result = MarkerScan()
    stripped = line.strip()
    if stripped.startswith("{") or stripped.startswith("["):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        for value in _string_values(payload):
            result.merge(_scan_text(value))
    result.merge(_scan_text(line))
    return result
