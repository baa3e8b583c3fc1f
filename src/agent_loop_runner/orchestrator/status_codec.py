"""Parser for the line-oriented status artifact written by an agent.

Expected shape::

    STATUS: PASS
    FeatureName: Widgets
    Timestamp: 2026-10-19T10:00:00Z
    Summary: 12 scenarios generated
    SpecPath: tests/Agent-Based/Widgets/Widgets.spec.ts

``AGENT_STATUS`` is accepted as an alias of ``STATUS``. Unknown lines are
ignored; a record without a PASS/FAIL marker is incomplete.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from agent_loop_runner.orchestrator.models import Outcome

_MARKER_RE = re.compile(r"^(?:AGENT_)?STATUS:\s*(PASS|FAIL)\s*$", re.IGNORECASE)
_FIELD_RE = re.compile(
    r"^(FeatureName|Timestamp|Summary|SpecPath|Reason):\s*(.+?)\s*$",
    re.IGNORECASE,
)
_FIELD_ATTRS = {
    "featurename": "feature_name",
    "timestamp": "timestamp",
    "summary": "summary",
    "specpath": "spec_path",
    "reason": "reason",
}


@dataclass(slots=True, frozen=True)
class StatusRecord:
    """Parsed status artifact."""

    outcome: Outcome | None = None
    feature_name: str | None = None
    timestamp: str | None = None
    summary: str | None = None
    spec_path: str | None = None
    reason: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.outcome is not None


def parse_status_text(text: str) -> StatusRecord:
    """Parse status text; later occurrences of a key win."""

    values: dict[str, str] = {}
    outcome: Outcome | None = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        marker = _MARKER_RE.match(stripped)
        if marker:
            outcome = Outcome(marker.group(1).upper())
            continue
        match = _FIELD_RE.match(stripped)
        if match:
            values[_FIELD_ATTRS[match.group(1).lower()]] = match.group(2)
    return StatusRecord(outcome=outcome, **values)


def read_status_file(path: Path) -> StatusRecord | None:
    """Read and parse a status artifact; ``None`` if it does not exist (yet)."""

    try:
        text = path.read_text("utf-8", errors="replace")
    except (FileNotFoundError, IsADirectoryError, PermissionError):
        return None
    return parse_status_text(text)


def status_file_path(status_dir: Path, *, run_id: str, index_label: str) -> Path:
    return status_dir / run_id / f"{index_label}.status.md"


def index_label_from_status_path(path: Path) -> str | None:
    match = re.match(r"^(\d+)\.status\.md$", path.name, re.IGNORECASE)
    if match is None:
        return None
    return match.group(1)
