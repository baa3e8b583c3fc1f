"""Domain models for runs, jobs and the job lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlparse


class JobStatus(str, Enum):
    """Job lifecycle states."""

    QUEUED = "Queued"
    PLANNING = "Planning"
    RUNNING = "Running"
    DONE = "Done"
    FAILED = "Failed"
    STOPPED = "Stopped"


class Outcome(str, Enum):
    """Terminal outcome reported by the agent's status artifact."""

    PASS = "PASS"
    FAIL = "FAIL"


IN_FLIGHT_STATUSES = frozenset({JobStatus.PLANNING, JobStatus.RUNNING})
WAIT_TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.STOPPED})

# Same-state transitions are always allowed so that re-applying a record is a no-op.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset(
        {JobStatus.PLANNING, JobStatus.RUNNING, JobStatus.FAILED, JobStatus.STOPPED},
    ),
    JobStatus.PLANNING: frozenset(
        {
            JobStatus.RUNNING,
            JobStatus.DONE,
            JobStatus.FAILED,
            JobStatus.QUEUED,
            JobStatus.STOPPED,
        },
    ),
    JobStatus.RUNNING: frozenset(
        {JobStatus.DONE, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.STOPPED},
    ),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.DONE: frozenset(),
    JobStatus.STOPPED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Requested status change is not part of the job lifecycle."""

    def __init__(self, source: JobStatus, target: JobStatus) -> None:
        super().__init__(f"Illegal job transition {source.value} -> {target.value}")
        self.source = source
        self.target = target


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    return source == target or target in ALLOWED_TRANSITIONS[source]


@dataclass(slots=True, frozen=True)
class InputPair:
    """One submitted (URL, prompt override) row."""

    url: str
    prompt: str = ""


@dataclass(slots=True, frozen=True)
class Job:
    """Immutable job record; every change produces a new instance."""

    index: int
    index_label: str
    url: str
    short_url: str
    custom_prompt: str | None = None
    status: JobStatus = JobStatus.QUEUED
    run_id: str = ""
    max_loops: int = 3
    attempts_used: int = 0
    prompt_path: str | None = None

    feature_name: str | None = None
    progress_file: str | None = None
    spec_file: str | None = None
    requirements_file: str | None = None

    final_status: Outcome | None = None
    reason: str | None = None
    failure_message: str | None = None

    started_at: float | None = None
    mapped_at: float | None = None

    original_branch: str | None = None
    worktree_path: str | None = None
    worktree_branch: str | None = None

    stopped: bool = False

    @property
    def is_terminal(self) -> bool:
        if self.status in (JobStatus.DONE, JobStatus.STOPPED):
            return True
        return self.status == JobStatus.FAILED and (
            self.stopped or self.attempts_used >= self.max_loops
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "indexLabel": self.index_label,
            "url": self.url,
            "shortUrl": self.short_url,
            "customPrompt": self.custom_prompt,
            "status": self.status.value,
            "runId": self.run_id,
            "maxLoops": self.max_loops,
            "attemptsUsed": self.attempts_used,
            "promptPath": self.prompt_path,
            "featureName": self.feature_name,
            "progressFile": self.progress_file,
            "specFile": self.spec_file,
            "requirementsFile": self.requirements_file,
            "finalStatus": self.final_status.value if self.final_status else None,
            "reason": self.reason,
            "failureMessage": self.failure_message,
            "startedAt": self.started_at,
            "mappedAt": self.mapped_at,
            "originalBranch": self.original_branch,
            "worktreePath": self.worktree_path,
            "worktreeBranch": self.worktree_branch,
            "stopped": self.stopped,
        }


@dataclass(slots=True, frozen=True)
class StateSnapshot:
    """Complete, consistent view pushed to observers after each mutation."""

    run_id: str
    running: bool
    jobs: tuple[Job, ...]
    queue_length: int
    config: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "state",
            "runId": self.run_id,
            "running": self.running,
            "jobs": [job.to_dict() for job in self.jobs],
            "queuedCount": self.queue_length,
            "config": dict(self.config),
        }


def index_label(index: int) -> str:
    return str(index).zfill(3)


def shorten_url(url: str, max_chars: int = 70) -> str:
    if len(url) <= max_chars:
        return url
    head = int(max_chars * 0.6)
    tail = int(max_chars * 0.35)
    return f"{url[:head]}…{url[-tail:]}"


def looks_like_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def normalize_pairs(pairs: list[InputPair] | tuple[InputPair, ...]) -> list[InputPair]:
    """Trim, drop non-URLs and deduplicate by URL keeping the first occurrence."""

    deduped: list[InputPair] = []
    seen: set[str] = set()
    for pair in pairs:
        url = pair.url.strip()
        if not url or not looks_like_url(url):
            continue
        if url in seen:
            continue
        seen.add(url)
        deduped.append(InputPair(url=url, prompt=pair.prompt.strip()))
    return deduped


def build_jobs(pairs: list[InputPair], *, max_loops: int) -> list[Job]:
    jobs: list[Job] = []
    for position, pair in enumerate(pairs, start=1):
        jobs.append(
            Job(
                index=position,
                index_label=index_label(position),
                url=pair.url,
                short_url=shorten_url(pair.url),
                custom_prompt=pair.prompt or None,
                max_loops=max_loops,
            ),
        )
    return jobs
