"""Controllers for runner CLI commands."""

from __future__ import annotations

import json
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from agent_loop_runner.config import (
    MAX_LOOPS_BOUNDS,
    PER_JOB_TIMEOUT_BOUNDS,
    Settings,
    clamp_float,
    clamp_int,
)
from agent_loop_runner.orchestrator.models import (
    InputPair,
    Job,
    JobStatus,
    StateSnapshot,
    build_jobs,
    normalize_pairs,
)
from agent_loop_runner.orchestrator.prompts import PromptComposer
from agent_loop_runner.orchestrator.services import RunnerService
from agent_loop_runner.orchestrator.status_codec import read_status_file


@dataclass(slots=True)
class RunCommand:
    """CLI input for one batch run."""

    urls: tuple[str, ...]
    pairs_file: Path | None = None
    max_loops: int | None = None
    workspace: Path | None = None
    agent: str | None = None
    timeout_seconds: float | None = None
    worktree: bool | None = None


@dataclass(slots=True)
class ParseStatusCommand:
    """CLI input for status artifact parsing."""

    path: Path


@dataclass(slots=True)
class ComposePromptCommand:
    """CLI input for rendering a prompt without dispatching it."""

    url: str
    prompt: str = ""
    run_id: str = "preview"
    item: int = 1
    attempt: int = 1
    max_loops: int | None = None
    workspace: Path | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to print plus overall success flag."""

    lines: list[str]
    success: bool


class RunnerCliController:
    """Builds services from settings and turns their results into output lines."""

    def __init__(
        self,
        *,
        service_factory: Callable[[Settings], RunnerService] | None = None,
    ) -> None:
        self.service_factory = service_factory or (
            lambda settings: RunnerService(settings=settings)
        )

    def run(
        self,
        command: RunCommand,
        *,
        on_line: Callable[[str], None] | None = None,
    ) -> CommandResult:
        settings = _apply_run_overrides(
            Settings.from_env(workspace_root=command.workspace),
            command,
        )
        pairs = [InputPair(url=url) for url in command.urls]
        if command.pairs_file is not None:
            pairs.extend(load_pairs_file(command.pairs_file))
        if not normalize_pairs(pairs):
            return CommandResult(lines=["No valid http(s) URLs to run."], success=False)

        emit = on_line or (lambda _line: None)
        tracker = _StatusTracker(emit)
        with self.service_factory(settings) as service:
            unsubscribe = service.subscribe(tracker)
            try:
                with _signal_handlers(service.stop):
                    run_id = service.load_and_run(pairs, command.max_loops)
                    if run_id is None:
                        return CommandResult(lines=["Run was not started."], success=False)
                    while not service.join(timeout=0.5):
                        pass
            finally:
                unsubscribe()
            snapshot = service.snapshot()

        return CommandResult(
            lines=render_summary(snapshot),
            success=all(job.status == JobStatus.DONE for job in snapshot.jobs),
        )

    def parse_status(self, command: ParseStatusCommand) -> CommandResult:
        record = read_status_file(command.path)
        if record is None:
            return CommandResult(lines=[f"Status file not found: {command.path}"], success=False)
        if not record.is_complete:
            return CommandResult(
                lines=[f"No STATUS: PASS|FAIL marker in {command.path}"],
                success=False,
            )
        lines = [f"status={record.outcome.value}"]
        for label, value in (
            ("feature_name", record.feature_name),
            ("timestamp", record.timestamp),
            ("summary", record.summary),
            ("spec_path", record.spec_path),
            ("reason", record.reason),
        ):
            if value is not None:
                lines.append(f"{label}={value}")
        return CommandResult(lines=lines, success=True)

    def compose_prompt(self, command: ComposePromptCommand) -> list[str]:
        settings = Settings.from_env(workspace_root=command.workspace)
        max_loops = clamp_int(
            command.max_loops or settings.runner.max_loops_per_url,
            *MAX_LOOPS_BOUNDS,
        )
        pairs = normalize_pairs([InputPair(url=command.url, prompt=command.prompt)])
        if not pairs:
            raise ValueError(f"Not an http(s) URL: {command.url!r}")
        (template_job,) = build_jobs(pairs, max_loops=max_loops)
        job = replace(
            template_job,
            index=command.item,
            index_label=str(command.item).zfill(3),
            run_id=command.run_id,
        )
        composer = PromptComposer(
            prompts_dir=settings.prompts_dir,
            status_dir=settings.status_dir,
            default_prompt=settings.runner.default_prompt,
        )
        text = composer.compose(job=job, run_id=command.run_id, attempt=command.attempt)
        return text.splitlines()


def load_pairs_file(path: Path) -> list[InputPair]:
    """Read ``[{"url": ..., "prompt": ...}, ...]`` (plain URL strings are accepted too)."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a JSON list.")
    pairs: list[InputPair] = []
    for entry in payload:
        if isinstance(entry, str):
            pairs.append(InputPair(url=entry))
        elif isinstance(entry, dict):
            pairs.append(
                InputPair(url=str(entry.get("url", "")), prompt=str(entry.get("prompt") or "")),
            )
        else:
            raise ValueError(f"Unsupported entry in {path}: {entry!r}")
    return pairs


def render_summary(snapshot: StateSnapshot) -> list[str]:
    lines = [render_job_line(job) for job in snapshot.jobs]
    counts = {status: 0 for status in JobStatus}
    for job in snapshot.jobs:
        counts[job.status] += 1
    lines.append(
        f"Run {snapshot.run_id}: "
        f"done={counts[JobStatus.DONE]} failed={counts[JobStatus.FAILED]} "
        f"stopped={counts[JobStatus.STOPPED]} queued={counts[JobStatus.QUEUED]}",
    )
    return lines


def render_job_line(job: Job) -> str:
    line = (
        f"[{job.index_label}] {job.status.value:<8} "
        f"attempt {job.attempts_used}/{job.max_loops} {job.short_url}"
    )
    if job.feature_name:
        line += f" feature={job.feature_name}"
    detail = job.failure_message or job.reason
    if detail and job.status in (JobStatus.FAILED, JobStatus.QUEUED, JobStatus.DONE):
        line += f" ({detail})"
    return line


def _apply_run_overrides(settings: Settings, command: RunCommand) -> Settings:
    runner = settings.runner
    if command.agent:
        runner = replace(runner, agent_name=command.agent)
    if command.timeout_seconds is not None:
        runner = replace(
            runner,
            per_job_timeout_seconds=clamp_float(command.timeout_seconds, *PER_JOB_TIMEOUT_BOUNDS),
        )
    workspace = settings.workspace
    if command.worktree is not None:
        workspace = replace(workspace, enabled=command.worktree)
    return replace(settings, runner=runner, workspace=workspace)


class _StatusTracker:
    """Snapshot listener that emits one line per job status change."""

    def __init__(self, emit: Callable[[str], None]) -> None:
        self._emit = emit
        self._lock = threading.Lock()
        self._seen: dict[str, tuple[str, JobStatus, int]] = {}

    def __call__(self, snapshot: StateSnapshot) -> None:
        with self._lock:
            for job in snapshot.jobs:
                state = (snapshot.run_id, job.status, job.attempts_used)
                if self._seen.get(job.index_label) == state:
                    continue
                self._seen[job.index_label] = state
                self._emit(render_job_line(job))


@contextmanager
def _signal_handlers(request_stop: Callable[[], None]) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(_signum: int, _frame: object | None) -> None:
        request_stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
