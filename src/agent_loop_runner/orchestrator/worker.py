"""Per-job attempt loop: compose, dispatch, wait for a terminal signal, retry."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from dataclasses import replace

from agent_loop_runner.config import Settings
from agent_loop_runner.orchestrator.backend import AgentExecutor, DispatchRequest
from agent_loop_runner.orchestrator.correlator import EventCorrelator
from agent_loop_runner.orchestrator.models import (
    IN_FLIGHT_STATUSES,
    WAIT_TERMINAL_STATUSES,
    Job,
    JobStatus,
    Outcome,
)
from agent_loop_runner.orchestrator.prompts import PreviousAttempt, PromptComposer
from agent_loop_runner.orchestrator.status_codec import status_file_path
from agent_loop_runner.orchestrator.store import JobStore
from agent_loop_runner.orchestrator.workspace import WorkspaceLease, WorkspaceManager

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Drives one job through up to ``max_loops`` attempts."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        settings_provider: Callable[[], Settings],
        correlator: EventCorrelator,
        executor: AgentExecutor,
        workspace: WorkspaceManager | None = None,
        composer: PromptComposer | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.settings_provider = settings_provider
        self.correlator = correlator
        self.executor = executor
        self.workspace = workspace
        self.composer = composer
        self.monotonic = monotonic

    def run_job(self, position: int) -> Job:
        """Run the attempt loop; the job's workspace is released on every exit path."""

        job = self.store.job(position)
        if job.stopped or not self.store.running:
            return job

        with self._job_workspace(job) as lease:
            if lease is not None:
                self.store.update_job(
                    position,
                    original_branch=lease.original_branch,
                    worktree_path=str(lease.path) if lease.path else None,
                    worktree_branch=lease.branch,
                )
            self._attempt_loop(position, lease)

        finished = self.store.job(position)
        logger.info(
            "Item %s finished as %s after %s attempt(s)",
            finished.index_label,
            finished.status.value,
            finished.attempts_used,
        )
        return finished

    def _job_workspace(self, job: Job) -> AbstractContextManager[WorkspaceLease | None]:
        if self.workspace is None:
            return nullcontext(None)
        return self.workspace.job_workspace(job)

    def _attempt_loop(self, position: int, lease: WorkspaceLease | None) -> None:
        previous: PreviousAttempt | None = None
        attempt = 0
        while True:
            attempt += 1
            job = self.store.job(position)
            if job.stopped or not self.store.running:
                return
            if attempt > job.max_loops:
                return

            try:
                status = self._run_attempt(position, attempt, previous, lease)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Attempt %s of item %s raised: %s",
                    attempt,
                    job.index_label,
                    error,
                    exc_info=True,
                )
                message = str(error) or type(error).__name__
                previous = replace(
                    PreviousAttempt.from_job(self.store.job(position)),
                    attempt=attempt,
                    failure_message=message,
                )
                if self._handle_attempt_error(position, attempt, message):
                    continue
                return

            if status == JobStatus.DONE:
                self._publish(position, lease)
                return
            if status != JobStatus.FAILED:
                return
            previous = PreviousAttempt.from_job(self.store.job(position))
            if not self._schedule_retry(position, attempt):
                return

    def _run_attempt(
        self,
        position: int,
        attempt: int,
        previous: PreviousAttempt | None,
        lease: WorkspaceLease | None,
    ) -> JobStatus:
        settings = self.settings_provider()
        job = self.store.job(position)
        status_file_path(
            settings.status_dir,
            run_id=job.run_id,
            index_label=job.index_label,
        ).unlink(missing_ok=True)

        started = self.store.transition_if(
            position,
            JobStatus.PLANNING if attempt == 1 else JobStatus.RUNNING,
            from_statuses=(JobStatus.QUEUED,),
            started_at=self.store.clock(),
            attempts_used=attempt,
            final_status=None,
            failure_message=None,
            reason=None,
        )
        if started is None:
            return self.store.job(position).status

        composer = self.composer or PromptComposer(
            prompts_dir=settings.prompts_dir,
            status_dir=settings.status_dir,
            default_prompt=settings.runner.default_prompt,
        )
        prompt = composer.write(
            job=started,
            run_id=started.run_id,
            attempt=attempt,
            previous=previous if attempt > 1 else None,
        )
        running = self.store.transition_if(
            position,
            JobStatus.RUNNING,
            from_statuses=IN_FLIGHT_STATUSES,
            prompt_path=str(prompt.path),
        )
        if running is None:
            return self.store.job(position).status

        self._new_session()
        self.executor.dispatch(
            DispatchRequest(
                prompt_text=prompt.text,
                agent=settings.runner.agent_name,
                prompt_path=prompt.path,
                cwd=lease.path if lease is not None and lease.isolated else settings.workspace_root,
            ),
        )
        return self._wait_for_terminal(position, lease, settings)

    def _wait_for_terminal(
        self,
        position: int,
        lease: WorkspaceLease | None,
        settings: Settings,
    ) -> JobStatus:
        timeout = settings.runner.per_job_timeout_seconds
        poll_interval = settings.runner.poll_interval_seconds
        deadline = self.monotonic() + timeout if timeout > 0 else None

        while True:
            job = self.store.job(position)
            if job.status in WAIT_TERMINAL_STATUSES:
                return job.status
            if job.status not in IN_FLIGHT_STATUSES:
                return job.status
            if job.stopped or not self.store.running:
                self._mark_stopped(position)
                return self.store.job(position).status

            now = self.monotonic()
            if deadline is not None and now >= deadline:
                self.store.transition_if(
                    position,
                    JobStatus.FAILED,
                    from_statuses=IN_FLIGHT_STATUSES,
                    failure_message=(
                        f"Timed out after {timeout:g}s waiting for agent status file."
                    ),
                    final_status=Outcome.FAIL,
                )
                continue

            if self.correlator.poll_status(position):
                continue
            if self.workspace is not None:
                self.workspace.guard_branch(lease)

            wait = poll_interval if deadline is None else min(poll_interval, deadline - now)
            self.store.wait_for_change(max(0.0, wait))

    def _schedule_retry(self, position: int, attempt: int) -> bool:
        job = self.store.job(position)
        if job.stopped or not self.store.running or attempt >= job.max_loops:
            return False
        detail = (job.failure_message or job.reason or "agent reported FAIL").rstrip(".")
        queued = self.store.transition_if(
            position,
            JobStatus.QUEUED,
            from_statuses=(JobStatus.FAILED,),
            failure_message=f"Attempt {attempt} failed: {detail}. Retrying...",
        )
        if queued is None:
            return False
        logger.info("Item %s attempt %s failed, retrying", job.index_label, attempt)
        self._sleep_with_stop(self.settings_provider().runner.retry_delay_seconds)
        return True

    def _handle_attempt_error(self, position: int, attempt: int, message: str) -> bool:
        job = self.store.job(position)
        if job.stopped or not self.store.running:
            self._mark_stopped(position)
            return False
        if attempt < job.max_loops:
            queued = self.store.transition_if(
                position,
                JobStatus.QUEUED,
                from_statuses=(*IN_FLIGHT_STATUSES, JobStatus.QUEUED, JobStatus.FAILED),
                failure_message=f"Attempt {attempt} error: {message.rstrip('.')}. Retrying...",
            )
            if queued is None:
                return False
            self._sleep_with_stop(self.settings_provider().runner.retry_delay_seconds)
            return True
        self.store.transition_if(
            position,
            JobStatus.FAILED,
            from_statuses=(*IN_FLIGHT_STATUSES, JobStatus.QUEUED, JobStatus.FAILED),
            failure_message=message,
            final_status=Outcome.FAIL,
        )
        return False

    def _mark_stopped(self, position: int) -> None:
        self.store.transition_if(
            position,
            JobStatus.STOPPED,
            from_statuses=IN_FLIGHT_STATUSES,
            allow_stopped=True,
        )

    def _publish(self, position: int, lease: WorkspaceLease | None) -> None:
        if self.workspace is None or lease is None or not lease.isolated:
            return
        job = self.store.job(position)
        try:
            result = self.workspace.publish(lease, job)
        except Exception:  # noqa: BLE001
            logger.exception("Publishing item %s failed (non-fatal)", job.index_label)
            return
        if result.skipped_reason:
            logger.info("Publish skipped for item %s: %s", job.index_label, result.skipped_reason)

    def _new_session(self) -> None:
        try:
            self.executor.new_session()
        except Exception as error:  # noqa: BLE001
            logger.warning("Executor new_session failed: %s", error)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while self.store.running and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))
