"""Single-writer job store handing out immutable snapshots."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace

from agent_loop_runner.config import MAX_LOOPS_BOUNDS, clamp_int
from agent_loop_runner.orchestrator.models import (
    IN_FLIGHT_STATUSES,
    InvalidTransitionError,
    Job,
    JobStatus,
    Outcome,
    StateSnapshot,
    can_transition,
)

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[StateSnapshot], None]
FeatureSelector = Callable[[tuple[Job, ...], str], int | None]

CANCELLED_MESSAGE = "Manually cancelled by user."


class JobStore:
    """Owns run/job state; every mutation swaps in a whole new ``Job`` record.

    Readers only ever receive complete records or full snapshots. Mutations are
    serialized through one lock so read-modify-write sequences coming from the
    attempt loop and the filesystem event thread cannot interleave.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        config_provider: Callable[[], dict[str, object]] | None = None,
    ) -> None:
        self.clock = clock
        self._config_provider = config_provider or dict
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._version = 0
        self._run_id = ""
        self._running = False
        self._jobs: list[Job] = []
        self._queue: list[int] = []
        self._feature_to_job: dict[str, int] = {}
        self._listeners: list[SnapshotListener] = []

    # -- reads -----------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def job(self, position: int) -> Job:
        return self._jobs[position]

    def jobs(self) -> tuple[Job, ...]:
        return tuple(self._jobs)

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                run_id=self._run_id,
                running=self._running,
                jobs=tuple(self._jobs),
                queue_length=len(self._queue),
                config=self._config_provider(),
            )

    def find_position(self, *, index_label: str, run_id: str) -> int | None:
        for position, job in enumerate(self._jobs):
            if job.index_label == index_label and job.run_id == run_id:
                return position
        return None

    def feature_owner(self, feature_name: str) -> int | None:
        return self._feature_to_job.get(feature_name)

    # -- run lifecycle ---------------------------------------------------------

    def start_run(self, *, run_id: str, jobs: Iterable[Job]) -> None:
        """Replace the previous run: stamp jobs with the run id and queue them all."""

        with self._lock:
            self._run_id = run_id
            self._jobs = [
                replace(
                    job,
                    run_id=run_id,
                    status=JobStatus.QUEUED,
                    attempts_used=0,
                    stopped=False,
                    prompt_path=None,
                    feature_name=None,
                    progress_file=None,
                    spec_file=None,
                    requirements_file=None,
                    final_status=None,
                    reason=None,
                    failure_message=None,
                    started_at=None,
                    mapped_at=None,
                )
                for job in jobs
            ]
            self._queue = list(range(len(self._jobs)))
            self._feature_to_job.clear()
            self._running = True
            self._bump()
        self._emit()

    def pop_queue(self, run_id: str | None = None) -> int | None:
        """Next queued position; ``None`` when empty or when ``run_id`` is no longer current."""

        with self._lock:
            if not self._queue or (run_id is not None and run_id != self._run_id):
                return None
            position = self._queue.pop(0)
            self._bump()
        self._emit()
        return position

    def finish_run(self, run_id: str) -> None:
        """Clear the running flag unless a newer run has replaced ``run_id``."""

        with self._lock:
            if run_id != self._run_id or not self._running:
                return
            self._running = False
            self._bump()
        self._emit()

    def stop_run(self) -> None:
        """Stop the run: drop the queue, mark queued jobs Stopped and every job stopped."""

        with self._lock:
            self._running = False
            self._queue = []
            self._jobs = [
                replace(
                    job,
                    status=JobStatus.STOPPED if job.status == JobStatus.QUEUED else job.status,
                    stopped=True,
                )
                for job in self._jobs
            ]
            self._bump()
        self._emit()

    def cancel_job(self, position: int) -> Job | None:
        """Force a not-yet-finished job to Failed and flag it stopped."""

        with self._lock:
            if not 0 <= position < len(self._jobs):
                return None
            job = self._jobs[position]
            retrying = (
                job.status == JobStatus.FAILED
                and not job.stopped
                and job.attempts_used < job.max_loops
            )
            if job.status not in (JobStatus.QUEUED, *IN_FLIGHT_STATUSES) and not retrying:
                return None
            updated = replace(
                job,
                status=JobStatus.FAILED,
                stopped=True,
                failure_message=CANCELLED_MESSAGE,
                final_status=Outcome.FAIL,
            )
            self._jobs[position] = updated
            self._bump()
        self._emit()
        return updated

    def set_max_loops(self, value: int, position: int | None = None) -> None:
        """Clamp and apply a per-job (or, without position, global) attempt budget."""

        clamped = clamp_int(value, *MAX_LOOPS_BOUNDS)
        with self._lock:
            positions = range(len(self._jobs)) if position is None else (position,)
            for current in positions:
                if not 0 <= current < len(self._jobs):
                    continue
                job = self._jobs[current]
                self._jobs[current] = replace(job, max_loops=max(clamped, job.attempts_used))
            self._bump()
        self._emit()

    # -- job mutations ---------------------------------------------------------

    def update_job(self, position: int, **changes: object) -> Job:
        """Replace a job with a copy carrying ``changes`` (status changes are validated)."""

        with self._lock:
            job, changed = self._apply(position, changes)
        if changed:
            self._emit()
        return job

    def transition(self, position: int, status: JobStatus, **changes: object) -> Job:
        return self.update_job(position, status=status, **changes)

    def transition_if(
        self,
        position: int,
        status: JobStatus,
        *,
        from_statuses: Iterable[JobStatus],
        allow_stopped: bool = False,
        **changes: object,
    ) -> Job | None:
        """Transition only while the job is still in one of ``from_statuses``.

        Returns ``None`` (and changes nothing) when the job has moved on, for
        example because it was cancelled while the caller was waiting.
        """

        return self.transition_with(
            position,
            lambda _job: {"status": status, **changes},
            from_statuses=from_statuses,
            allow_stopped=allow_stopped,
        )

    def transition_with(
        self,
        position: int,
        compute: Callable[[Job], dict[str, object]],
        *,
        from_statuses: Iterable[JobStatus],
        allow_stopped: bool = False,
    ) -> Job | None:
        """Like ``transition_if`` but derives the changes from the current record under lock."""

        allowed = frozenset(from_statuses)
        with self._lock:
            job = self._jobs[position]
            if job.stopped and not allow_stopped:
                return None
            if job.status not in allowed:
                return None
            updated, changed = self._apply(position, compute(job))
        if changed:
            self._emit()
        return updated

    def claim_feature(
        self,
        feature_name: str,
        selector: FeatureSelector,
        /,
        **changes: object,
    ) -> int | None:
        """Map ``feature_name`` to the job chosen by ``selector`` unless already mapped.

        ``changes`` are applied to the selected job in the same critical section,
        so two different features can never claim the same unmapped job.
        """

        with self._lock:
            owner = self._feature_to_job.get(feature_name)
            if owner is not None:
                return owner
            position = selector(tuple(self._jobs), self._run_id)
            if position is None:
                return None
            self._feature_to_job[feature_name] = position
            _, changed = self._apply(position, changes)
        if changed:
            self._emit()
        return position

    def register_feature(self, feature_name: str, position: int) -> None:
        with self._lock:
            self._feature_to_job.setdefault(feature_name, position)

    # -- observation -----------------------------------------------------------

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def notify(self) -> None:
        """Push a snapshot without a state change (e.g. configuration updates)."""

        with self._lock:
            self._bump()
        self._emit()

    def wait_for_change(self, timeout: float) -> bool:
        """Block until the next mutation or ``timeout``; True if something changed."""

        with self._changed:
            version = self._version
            self._changed.wait_for(lambda: self._version != version, timeout=timeout)
            return self._version != version

    def _apply(self, position: int, changes: dict[str, object]) -> tuple[Job, bool]:
        job = self._jobs[position]
        target = changes.get("status")
        if isinstance(target, JobStatus) and not can_transition(job.status, target):
            raise InvalidTransitionError(job.status, target)
        updated = replace(job, **changes)
        if updated == job:
            return job, False
        self._jobs[position] = updated
        self._bump()
        return updated, True

    def _bump(self) -> None:
        self._version += 1
        self._changed.notify_all()

    def _emit(self) -> None:
        snapshot = self.snapshot()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("State listener failed")
