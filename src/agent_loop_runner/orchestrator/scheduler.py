"""Sequential queue pump: one job in flight at a time, FIFO order."""

from __future__ import annotations

import logging

from agent_loop_runner.orchestrator.models import IN_FLIGHT_STATUSES, JobStatus, Outcome
from agent_loop_runner.orchestrator.store import JobStore
from agent_loop_runner.orchestrator.worker import JobOrchestrator

logger = logging.getLogger(__name__)


class QueuePump:
    """Pops queued jobs and runs each to its attempt-loop conclusion.

    Agents share one interactive session, so jobs are serialized instead of
    handed to a worker pool.
    """

    def __init__(self, *, store: JobStore, orchestrator: JobOrchestrator) -> None:
        self.store = store
        self.orchestrator = orchestrator

    def run(self) -> int:
        """Drain the queue until it is empty or the run is stopped; returns jobs processed.

        The pump is bound to the run that was current when it started and exits once
        a newer run replaces it.
        """

        run_id = self.store.run_id
        processed = 0
        try:
            while self.store.running and self.store.run_id == run_id:
                position = self.store.pop_queue(run_id)
                if position is None:
                    break
                job = self.store.job(position)
                if job.stopped or job.status != JobStatus.QUEUED:
                    logger.debug("Skipping item %s (%s)", job.index_label, job.status.value)
                    continue
                self._run_guarded(position)
                processed += 1
        finally:
            self.store.finish_run(run_id)
        return processed

    def _run_guarded(self, position: int) -> None:
        try:
            self.orchestrator.run_job(position)
        except Exception as error:  # noqa: BLE001
            logger.exception("Item at position %s crashed outside its attempt loop", position)
            self.store.transition_if(
                position,
                JobStatus.FAILED,
                from_statuses=(JobStatus.QUEUED, *IN_FLIGHT_STATUSES),
                failure_message=str(error) or type(error).__name__,
                final_status=Outcome.FAIL,
            )
