"""Use-case facade: the command set a UI (or the CLI) drives a run with."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from uuid import uuid4

from agent_loop_runner.config import MAX_LOOPS_BOUNDS, Settings, clamp_int
from agent_loop_runner.orchestrator.backend import AgentExecutor, CliAgentExecutor
from agent_loop_runner.orchestrator.correlator import (
    EventCorrelator,
    FeatureMappingStrategy,
    RecentUnmappedJobStrategy,
)
from agent_loop_runner.orchestrator.models import (
    IN_FLIGHT_STATUSES,
    InputPair,
    StateSnapshot,
    build_jobs,
    normalize_pairs,
)
from agent_loop_runner.orchestrator.scheduler import QueuePump
from agent_loop_runner.orchestrator.store import JobStore, SnapshotListener
from agent_loop_runner.orchestrator.watchers import ArtifactWatcher
from agent_loop_runner.orchestrator.worker import JobOrchestrator
from agent_loop_runner.orchestrator.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


def new_run_id(now: datetime | None = None) -> str:
    """Timestamp plus a random suffix; used as a directory segment."""

    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")  # noqa: DTZ005
    return f"{stamp}-{uuid4().hex[:6]}"


class RunnerService:
    """Wires store, correlator, watchers, workspace and executor for one workspace."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        executor: AgentExecutor | None = None,
        workspace: WorkspaceManager | None = None,
        strategy: FeatureMappingStrategy | None = None,
        clock: Callable[[], float] = time.time,
        watch: bool = True,
    ) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._watch = watch

        self.store = JobStore(clock=clock, config_provider=self._public_config)
        self.correlator = EventCorrelator(
            store=self.store,
            status_dir=settings.status_dir,
            strategy=strategy
            or RecentUnmappedJobStrategy(lambda: self._settings.runner.feature_map_window_seconds),
        )
        self.executor = executor or CliAgentExecutor(settings_provider=self.settings)
        self.workspace = workspace or WorkspaceManager(settings_provider=self.settings)
        self.orchestrator = JobOrchestrator(
            store=self.store,
            settings_provider=self.settings,
            correlator=self.correlator,
            executor=self.executor,
            workspace=self.workspace,
        )
        self.pump = QueuePump(store=self.store, orchestrator=self.orchestrator)
        self.watcher = ArtifactWatcher(correlator=self.correlator, settings_provider=self.settings)

    def __enter__(self) -> RunnerService:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def settings(self) -> Settings:
        return self._settings

    def _public_config(self) -> dict[str, object]:
        return self._settings.to_public_dict()

    # -- commands --------------------------------------------------------------

    def load_and_run(
        self,
        pairs: Iterable[InputPair],
        max_loops: int | None = None,
        *,
        background: bool = True,
    ) -> str | None:
        """Start a new run; ignored (returns ``None``) while another run is active."""

        with self._lock:
            if self.store.running:
                logger.warning("A run is already active; ignoring new submission")
                return None
            if self._thread is not None and self._thread.is_alive():
                logger.warning("Previous run is still shutting down; ignoring new submission")
                return None
            if max_loops is not None:
                self._update_runner(max_loops_per_url=clamp_int(max_loops, *MAX_LOOPS_BOUNDS))

            normalized = normalize_pairs(list(pairs))
            if not normalized:
                logger.warning("No valid http(s) URLs submitted")
                return None

            settings = self._settings
            run_id = new_run_id()
            jobs = build_jobs(normalized, max_loops=settings.runner.max_loops_per_url)
            (settings.status_dir / run_id).mkdir(parents=True, exist_ok=True)
            self.store.start_run(run_id=run_id, jobs=jobs)
            logger.info("Run %s started with %s job(s)", run_id, len(jobs))

            if self._watch:
                self.watcher.start()
            if background:
                self._thread = threading.Thread(
                    target=self.pump.run,
                    daemon=True,
                    name=f"agent-loop-{run_id}",
                )
                self._thread.start()
        if not background:
            self.pump.run()
        return run_id

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the background pump; True once it has finished."""

        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def cancel_job(self, position: int) -> bool:
        jobs = self.store.jobs()
        if not 0 <= position < len(jobs):
            return False
        was_in_flight = jobs[position].status in IN_FLIGHT_STATUSES
        if self.store.cancel_job(position) is None:
            return False
        logger.info("Item %s cancelled", jobs[position].index_label)
        if was_in_flight:
            self._cancel_active()
        return True

    def stop(self) -> None:
        self.store.stop_run()
        self._cancel_active()
        logger.info("Run %s stopped", self.store.run_id)

    def set_max_loops(self, value: int, position: int | None = None) -> None:
        """Change the attempt budget of one job, or of every job and future runs."""

        if position is None:
            self._update_runner(max_loops_per_url=clamp_int(value, *MAX_LOOPS_BOUNDS))
        self.store.set_max_loops(value, position)

    def set_globs(
        self,
        *,
        progress: str | None = None,
        spec: str | None = None,
        requirements: str | None = None,
    ) -> None:
        changes = {
            name: value.strip()
            for name, value in (
                ("progress_glob", progress),
                ("spec_glob", spec),
                ("requirements_glob", requirements),
            )
            if value is not None and value.strip()
        }
        if not changes:
            return
        self._settings = replace(
            self._settings,
            artifacts=replace(self._settings.artifacts, **changes),
        )
        if self.watcher.running:
            self.watcher.restart()
        self.store.notify()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def snapshot(self) -> StateSnapshot:
        return self.store.snapshot()

    def close(self) -> None:
        if self.store.running:
            self.stop()
        self.join(timeout=15)
        self.watcher.stop()

    def _update_runner(self, **changes: object) -> None:
        self._settings = replace(self._settings, runner=replace(self._settings.runner, **changes))

    def _cancel_active(self) -> None:
        try:
            self.executor.cancel_active()
        except Exception as error:  # noqa: BLE001
            logger.warning("Executor cancel_active failed: %s", error)
