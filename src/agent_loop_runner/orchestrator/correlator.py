"""Map asynchronous artifact notifications back to the jobs that produced them."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Protocol

from agent_loop_runner.orchestrator.models import IN_FLIGHT_STATUSES, Job, JobStatus, Outcome
from agent_loop_runner.orchestrator.status_codec import (
    StatusRecord,
    index_label_from_status_path,
    read_status_file,
    status_file_path,
)
from agent_loop_runner.orchestrator.store import JobStore

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r"^(?P<feature>.+)-progress\.md$", re.IGNORECASE)
_SPEC_RE = re.compile(r"^(?P<feature>.+)\.spec\.[A-Za-z0-9]+$", re.IGNORECASE)
_REQUIREMENTS_RE = re.compile(r"^(?P<feature>.+)-requirements\.md$", re.IGNORECASE)


class ArtifactKind(str, Enum):
    """Artifact classes produced by an external agent."""

    PROGRESS = "progress"
    SPEC = "spec"
    REQUIREMENTS = "requirements"
    STATUS = "status"


def feature_from_progress(path: Path) -> str | None:
    return _match_feature(_PROGRESS_RE, path)


def feature_from_spec(path: Path) -> str | None:
    return _match_feature(_SPEC_RE, path)


def feature_from_requirements(path: Path) -> str | None:
    return _match_feature(_REQUIREMENTS_RE, path)


def _match_feature(pattern: re.Pattern[str], path: Path) -> str | None:
    match = pattern.match(path.name)
    if match is None:
        return None
    feature = match.group("feature").strip()
    return feature or None


class FeatureMappingStrategy(Protocol):
    """Chooses which job a newly seen feature name belongs to."""

    def select(
        self,
        jobs: tuple[Job, ...],
        run_id: str,
        *,
        feature_name: str,
        now: float,
    ) -> int | None:
        """Return the owning job position, or ``None`` to leave the feature unmapped."""


class RecentUnmappedJobStrategy:
    """Pick the most recently started in-flight job that has no feature yet.

    The agent names its feature on its own schedule and nothing is returned
    from dispatch, so recency within a time window is the best available hint.
    Two features racing inside the same window can still be attributed to the
    wrong job; only one of them can win.
    """

    def __init__(self, window_seconds: float | Callable[[], float]) -> None:
        self._window = window_seconds

    @property
    def window_seconds(self) -> float:
        if callable(self._window):
            return float(self._window())
        return float(self._window)

    def select(
        self,
        jobs: tuple[Job, ...],
        run_id: str,
        *,
        feature_name: str,  # noqa: ARG002
        now: float,
    ) -> int | None:
        window = self.window_seconds
        best: int | None = None
        best_started = float("-inf")
        for position, job in enumerate(jobs):
            if job.feature_name or job.stopped:
                continue
            if job.run_id != run_id or job.status not in IN_FLIGHT_STATUSES:
                continue
            if job.started_at is None or now - job.started_at > window:
                continue
            if job.started_at > best_started:
                best, best_started = position, job.started_at
        return best


class EventCorrelator:
    """Apply artifact events to the job store; every handler is idempotent."""

    def __init__(
        self,
        *,
        store: JobStore,
        status_dir: Path,
        strategy: FeatureMappingStrategy,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.status_dir = status_dir
        self.strategy = strategy
        self.clock = clock or store.clock

    def handle(self, kind: ArtifactKind, path: Path) -> bool:
        """Route one notification; True when it touched a job."""

        if kind == ArtifactKind.PROGRESS:
            return self.on_progress(path) is not None
        if kind == ArtifactKind.SPEC:
            return self.on_spec(path) is not None
        if kind == ArtifactKind.REQUIREMENTS:
            return self.on_requirements(path) is not None
        return self.on_status(path)

    def on_progress(self, path: Path) -> int | None:
        feature = feature_from_progress(path)
        if feature is None:
            return None
        if not self.store.running:
            return None
        owner = self.store.feature_owner(feature)
        if owner is not None:
            return owner

        now = self.clock()

        def _select(jobs: tuple[Job, ...], run_id: str) -> int | None:
            return self.strategy.select(jobs, run_id, feature_name=feature, now=now)

        position = self.store.claim_feature(
            feature,
            _select,
            feature_name=feature,
            progress_file=str(path),
            mapped_at=now,
        )
        if position is None:
            logger.debug("No job eligible for feature %s yet; dropping %s", feature, path)
            return None
        logger.info("Mapped feature %s to item %s", feature, self.store.job(position).index_label)
        return position

    def on_spec(self, path: Path) -> int | None:
        feature = feature_from_spec(path)
        return self._link_mapped(feature, path, field_name="spec_file")

    def on_requirements(self, path: Path) -> int | None:
        feature = feature_from_requirements(path)
        return self._link_mapped(feature, path, field_name="requirements_file")

    def _link_mapped(self, feature: str | None, path: Path, *, field_name: str) -> int | None:
        if feature is None:
            return None
        position = self.store.feature_owner(feature)
        if position is None:
            logger.debug("Feature %s is not mapped; dropping %s", feature, path)
            return None
        self.store.update_job(position, **{field_name: str(path)})
        return position

    def on_status(self, path: Path) -> bool:
        label = index_label_from_status_path(path)
        run_id = self.store.run_id
        if label is None or not run_id or path.parent.name != run_id:
            return False
        position = self.store.find_position(index_label=label, run_id=run_id)
        if position is None:
            return False
        record = read_status_file(path)
        if record is None or not record.is_complete:
            return False
        return self.apply_status(position, record) is not None

    def poll_status(self, position: int) -> bool:
        """Read the status artifact of ``position`` directly (polling backup for missed events)."""

        job = self.store.job(position)
        if not job.run_id or job.run_id != self.store.run_id:
            return False
        path = status_file_path(self.status_dir, run_id=job.run_id, index_label=job.index_label)
        record = read_status_file(path)
        if record is None or not record.is_complete:
            return False
        return self.apply_status(position, record) is not None

    def apply_status(self, position: int, record: StatusRecord) -> Job | None:
        """Move an in-flight job to Done/Failed from a complete status record.

        Re-applying the same record to a job that already reached that status
        rewrites the same values. Stopped or cancelled jobs are left alone.
        """

        target = JobStatus.DONE if record.outcome == Outcome.PASS else JobStatus.FAILED

        def _changes(job: Job) -> dict[str, object]:
            return {
                "status": target,
                "final_status": record.outcome,
                "feature_name": job.feature_name or record.feature_name,
                "reason": record.reason or record.summary or job.reason,
                "spec_file": record.spec_path or job.spec_file,
            }

        updated = self.store.transition_with(
            position,
            _changes,
            from_statuses=(*IN_FLIGHT_STATUSES, target),
        )
        if updated is None:
            return None
        if updated.feature_name:
            self.store.register_feature(updated.feature_name, position)
        return updated
