from __future__ import annotations

import threading

import allure
import pytest

from agent_loop_runner.orchestrator.models import (
    InputPair,
    InvalidTransitionError,
    JobStatus,
    Outcome,
    StateSnapshot,
    build_jobs,
)
from agent_loop_runner.orchestrator.store import CANCELLED_MESSAGE, JobStore

pytestmark = [
    allure.epic("Agent Loop Runner"),
    allure.feature("Job Store"),
]


def _store(count: int = 2, *, max_loops: int = 3) -> JobStore:
    store = JobStore(clock=lambda: 100.0, config_provider=lambda: {"maxLoopsPerUrl": max_loops})
    pairs = [InputPair(url=f"https://site{index}.example") for index in range(count)]
    store.start_run(run_id="run-1", jobs=build_jobs(pairs, max_loops=max_loops))
    return store


def test_start_run_stamps_run_id_and_queues_every_job() -> None:
    store = _store(3)

    snapshot = store.snapshot()

    assert snapshot.running is True
    assert snapshot.run_id == "run-1"
    assert snapshot.queue_length == 3
    assert {job.run_id for job in snapshot.jobs} == {"run-1"}
    assert snapshot.config == {"maxLoopsPerUrl": 3}


def test_start_run_resets_previous_run_state() -> None:
    store = _store(1)
    store.transition(0, JobStatus.PLANNING, attempts_used=1, feature_name="Widgets")
    store.register_feature("Widgets", 0)

    store.start_run(run_id="run-2", jobs=store.jobs())

    job = store.job(0)
    assert job.status == JobStatus.QUEUED
    assert job.attempts_used == 0
    assert job.feature_name is None
    assert store.feature_owner("Widgets") is None


def test_pop_queue_is_fifo() -> None:
    store = _store(3)

    assert [store.pop_queue(), store.pop_queue(), store.pop_queue()] == [0, 1, 2]
    assert store.pop_queue() is None


def test_illegal_transition_raises() -> None:
    store = _store(1)
    store.transition(0, JobStatus.RUNNING)
    store.transition(0, JobStatus.DONE)

    with pytest.raises(InvalidTransitionError, match="Done -> Running"):
        store.transition(0, JobStatus.RUNNING)


def test_each_update_replaces_the_whole_record() -> None:
    store = _store(1)
    before = store.job(0)

    store.update_job(0, reason="why")

    assert before.reason is None
    assert store.job(0).reason == "why"
    assert store.job(0) is not before


def test_transition_if_ignores_jobs_that_moved_on() -> None:
    store = _store(1)
    store.transition(0, JobStatus.RUNNING)
    store.cancel_job(0)

    result = store.transition_if(0, JobStatus.DONE, from_statuses=(JobStatus.RUNNING,))

    assert result is None
    assert store.job(0).status == JobStatus.FAILED


def test_cancel_job_marks_failed_and_stopped() -> None:
    store = _store(2)
    store.transition(0, JobStatus.RUNNING)

    cancelled = store.cancel_job(0)

    assert cancelled is not None
    assert cancelled.status == JobStatus.FAILED
    assert cancelled.stopped is True
    assert cancelled.failure_message == CANCELLED_MESSAGE
    assert cancelled.final_status == Outcome.FAIL
    assert store.job(1).stopped is False


def test_cancel_job_ignores_finished_jobs() -> None:
    store = _store(1)
    store.transition(0, JobStatus.RUNNING)
    store.transition(0, JobStatus.DONE)

    assert store.cancel_job(0) is None
    assert store.cancel_job(5) is None


def test_stop_run_marks_queued_jobs_stopped() -> None:
    store = _store(3)
    store.pop_queue()
    store.transition(0, JobStatus.RUNNING)

    store.stop_run()

    jobs = store.jobs()
    assert store.running is False
    assert store.queue_length == 0
    assert jobs[0].status == JobStatus.RUNNING
    assert [job.status for job in jobs[1:]] == [JobStatus.STOPPED, JobStatus.STOPPED]
    assert all(job.stopped for job in jobs)


def test_set_max_loops_clamps_and_never_drops_below_attempts_used() -> None:
    store = _store(2)
    store.update_job(0, attempts_used=2)

    store.set_max_loops(1)
    assert [job.max_loops for job in store.jobs()] == [2, 1]

    store.set_max_loops(50, position=1)
    assert store.job(1).max_loops == 20


def test_claim_feature_maps_once_and_applies_changes() -> None:
    store = _store(2)
    calls: list[str] = []

    def _select(jobs, run_id):
        calls.append(run_id)
        return 1

    assert store.claim_feature("Widgets", _select, feature_name="Widgets") == 1
    assert store.claim_feature("Widgets", _select, feature_name="Other") == 1
    assert calls == ["run-1"]
    assert store.job(1).feature_name == "Widgets"


def test_listeners_receive_snapshots_and_failures_are_contained(caplog) -> None:
    store = _store(1)
    received: list[StateSnapshot] = []

    def _broken(_snapshot: StateSnapshot) -> None:
        raise RuntimeError("listener boom")

    store.subscribe(_broken)
    unsubscribe = store.subscribe(received.append)

    store.transition(0, JobStatus.PLANNING)
    unsubscribe()
    store.transition(0, JobStatus.RUNNING)

    assert [snapshot.jobs[0].status for snapshot in received] == [JobStatus.PLANNING]
    assert "State listener failed" in caplog.text


def test_wait_for_change_wakes_on_mutation() -> None:
    store = _store(1)
    timer = threading.Timer(0.05, lambda: store.update_job(0, reason="changed"))
    timer.start()
    try:
        assert store.wait_for_change(5.0) is True
    finally:
        timer.cancel()

    assert store.wait_for_change(0.01) is False


def test_cancel_job_stops_a_failed_job_waiting_for_its_retry() -> None:
    store = _store(1, max_loops=3)
    store.transition(0, JobStatus.RUNNING, attempts_used=1)
    store.transition(0, JobStatus.FAILED, failure_message="selector not found")

    cancelled = store.cancel_job(0)
    requeued = store.transition_if(0, JobStatus.QUEUED, from_statuses=(JobStatus.FAILED,))

    assert cancelled is not None
    assert cancelled.stopped is True
    assert cancelled.failure_message == CANCELLED_MESSAGE
    assert requeued is None
    assert store.job(0).status == JobStatus.FAILED
    assert store.job(0).is_terminal


def test_cancel_job_ignores_failed_job_without_attempts_left() -> None:
    store = _store(1, max_loops=1)
    store.transition(0, JobStatus.RUNNING, attempts_used=1)
    store.transition(0, JobStatus.FAILED, failure_message="selector not found")

    assert store.cancel_job(0) is None
    assert store.job(0).failure_message == "selector not found"


def test_finish_run_ignores_a_replaced_run() -> None:
    store = _store(1)
    store.start_run(run_id="run-2", jobs=store.jobs())

    store.finish_run("run-1")
    assert store.running is True
    assert store.pop_queue("run-1") is None
    assert store.queue_length == 1

    store.finish_run("run-2")
    assert store.running is False
