from __future__ import annotations

import threading
import time
from datetime import datetime
from pathlib import Path

import allure

from agent_loop_runner.orchestrator.backend import DispatchOutcome
from agent_loop_runner.orchestrator.models import IN_FLIGHT_STATUSES, InputPair, JobStatus
from agent_loop_runner.orchestrator.services import RunnerService, new_run_id
from agent_loop_runner.orchestrator.workspace import WorkspaceManager

pytestmark = [
    allure.epic("Agent Loop Runner"),
    allure.feature("Runner Service"),
]


def _wait_for_dispatch(executor, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not executor.requests and time.monotonic() < deadline:
        time.sleep(0.01)
    assert executor.requests, "agent was never dispatched"


def test_new_run_id_is_a_timestamp_with_random_suffix() -> None:
    run_id = new_run_id(datetime(2026, 10, 19, 10, 0, 0))  # noqa: DTZ001

    assert run_id.startswith("20261019-100000-")
    assert len(run_id) == len("20261019-100000-") + 6
    assert new_run_id() != new_run_id()


def test_load_and_run_dedupes_and_drives_jobs_to_done(
    fast_settings,
    fake_executor_factory,
    status_writer,
) -> None:
    executor = fake_executor_factory(lambda request, _n: status_writer(request, "STATUS: PASS\n"))

    with RunnerService(settings=fast_settings, executor=executor, watch=False) as service:
        run_id = service.load_and_run(
            [
                InputPair(url="https://portal.example/a"),
                InputPair(url="https://portal.example/a", prompt="ignored duplicate"),
                InputPair(url="ftp://portal.example/b"),
                InputPair(url="https://portal.example/c", prompt="Check {{URL}}"),
            ],
            background=False,
        )
        snapshot = service.snapshot()

    assert run_id is not None
    assert snapshot.run_id == run_id
    assert snapshot.running is False
    assert [job.url for job in snapshot.jobs] == [
        "https://portal.example/a",
        "https://portal.example/c",
    ]
    assert snapshot.jobs[0].custom_prompt is None
    assert all(job.status == JobStatus.DONE for job in snapshot.jobs)
    assert (fast_settings.status_dir / run_id).is_dir()
    assert "Check https://portal.example/c" in executor.requests[1].prompt_text


def test_load_and_run_without_valid_urls_is_ignored(fast_settings, fake_executor_factory) -> None:
    with RunnerService(
        settings=fast_settings,
        executor=fake_executor_factory(),
        watch=False,
    ) as service:
        assert service.load_and_run([InputPair(url="not a url")]) is None
        assert service.snapshot().jobs == ()


def test_second_submission_is_rejected_while_running(fast_settings, fake_executor_factory) -> None:
    executor = fake_executor_factory(block=True)

    with RunnerService(settings=fast_settings, executor=executor, watch=False) as service:
        first = service.load_and_run([InputPair(url="https://portal.example/a")])
        _wait_for_dispatch(executor)

        second = service.load_and_run([InputPair(url="https://portal.example/b")])
        service.stop()
        finished = service.join(timeout=10)
        job = service.snapshot().jobs[0]

    assert first is not None
    assert second is None
    assert finished is True
    assert executor.cancelled.is_set()
    assert job.status == JobStatus.STOPPED
    assert job.url == "https://portal.example/a"


def test_cancel_in_flight_job_interrupts_the_agent(fast_settings, fake_executor_factory) -> None:
    executor = fake_executor_factory(block=True)

    with RunnerService(settings=fast_settings, executor=executor, watch=False) as service:
        service.load_and_run([InputPair(url="https://portal.example/a")], max_loops=3)
        _wait_for_dispatch(executor)

        assert service.cancel_job(0) is True
        assert service.cancel_job(0) is False
        assert service.cancel_job(7) is False
        assert service.join(timeout=10) is True
        job = service.snapshot().jobs[0]

    assert executor.cancelled.is_set()
    assert job.status == JobStatus.FAILED
    assert job.stopped is True
    assert job.attempts_used == 1


def test_max_loops_updates_future_runs_and_current_jobs(
    fast_settings,
    fake_executor_factory,
) -> None:
    with RunnerService(
        settings=fast_settings,
        executor=fake_executor_factory(),
        watch=False,
    ) as service:
        service.set_max_loops(50)

        assert service.settings().runner.max_loops_per_url == 20
        assert service.snapshot().config["maxLoopsPerUrl"] == 20


def test_set_globs_ignores_blank_values_and_notifies(fast_settings, fake_executor_factory) -> None:
    with RunnerService(
        settings=fast_settings,
        executor=fake_executor_factory(),
        watch=False,
    ) as service:
        received = []
        service.subscribe(received.append)

        service.set_globs(progress="   ", spec="**/e2e/*/*.spec.js")
        service.set_globs(requirements="")

    artifacts = service.settings().artifacts
    assert artifacts.spec_glob == "**/e2e/*/*.spec.js"
    assert artifacts.progress_glob == "**/progress-tracking/*-progress.md"
    assert len(received) == 1
    assert received[0].config["specGlob"] == "**/e2e/*/*.spec.js"


class _SlowToStopExecutor:
    """Keeps the first dispatch busy until ``release`` is set, even after cancellation."""

    def __init__(self, on_dispatch) -> None:
        self.on_dispatch = on_dispatch
        self.release = threading.Event()
        self.requests = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def new_session(self) -> None:
        pass

    def dispatch(self, request) -> DispatchOutcome:
        with self._lock:
            self.requests.append(request)
            call_number = len(self.requests)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if call_number == 1:
                self.release.wait(timeout=10)
            else:
                self.on_dispatch(request)
        finally:
            with self._lock:
                self.in_flight -= 1
        return DispatchOutcome.OK

    def cancel_active(self) -> None:
        pass


def test_restart_waits_for_the_stopped_run_to_wind_down(fast_settings, status_writer) -> None:
    executor = _SlowToStopExecutor(lambda request: status_writer(request, "STATUS: PASS\n"))
    busiest: list[int] = []

    with RunnerService(settings=fast_settings, executor=executor, watch=False) as service:
        service.subscribe(
            lambda snapshot: busiest.append(
                sum(job.status in IN_FLIGHT_STATUSES for job in snapshot.jobs),
            ),
        )
        first = service.load_and_run([InputPair(url="https://portal.example/a")])
        _wait_for_dispatch(executor)
        service.stop()

        during_shutdown = service.load_and_run([InputPair(url="https://portal.example/b")])
        executor.release.set()
        wound_down = service.join(timeout=10)

        second = service.load_and_run([InputPair(url="https://portal.example/b")])
        finished = service.join(timeout=10)
        snapshot = service.snapshot()

    assert first is not None
    assert during_shutdown is None
    assert wound_down is True
    assert second is not None
    assert second != first
    assert finished is True
    assert snapshot.run_id == second
    assert snapshot.running is False
    assert [job.url for job in snapshot.jobs] == ["https://portal.example/b"]
    assert snapshot.jobs[0].status == JobStatus.DONE
    assert len(executor.requests) == 2
    assert executor.max_in_flight == 1
    assert max(busiest) == 1


class _GitRunner:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def run(self, argv, *, cwd, quiet=False):  # noqa: ARG002
        self.calls.append(list(argv))
        if argv[1:3] == ["rev-parse", "--abbrev-ref"]:
            return "main"
        return ""


def test_unwritable_worktree_dir_still_dispatches_in_shared_workspace(
    fast_settings,
    fake_executor_factory,
    status_writer,
    tmp_path: Path,
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory\n", "utf-8")
    fast_settings.workspace.enabled = True
    fast_settings.workspace.worktree_dir = str(blocker / "worktrees")
    runner = _GitRunner()
    workspace = WorkspaceManager(settings_provider=lambda: fast_settings, runner=runner)
    executor = fake_executor_factory(lambda request, _n: status_writer(request, "STATUS: PASS\n"))

    with RunnerService(
        settings=fast_settings,
        executor=executor,
        workspace=workspace,
        watch=False,
    ) as service:
        service.load_and_run([InputPair(url="https://portal.example/a")], background=False)
        job = service.snapshot().jobs[0]

    assert job.status == JobStatus.DONE
    assert len(executor.requests) == 1
    assert executor.requests[0].cwd == fast_settings.workspace_root
    assert job.worktree_branch is None
    assert not any(call[1:3] == ["worktree", "add"] for call in runner.calls)
