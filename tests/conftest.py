"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_loop_runner.config import RunnerSettings, Settings, WorkspaceSettings
from agent_loop_runner.orchestrator.backend import DispatchOutcome, DispatchRequest
from agent_loop_runner.orchestrator.backend.echo_agent import read_preamble

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_loop_runner.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop AGENT_LOOP_* variables leaking in from the developer shell."""

    for name in list(os.environ):
        if name.startswith("AGENT_LOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fast_settings(tmp_path) -> Settings:
    return Settings(
        workspace_root=tmp_path,
        runner=RunnerSettings(
            poll_interval_seconds=0.02,
            retry_delay_seconds=0.0,
        ),
        workspace=WorkspaceSettings(enabled=False),
    )


def write_status(request: DispatchRequest, body: str) -> Path:
    """Write a status artifact where the prompt preamble says it belongs."""

    path = Path(read_preamble(request.prompt_text)["StatusFile"])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, "utf-8")
    return path


class FakeExecutor:
    """In-process executor; ``on_dispatch(request, call_number)`` plays the agent."""

    def __init__(
        self,
        on_dispatch: Callable[[DispatchRequest, int], None] | None = None,
        *,
        block: bool = False,
    ) -> None:
        self.on_dispatch = on_dispatch
        self.block = block
        self.requests: list[DispatchRequest] = []
        self.new_sessions = 0
        self.cancelled = threading.Event()

    def new_session(self) -> None:
        self.new_sessions += 1

    def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        self.requests.append(request)
        if self.on_dispatch is not None:
            self.on_dispatch(request, len(self.requests))
        if self.block:
            self.cancelled.wait(timeout=10)
        return DispatchOutcome.OK

    def cancel_active(self) -> None:
        self.cancelled.set()


@pytest.fixture()
def fake_executor_factory() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture()
def status_writer() -> Callable[[DispatchRequest, str], Path]:
    return write_status


@pytest.fixture()
def echo_agent_command() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE
