"""Subprocess-based executor that launches CLI agents in the background."""

from __future__ import annotations

import logging
import os
import shlex
import string
import subprocess
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from agent_loop_runner.config import Settings
from agent_loop_runner.orchestrator.backend.base import DispatchOutcome, DispatchRequest

logger = logging.getLogger(__name__)

DispatchStrategy = Callable[[DispatchRequest], DispatchOutcome]


class BackendRunError(RuntimeError):
    """Executor error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentExecutor:
    """Start the configured agent command detached and return immediately.

    Dispatch walks an ordered list of strategies: the agent-specific template
    first, then the generic template. A strategy answers ``UNSUPPORTED`` when
    it has no template or its binary is missing, which moves on to the next;
    when none is left a ``BackendRunError`` is raised.
    """

    def __init__(self, *, settings_provider: Callable[[], Settings]) -> None:
        self.settings_provider = settings_provider
        self._lock = threading.Lock()
        self._process: subprocess.Popen[bytes] | None = None

    def strategies(self) -> list[tuple[str, DispatchStrategy]]:
        return [
            ("agent template", self._dispatch_agent_template),
            ("default template", self._dispatch_default_template),
        ]

    def new_session(self) -> None:
        self._stop_process(reason="new session")

    def cancel_active(self) -> None:
        self._stop_process(reason="cancel")

    def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        for name, strategy in self.strategies():
            outcome = strategy(request)
            if outcome == DispatchOutcome.OK:
                logger.debug("Dispatched to agent %s via %s", request.agent, name)
                return outcome
            logger.debug("Dispatch strategy %s unsupported for agent %s", name, request.agent)
        raise BackendRunError(
            f"No dispatch strategy could start agent {request.agent!r}.",
            transient=False,
        )

    def _dispatch_agent_template(self, request: DispatchRequest) -> DispatchOutcome:
        template = self.settings_provider().agents.template_for(request.agent)
        if template is None:
            return DispatchOutcome.UNSUPPORTED
        return self._spawn(template, request)

    def _dispatch_default_template(self, request: DispatchRequest) -> DispatchOutcome:
        return self._spawn(self.settings_provider().agents.command_template, request)

    def _spawn(self, template: str, request: DispatchRequest) -> DispatchOutcome:
        cwd = request.cwd or self.settings_provider().workspace_root
        prompt_file = request.prompt_path or _write_temp_prompt(request.prompt_text)
        run_args, command_head = _build_run_args(
            command_template=template,
            agent=request.agent,
            prompt=request.prompt_text,
            prompt_file=prompt_file,
            workdir=cwd,
        )

        env = os.environ.copy()
        env["AGENT_LOOP_AGENT"] = request.agent
        env["AGENT_LOOP_PROMPT_FILE"] = str(prompt_file)

        stdout_path = prompt_file.with_suffix(".stdout.log")
        stderr_path = prompt_file.with_suffix(".stderr.log")
        try:
            with (
                stdout_path.open("wb") as stdout_handle,
                stderr_path.open("wb") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=cwd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    start_new_session=os.name != "nt",
                )
        except FileNotFoundError:
            logger.warning("Agent command not found: %s", command_head)
            return DispatchOutcome.UNSUPPORTED
        except OSError as error:
            raise BackendRunError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        with self._lock:
            previous, self._process = self._process, process
        if previous is not None and previous.poll() is None:
            _terminate_process(previous)
        logger.info(
            "Started agent %s (pid %s), output in %s",
            request.agent,
            process.pid,
            stdout_path,
        )
        return DispatchOutcome.OK

    def _stop_process(self, *, reason: str) -> None:
        with self._lock:
            process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        logger.info("Terminating agent process %s (%s)", process.pid, reason)
        try:
            _terminate_process(process)
        except subprocess.TimeoutExpired:
            logger.warning("Agent process %s did not exit after kill", process.pid)


def _write_temp_prompt(text: str) -> Path:
    handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
        "w",
        encoding="utf-8",
        suffix=".prompt.md",
        delete=False,
    )
    with handle:
        handle.write(text)
    return Path(handle.name)


def _build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    agent: str,
    prompt: str,
    prompt_file: Path,
    workdir: Path,
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    values = {
        "agent": agent,
        "prompt": prompt,
        "prompt_file": str(prompt_file),
        "workdir": str(workdir),
    }
    try:
        if (os_name or os.name) == "nt":
            rendered = _render_windows_command_template(stripped, values).strip()
            if not rendered:
                raise BackendRunError(
                    "Agent command template rendered empty command.",
                    transient=False,
                )
            return rendered, rendered.split(maxsplit=1)[0]

        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", transient=False)
    return argv, argv[0]


def _render_windows_command_template(template: str, values: dict[str, str]) -> str:
    parts: list[str] = []
    for literal_text, field_name, _format_spec, _conversion in string.Formatter().parse(template):
        parts.append(literal_text)
        if field_name is None:
            continue
        parts.append(subprocess.list2cmdline([values[field_name]]))
    return "".join(parts)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
