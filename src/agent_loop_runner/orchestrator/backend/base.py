"""Executor interface for dispatching prompts to an external agent."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol


class DispatchOutcome(str, Enum):
    """Result of one dispatch strategy."""

    OK = "ok"
    UNSUPPORTED = "unsupported"


@dataclass(slots=True)
class DispatchRequest:
    """Inputs required to hand one attempt's prompt to the agent."""

    prompt_text: str
    agent: str
    prompt_path: Path | None = None
    cwd: Path | None = None


class AgentExecutor(Protocol):
    """Protocol implemented by executors. All calls are fire-and-forget."""

    def new_session(self) -> None:
        """Start from a clean agent session; failures are logged, not raised."""

    def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """Hand the prompt over without waiting for the agent to finish."""

    def cancel_active(self) -> None:
        """Interrupt in-flight agent work if possible; failures are logged, not raised."""
