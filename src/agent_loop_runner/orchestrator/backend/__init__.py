"""Executor backend implementations."""

from agent_loop_runner.orchestrator.backend.base import (
    AgentExecutor,
    DispatchOutcome,
    DispatchRequest,
)
from agent_loop_runner.orchestrator.backend.cli_backend import BackendRunError, CliAgentExecutor

__all__ = [
    "AgentExecutor",
    "BackendRunError",
    "CliAgentExecutor",
    "DispatchOutcome",
    "DispatchRequest",
]
