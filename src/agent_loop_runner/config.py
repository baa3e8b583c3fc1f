"""Runtime configuration for the agent loop runner."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

MAX_LOOPS_BOUNDS = (1, 20)
FEATURE_MAP_WINDOW_BOUNDS = (1.0, 3_600.0)
PER_JOB_TIMEOUT_BOUNDS = (0.0, 86_400.0)

DEFAULT_PROMPT = (
    "Please create a test plan and tests for all possible configurations, platforms, "
    "and tabs of {{URL}}. Make sure you test all CRUD operations."
)
DEFAULT_COMMAND_TEMPLATE = "codex exec --sandbox workspace-write {prompt}"
DEFAULT_PR_CREATE_COMMAND = (
    'gh pr create --title "[E2E] {FeatureName} agent test" '
    '--body "Generated by agent loop run {RunId}, item {Item}."'
)


@dataclass(slots=True)
class RunnerSettings:
    """Attempt loop, scheduling and correlation settings."""

    max_loops_per_url: int = 3
    feature_map_window_seconds: float = 120.0
    agent_name: str = "loop-planner"
    per_job_timeout_seconds: float = 0.0
    poll_interval_seconds: float = 2.0
    retry_delay_seconds: float = 1.0
    default_prompt: str = DEFAULT_PROMPT


@dataclass(slots=True)
class ArtifactSettings:
    """Where agent artifacts are written and how they are recognized."""

    progress_glob: str = "**/progress-tracking/*-progress.md"
    spec_glob: str = "**/Agent-Based/*/*.spec.ts"
    requirements_glob: str = "**/Agent-Based/**/*-requirements.md"
    prompts_root: str = ".agent-loop-runner/prompts"
    status_root: str = ".agent-loop-runner/status"

    @property
    def status_glob(self) -> str:
        return f"**/{self.status_root.strip('/')}/**/*.status.md"


@dataclass(slots=True)
class WorkspaceSettings:
    """Isolated git worktree settings."""

    enabled: bool = True
    worktree_dir: str = "../.agent-worktrees"
    pr_create_command: str = DEFAULT_PR_CREATE_COMMAND
    commit_glob: str = "tests/Agent-Based/"


@dataclass(slots=True)
class AgentSettings:
    """Command templates used to launch external agents."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    command_templates: dict[str, str] = field(default_factory=dict)

    def template_for(self, agent: str) -> str | None:
        template = self.command_templates.get(agent.strip().lower())
        if template is None or not template.strip():
            return None
        return template


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    workspace_root: Path = Path(".")
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, workspace_root: Path | None = None) -> Settings:
        """Load settings from environment, clamping numeric values to their bounds."""

        defaults_runner = RunnerSettings()
        defaults_artifacts = ArtifactSettings()
        defaults_workspace = WorkspaceSettings()
        settings = cls(
            workspace_root=workspace_root
            or Path(os.getenv("AGENT_LOOP_WORKSPACE_ROOT", ".")),
            runner=RunnerSettings(
                max_loops_per_url=clamp_int(
                    _env_int("AGENT_LOOP_MAX_LOOPS_PER_URL", defaults_runner.max_loops_per_url),
                    *MAX_LOOPS_BOUNDS,
                ),
                feature_map_window_seconds=clamp_float(
                    _env_float(
                        "AGENT_LOOP_FEATURE_MAP_WINDOW_SECONDS",
                        defaults_runner.feature_map_window_seconds,
                    ),
                    *FEATURE_MAP_WINDOW_BOUNDS,
                ),
                agent_name=os.getenv("AGENT_LOOP_AGENT_NAME", defaults_runner.agent_name),
                per_job_timeout_seconds=clamp_float(
                    _env_float(
                        "AGENT_LOOP_PER_JOB_TIMEOUT_SECONDS",
                        defaults_runner.per_job_timeout_seconds,
                    ),
                    *PER_JOB_TIMEOUT_BOUNDS,
                ),
                poll_interval_seconds=_env_float(
                    "AGENT_LOOP_POLL_INTERVAL_SECONDS",
                    defaults_runner.poll_interval_seconds,
                ),
                retry_delay_seconds=_env_float(
                    "AGENT_LOOP_RETRY_DELAY_SECONDS",
                    defaults_runner.retry_delay_seconds,
                ),
                default_prompt=os.getenv("AGENT_LOOP_DEFAULT_PROMPT", DEFAULT_PROMPT),
            ),
            artifacts=ArtifactSettings(
                progress_glob=os.getenv(
                    "AGENT_LOOP_PROGRESS_GLOB",
                    defaults_artifacts.progress_glob,
                ),
                spec_glob=os.getenv("AGENT_LOOP_SPEC_GLOB", defaults_artifacts.spec_glob),
                requirements_glob=os.getenv(
                    "AGENT_LOOP_REQUIREMENTS_GLOB",
                    defaults_artifacts.requirements_glob,
                ),
                prompts_root=os.getenv("AGENT_LOOP_PROMPTS_ROOT", defaults_artifacts.prompts_root),
                status_root=os.getenv("AGENT_LOOP_STATUS_ROOT", defaults_artifacts.status_root),
            ),
            workspace=WorkspaceSettings(
                enabled=_env_bool("AGENT_LOOP_ENABLE_WORKTREE", default=defaults_workspace.enabled),
                worktree_dir=os.getenv("AGENT_LOOP_WORKTREE_DIR", defaults_workspace.worktree_dir),
                pr_create_command=os.getenv(
                    "AGENT_LOOP_PR_CREATE_COMMAND",
                    defaults_workspace.pr_create_command,
                ),
                commit_glob=os.getenv("AGENT_LOOP_COMMIT_GLOB", defaults_workspace.commit_glob),
            ),
            agents=AgentSettings(
                command_template=os.getenv(
                    "AGENT_LOOP_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                command_templates=_collect_agent_commands(),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for values that cannot be clamped into shape."""

        if self.runner.poll_interval_seconds <= 0:
            raise ValueError("AGENT_LOOP_POLL_INTERVAL_SECONDS must be > 0.")
        if self.runner.retry_delay_seconds < 0:
            raise ValueError("AGENT_LOOP_RETRY_DELAY_SECONDS must be >= 0.")
        if not self.runner.agent_name.strip():
            raise ValueError("AGENT_LOOP_AGENT_NAME must not be empty.")
        _validate_command_template(
            "AGENT_LOOP_AGENT_COMMAND_TEMPLATE",
            self.agents.command_template,
        )
        for agent, template in self.agents.command_templates.items():
            _validate_command_template(f"AGENT_LOOP_AGENT_COMMANDS[{agent!r}]", template)

    @property
    def prompts_dir(self) -> Path:
        return self.workspace_root / self.artifacts.prompts_root

    @property
    def status_dir(self) -> Path:
        return self.workspace_root / self.artifacts.status_root

    @property
    def worktree_base(self) -> Path:
        base = Path(self.workspace.worktree_dir)
        if base.is_absolute():
            return base
        return (self.workspace_root / base).resolve()

    def to_public_dict(self) -> dict[str, object]:
        """Effective configuration pushed to observers with every state snapshot."""

        return {
            "maxLoopsPerUrl": self.runner.max_loops_per_url,
            "featureMapWindowSeconds": self.runner.feature_map_window_seconds,
            "agentName": self.runner.agent_name,
            "perJobTimeoutSeconds": self.runner.per_job_timeout_seconds,
            "progressGlob": self.artifacts.progress_glob,
            "specGlob": self.artifacts.spec_glob,
            "requirementsGlob": self.artifacts.requirements_glob,
            "enableWorktree": self.workspace.enabled,
            "worktreeDir": self.workspace.worktree_dir,
            "prCreateCommand": self.workspace.pr_create_command,
            "commitGlob": self.workspace.commit_glob,
        }


def clamp_int(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, int(value)))


def clamp_float(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, float(value)))


def _collect_agent_commands() -> dict[str, str]:
    raw = os.getenv("AGENT_LOOP_AGENT_COMMANDS", "").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(
            f"Invalid AGENT_LOOP_AGENT_COMMANDS: {error}. "
            'Expected a JSON object like {"agent": "<command template>"}.',
        ) from error
    if not isinstance(payload, dict):
        raise ValueError("AGENT_LOOP_AGENT_COMMANDS must be a JSON object.")

    commands: dict[str, str] = {}
    for agent, template in payload.items():
        if not isinstance(template, str):
            raise ValueError(
                f"Invalid AGENT_LOOP_AGENT_COMMANDS value for {agent!r}: expected a string.",
            )
        commands[str(agent).strip().lower()] = template
    return commands


def _validate_command_template(name: str, template: str) -> None:
    if not template.strip():
        raise ValueError(f"{name} must not be empty.")
    if "{prompt}" not in template and "{prompt_file}" not in template:
        raise ValueError(f"{name} must include {{prompt}} or {{prompt_file}}.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
