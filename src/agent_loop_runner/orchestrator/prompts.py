"""Prompt composition for one job attempt."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from agent_loop_runner.orchestrator.models import Job
from agent_loop_runner.orchestrator.status_codec import status_file_path

_FRONT_MATTER_RE = re.compile(r"^---\r?\n.*?\r?\n---\r?\n", re.DOTALL)

_WORKSPACE_RULES = (
    "**IMPORTANT: git is managed by the runner. Do NOT run any git commands.**\n"
    "All new files MUST be written under the WorktreePath above using absolute paths.\n"
    "Do NOT run: git checkout, git branch, git switch, git worktree, git commit, git push, "
    "or any pull request command.\n"
)


@dataclass(slots=True, frozen=True)
class PreviousAttempt:
    """What the last attempt left behind, carried into the retry prompt."""

    attempt: int
    failure_message: str | None = None
    reason: str | None = None
    progress_file: str | None = None
    spec_file: str | None = None
    requirements_file: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> PreviousAttempt:
        return cls(
            attempt=job.attempts_used,
            failure_message=job.failure_message,
            reason=job.reason,
            progress_file=job.progress_file,
            spec_file=job.spec_file,
            requirements_file=job.requirements_file,
        )


@dataclass(slots=True, frozen=True)
class ComposedPrompt:
    path: Path
    text: str


class PromptComposer:
    """Builds and persists the instruction payload sent to the agent."""

    def __init__(self, *, prompts_dir: Path, status_dir: Path, default_prompt: str) -> None:
        self.prompts_dir = prompts_dir
        self.status_dir = status_dir
        self.default_prompt = default_prompt

    def prompt_path(self, *, run_id: str, index_label: str, attempt: int) -> Path:
        suffix = "" if attempt == 1 else f"-attempt{attempt}"
        return self.prompts_dir / run_id / f"{index_label}{suffix}.prompt.md"

    def compose(
        self,
        *,
        job: Job,
        run_id: str,
        attempt: int,
        previous: PreviousAttempt | None = None,
    ) -> str:
        template = (
            strip_front_matter(job.custom_prompt) if job.custom_prompt else self.default_prompt
        )
        body = inject_template(
            template,
            {
                "URL": job.url,
                "RunId": run_id,
                "Item": job.index_label,
                "Attempt": str(attempt),
                "MaxLoopsPerUrl": str(job.max_loops),
            },
        )
        text = self._preamble(job=job, run_id=run_id, attempt=attempt) + body.rstrip() + "\n"
        if attempt > 1 and previous is not None:
            text += _retry_context(previous, max_loops=job.max_loops)
        return text

    def write(
        self,
        *,
        job: Job,
        run_id: str,
        attempt: int,
        previous: PreviousAttempt | None = None,
    ) -> ComposedPrompt:
        text = self.compose(job=job, run_id=run_id, attempt=attempt, previous=previous)
        path = self.prompt_path(run_id=run_id, index_label=job.index_label, attempt=attempt)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, "utf-8")
        return ComposedPrompt(path=path, text=text)

    def _preamble(self, *, job: Job, run_id: str, attempt: int) -> str:
        status_path = status_file_path(
            self.status_dir.resolve(),
            run_id=run_id,
            index_label=job.index_label,
        )
        lines = [
            f"RunId: {run_id}",
            f"Item: {job.index_label}",
            f"URL: {job.url}",
            f"Attempt: {attempt}",
            f"MaxLoopsPerUrl: {job.max_loops}",
            f"StatusFile: {status_path}",
        ]
        preamble = "\n".join(lines) + "\n"
        if job.worktree_path:
            preamble += (
                f"WorktreePath: {job.worktree_path}\n"
                f"WorktreeBranch: {job.worktree_branch or 'unknown'}\n"
                f"OriginalBranch: {job.original_branch or 'unknown'}\n"
                "\n" + _WORKSPACE_RULES
            )
        return preamble + "\n"


def _retry_context(previous: PreviousAttempt, *, max_loops: int) -> str:
    parts = [
        "",
        "---",
        f"## Previous Attempt Context (attempt {previous.attempt} of {max_loops})",
        "",
    ]
    if previous.failure_message:
        parts.append(f"**Failure reason**: {previous.failure_message}")
    if previous.reason:
        parts.append(f"**Status reason**: {previous.reason}")
    if previous.progress_file:
        parts.append(
            f"**Progress file** (may contain useful locators/context): {previous.progress_file}",
        )
    if previous.spec_file:
        parts.append(f"**Existing spec file** (check before regenerating): {previous.spec_file}")
    if previous.requirements_file:
        parts.append(f"**Requirements file**: {previous.requirements_file}")
    parts.extend(
        [
            "",
            "Review the artifacts above before starting from scratch. "
            "Fix the failing spec if it exists rather than regenerating.",
            "",
        ],
    )
    return "\n".join(parts)


def inject_template(template: str, values: dict[str, str]) -> str:
    """Replace ``{{Token}}`` placeholders."""

    rendered = template
    for key, value in values.items():
        rendered = rendered.replace(f"{{{{{key}}}}}", value)
    return rendered


def strip_front_matter(text: str) -> str:
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return text
    return text[match.end() :]
