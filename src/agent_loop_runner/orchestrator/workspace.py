"""Isolated git worktree per job: create, guard, publish and tear down.

Every git call here is best-effort. Failures are logged and reported as
``None``/``False`` so that a broken repository never fails a job whose
success is decided by the agent's own status artifact.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_loop_runner.config import Settings
from agent_loop_runner.orchestrator.models import Job

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_CANDIDATES = ("dev", "main", "master")
_UNKNOWN_BRANCH = "unknown"
_PR_PLACEHOLDERS = {
    "featurename": re.compile(r"\{FeatureName\}", re.IGNORECASE),
    "runid": re.compile(r"\{RunId\}", re.IGNORECASE),
    "item": re.compile(r"\{Item\}", re.IGNORECASE),
}


class CommandRunner:
    """Run a short-lived command and return its trimmed stdout, or ``None`` on failure."""

    def __init__(self, *, timeout_seconds: float = 30.0) -> None:
        self.timeout_seconds = timeout_seconds

    def run(self, argv: Sequence[str], *, cwd: Path, quiet: bool = False) -> str | None:
        level = logging.DEBUG if quiet else logging.WARNING
        try:
            completed = subprocess.run(  # noqa: S603
                list(argv),
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.log(level, "Command timed out after %ss: %s", self.timeout_seconds, argv)
            return None
        except OSError as error:
            logger.log(level, "Command failed to start: %s (%s)", argv, error)
            return None
        if completed.returncode != 0:
            logger.log(
                level,
                "Command exited with %s: %s: %s",
                completed.returncode,
                argv,
                completed.stderr.strip(),
            )
            return None
        return completed.stdout.strip()


@dataclass(slots=True, frozen=True)
class WorkspaceLease:
    """Result of preparing a job's workspace; ``path`` is unset when isolation failed."""

    original_branch: str | None
    path: Path | None = None
    branch: str | None = None

    @property
    def isolated(self) -> bool:
        return self.path is not None and self.branch is not None


@dataclass(slots=True, frozen=True)
class PublishResult:
    committed: bool = False
    pushed: bool = False
    review_output: str | None = None
    skipped_reason: str | None = None


class WorkspaceManager:
    """Manage isolated worktrees next to the shared workspace."""

    def __init__(
        self,
        *,
        settings_provider: Callable[[], Settings],
        runner: CommandRunner | None = None,
    ) -> None:
        self.settings_provider = settings_provider
        self.runner = runner or CommandRunner()

    @property
    def cwd(self) -> Path:
        return self.settings_provider().workspace_root.resolve()

    def _git(self, *args: str, cwd: Path | None = None, quiet: bool = False) -> str | None:
        return self.runner.run(["git", *args], cwd=cwd or self.cwd, quiet=quiet)

    def current_branch(self) -> str | None:
        return self._git("rev-parse", "--abbrev-ref", "HEAD")

    def detect_main_branch(self) -> str:
        ref = self._git("symbolic-ref", "refs/remotes/origin/HEAD", quiet=True)
        if ref:
            return ref.removeprefix("refs/remotes/origin/")
        for prefix in ("origin/", ""):
            for name in DEFAULT_BRANCH_CANDIDATES:
                if self._git("rev-parse", "--verify", "--quiet", f"{prefix}{name}", quiet=True):
                    return name
        return DEFAULT_BRANCH_CANDIDATES[0]

    def base_ref(self, main_branch: str) -> str:
        """Upstream branch if present, then the local branch, then ``HEAD``."""

        for candidate in (f"origin/{main_branch}", main_branch):
            if self._git("rev-parse", "--verify", "--quiet", candidate, quiet=True):
                return candidate
        return "HEAD"

    def names_for(self, job: Job) -> tuple[str, Path]:
        """Deterministic (branch, path) of a job's worktree."""

        label = f"{job.run_id}-{job.index_label}"
        return f"agent/{label}-test-suite", self.settings_provider().worktree_base / label

    def acquire(self, job: Job) -> WorkspaceLease | None:
        """Create the job's worktree; ``None`` when isolation is disabled."""

        if not self.settings_provider().workspace.enabled:
            return None

        original = self.current_branch() or _UNKNOWN_BRANCH
        main_branch = self.detect_main_branch()
        self._git("fetch", "origin", main_branch, quiet=True)
        branch, path = self.names_for(job)

        self._git("worktree", "remove", str(path), "--force", quiet=True)
        self._git("branch", "-D", branch, quiet=True)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.warning(
                "Cannot prepare worktree directory for item %s: %s; continuing without isolation",
                job.index_label,
                error,
            )
            return WorkspaceLease(original_branch=original)

        created = self._git("worktree", "add", "-b", branch, str(path), self.base_ref(main_branch))
        if created is None:
            logger.warning(
                "Failed to create worktree for item %s; continuing without isolation",
                job.index_label,
            )
            return WorkspaceLease(original_branch=original)
        logger.info("Created worktree %s on branch %s", path, branch)
        return WorkspaceLease(original_branch=original, path=path, branch=branch)

    def guard_branch(self, lease: WorkspaceLease | None) -> bool:
        """Snap the shared workspace back to its original branch; True if it had drifted."""

        if lease is None or not lease.original_branch or lease.original_branch == _UNKNOWN_BRANCH:
            return False
        current = self.current_branch()
        if not current or current == lease.original_branch:
            return False
        logger.warning("Branch drifted to %r, restoring %r", current, lease.original_branch)
        self._git("checkout", lease.original_branch)
        return True

    def publish(self, lease: WorkspaceLease | None, job: Job) -> PublishResult:
        """Commit the job's artifact subtree, push it and open a review request."""

        if lease is None or not lease.isolated:
            return PublishResult(skipped_reason="no isolated workspace")
        settings = self.settings_provider()
        worktree = lease.path
        feature = job.feature_name or f"{job.run_id}-{job.index_label}"

        commit_glob = settings.workspace.commit_glob
        add_path = f"{commit_glob}{feature}/" if commit_glob.endswith("/") else commit_glob
        if self._git("add", "--", add_path, cwd=worktree) is None:
            return PublishResult(skipped_reason=f"nothing matched {add_path}")
        if not self._git("diff", "--cached", "--name-only", cwd=worktree):
            logger.info("No staged changes for item %s, skipping commit", job.index_label)
            return PublishResult(skipped_reason="nothing staged")

        message = f"test(agent): add {feature} spec [AgentLoop {job.run_id}/{job.index_label}]"
        if self._git("commit", "-m", message, cwd=worktree) is None:
            return PublishResult(skipped_reason="commit failed")

        pushed = self._git("push", "-u", "origin", lease.branch, cwd=worktree) is not None
        if pushed:
            logger.info("Pushed %s", lease.branch)

        review_output: str | None = None
        template = settings.workspace.pr_create_command.strip()
        if template:
            argv = shlex.split(
                render_review_command(template, feature=feature, job=job),
                posix=os.name != "nt",
            )
            review_output = self.runner.run(argv, cwd=worktree) if argv else None
            if review_output is None:
                logger.warning(
                    "Review request command failed for item %s (non-fatal)",
                    job.index_label,
                )
            else:
                logger.info("Review request created: %s", review_output)
        return PublishResult(committed=True, pushed=pushed, review_output=review_output)

    def release(self, lease: WorkspaceLease) -> None:
        """Restore the shared workspace branch, then remove the worktree."""

        self.guard_branch(lease)
        if lease.path is not None:
            self._git("worktree", "remove", str(lease.path), "--force")
            logger.info("Removed worktree %s", lease.path)

    @contextmanager
    def job_workspace(self, job: Job) -> Iterator[WorkspaceLease | None]:
        lease = self.acquire(job)
        try:
            yield lease
        finally:
            if lease is not None:
                self.release(lease)


def render_review_command(template: str, *, feature: str, job: Job) -> str:
    values = {"featurename": feature, "runid": job.run_id, "item": job.index_label}
    rendered = template
    for key, pattern in _PR_PLACEHOLDERS.items():
        rendered = pattern.sub(lambda _match, value=values[key]: value, rendered)
    return rendered
