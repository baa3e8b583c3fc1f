"""Filesystem notifications for agent artifacts, backed by watchdog."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agent_loop_runner.config import Settings
from agent_loop_runner.orchestrator.correlator import ArtifactKind, EventCorrelator

logger = logging.getLogger(__name__)

_STATUS_NAME_RE = re.compile(r"^\d+\.status\.md$", re.IGNORECASE)
_IGNORED_PARTS = frozenset({".git"})


def glob_matches(pattern: str, rel_path: str) -> bool:
    """Match a workspace-relative posix path against a ``**``-style glob.

    ``fnmatch`` lets ``*`` cross directory separators, so the only extra work
    is allowing ``**/`` to match zero directories.
    """

    normalized = pattern.replace("\\", "/").strip()
    normalized = normalized.removeprefix("./")
    if not normalized:
        return False
    candidates = {normalized, normalized.replace("/**/", "/")}
    if normalized.startswith("**/"):
        stripped = normalized[3:]
        candidates.update({stripped, stripped.replace("/**/", "/")})
    return any(fnmatch.fnmatchcase(rel_path, candidate) for candidate in candidates)


def is_status_artifact(path: Path, status_dir: Path) -> bool:
    if not _STATUS_NAME_RE.match(path.name):
        return False
    try:
        return path.resolve().parent.parent == status_dir.resolve()
    except OSError:
        return False


def classify(path: Path, rel_path: str, settings: Settings) -> ArtifactKind | None:
    """Decide which artifact class a changed file belongs to, if any."""

    if is_status_artifact(path, settings.status_dir):
        return ArtifactKind.STATUS
    artifacts = settings.artifacts
    if glob_matches(artifacts.status_glob, rel_path) and _STATUS_NAME_RE.match(path.name):
        return ArtifactKind.STATUS
    if glob_matches(artifacts.progress_glob, rel_path):
        return ArtifactKind.PROGRESS
    if glob_matches(artifacts.spec_glob, rel_path):
        return ArtifactKind.SPEC
    if glob_matches(artifacts.requirements_glob, rel_path):
        return ArtifactKind.REQUIREMENTS
    return None


class ArtifactEventHandler(FileSystemEventHandler):
    """Forward created/modified/moved files under ``root`` to the correlator."""

    def __init__(
        self,
        *,
        root: Path,
        correlator: EventCorrelator,
        settings_provider: Callable[[], Settings],
    ) -> None:
        super().__init__()
        self.root = root
        self.correlator = correlator
        self.settings_provider = settings_provider

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path, is_directory=event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path, is_directory=event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event.dest_path, is_directory=event.is_directory)

    def _handle(self, raw_path: str | bytes, *, is_directory: bool) -> None:
        if is_directory or not raw_path:
            return
        path = Path(os.fsdecode(raw_path))
        try:
            rel_path = path.relative_to(self.root).as_posix()
        except ValueError:
            return
        if _IGNORED_PARTS.intersection(rel_path.split("/")):
            return

        kind = classify(path, rel_path, self.settings_provider())
        if kind is None:
            return
        try:
            self.correlator.handle(kind, path)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to correlate %s artifact %s", kind.value, path)


class ArtifactWatcher:
    """Owns one watchdog observer over the shared workspace and the worktree base."""

    def __init__(
        self,
        *,
        correlator: EventCorrelator,
        settings_provider: Callable[[], Settings],
    ) -> None:
        self.correlator = correlator
        self.settings_provider = settings_provider
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def roots(self) -> list[Path]:
        settings = self.settings_provider()
        roots = [settings.workspace_root.resolve()]
        if settings.workspace.enabled:
            roots.append(settings.worktree_base)
        unique: list[Path] = []
        for root in roots:
            if any(root == kept or root.is_relative_to(kept) for kept in unique):
                continue
            unique = [kept for kept in unique if not kept.is_relative_to(root)]
            unique.append(root)
        return unique

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        for root in self.roots():
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                logger.warning("Cannot watch %s: %s", root, error)
                continue
            handler = ArtifactEventHandler(
                root=root,
                correlator=self.correlator,
                settings_provider=self.settings_provider,
            )
            observer.schedule(handler, str(root), recursive=True)
            logger.debug("Watching %s for agent artifacts", root)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)

    def restart(self) -> None:
        self.stop()
        self.start()
