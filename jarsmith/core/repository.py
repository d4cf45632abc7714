from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterator, Sequence

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from git.objects import Blob, Commit
from loguru import logger
from rich.console import Console

from jarsmith.config import Settings, get_settings
from jarsmith.core.collaborators import ProjectRef
from jarsmith.core.errors import DiffTooLarge, InvalidReference, RepositoryUnavailable
from jarsmith.core.git import (
    RepositoryError,
    ensure_commit,
    fetch_branch,
    git_failure,
    lookup_commit,
    mask_url,
)
from jarsmith.core.pipeline.changes import FileChange, RequestedFile
from jarsmith.core.types import ChangeKind
from jarsmith.naming import safe_slug

console = Console()
log = logger.bind(module="core.repository")

__all__ = ["GitDiffProvider"]

_BINARY_PATCH_MARKERS = (b"Binary files", b"GIT binary patch")


def _decode_patch(raw: bytes | str | None) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw or None
    if not raw or any(marker in raw for marker in _BINARY_PATCH_MARKERS):
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _as_repository_error(exc: RepositoryError, context: str) -> Exception:
    if exc.missing_ref:
        return InvalidReference(f"{context}: {exc}")
    return RepositoryUnavailable(f"{context}: {exc}")


def _is_rename(diff) -> bool:  # type: ignore[no-untyped-def]
    change_type = (getattr(diff, "change_type", None) or "").upper()
    return change_type == "R" or bool(getattr(diff, "renamed_file", False))


class GitDiffProvider:
    """Repository access backed by one bare GitPython clone per project.

    Git commands against one cache directory are serialised with a per-project
    lock; jobs for different projects run in parallel.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.cache_dir = Path(self.settings.repo_cache_dir).expanduser().resolve()
        self.fetch_depth = self.settings.repo_fetch_depth
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Public API ------------------------------------------------------------

    def resolve_commit(self, project: ProjectRef, branch: str, ref: str | None) -> str:
        """Return the full hash of ``ref`` (or the branch tip when ref is None)."""

        with self._project_lock(project):
            repo = self._open(project)
            commit = (ref or "").strip()
            try:
                if commit:
                    return ensure_commit(repo, commit, branch=branch, depth=self.fetch_depth)
                fetch_branch(repo, branch, depth=self.fetch_depth)
            except RepositoryError as exc:
                raise _as_repository_error(exc, f"Cannot resolve {commit or branch!r}") from exc
            tip = lookup_commit(repo, f"refs/remotes/origin/{branch}")
            if tip is None:
                raise InvalidReference(f"Branch {branch!r} has no commits.")
            return tip

    def compare(
        self,
        project: ProjectRef,
        branch: str,
        base: str,
        head: str,
        *,
        max_files: int | None = None,
    ) -> list[FileChange]:
        """Return every path that differs between ``base`` and ``head``.

        The changed paths are counted from raw diff metadata first, so
        ``max_files`` is enforced before any blob or patch is read.
        """

        with self._project_lock(project):
            repo = self._open(project)
            base_commit = self._commit(repo, base)
            head_commit = self._commit(repo, head)
            try:
                count = sum(2 if _is_rename(diff) else 1 for diff in base_commit.diff(head_commit))
                if max_files is not None and count > max_files:
                    raise DiffTooLarge(count, max_files)
                diffs = base_commit.diff(head_commit, create_patch=True)
            except GitCommandError as exc:
                raise RepositoryUnavailable(str(git_failure(exc, "Failed to diff commits"))) from exc

            changes: list[FileChange] = []
            for diff in diffs:
                changes.extend(self._changes_for(diff, head_commit))
        changes.sort(key=lambda change: change.path)
        return changes

    def tree(self, project: ProjectRef, branch: str, head: str) -> list[FileChange]:
        """Return the full head tree as ``added`` entries."""

        with self._project_lock(project):
            repo = self._open(project)
            head_commit = self._commit(repo, head)
            changes = [
                FileChange(path=blob.path, kind=ChangeKind.ADDED, content=blob.data_stream.read())
                for blob in self._iter_blobs(head_commit)
            ]
        changes.sort(key=lambda change: change.path)
        return changes

    def read_files(
        self,
        project: ProjectRef,
        branch: str,
        head: str,
        files: Sequence[RequestedFile],
    ) -> list[FileChange]:
        """Materialise an explicit file list against the head commit."""

        with self._project_lock(project):
            repo = self._open(project)
            head_commit = self._commit(repo, head)
            changes: list[FileChange] = []
            for entry in files:
                if entry.kind is ChangeKind.DELETED:
                    changes.append(FileChange(path=entry.path, kind=ChangeKind.DELETED))
                    continue
                blob = self._blob(head_commit, entry.path)
                if blob is None:
                    raise InvalidReference(
                        f"{entry.path} does not exist in commit {head_commit.hexsha[:12]}.",
                    )
                changes.append(
                    FileChange(path=entry.path, kind=entry.kind, content=blob.data_stream.read()),
                )
        return changes

    # Internal helpers -----------------------------------------------------

    def _project_lock(self, project: ProjectRef) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(project.project_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[project.project_id] = lock
            return lock

    def _cache_path(self, project: ProjectRef) -> Path:
        return self.cache_dir / f"{safe_slug(project.project_id)}.git"

    def _open(self, project: ProjectRef) -> Repo:
        path = self._cache_path(project)
        remote_url = (project.remote_url or "").strip()
        if not remote_url:
            raise RepositoryUnavailable(f"Project {project.project_id!r} has no remote URL.")

        if path.exists():
            try:
                repo = Repo(path)
            except (InvalidGitRepositoryError, NoSuchPathError) as exc:
                raise RepositoryUnavailable(f"Repository cache {path} is corrupt.") from exc
            self._ensure_origin(repo, remote_url)
            return repo

        path.parent.mkdir(parents=True, exist_ok=True)
        console.log(f"[yellow]Cloning repository[/] {mask_url(remote_url)} -> {path}")
        log.info("Cloning {} into {}", mask_url(remote_url), path)
        kwargs: dict[str, object] = {"bare": True}
        if self.fetch_depth:
            kwargs["depth"] = int(self.fetch_depth)
        try:
            return Repo.clone_from(remote_url, path, **kwargs)
        except GitCommandError as exc:
            raise RepositoryUnavailable(str(git_failure(exc, "Failed to clone repository"))) from exc

    @staticmethod
    def _ensure_origin(repo: Repo, remote_url: str) -> None:
        try:
            origin = repo.remote("origin")
        except ValueError:
            repo.create_remote("origin", remote_url)
            return
        current = next(iter(origin.urls), None)
        if current != remote_url:
            log.warning("Updating origin remote from {} to {}", mask_url(str(current)), mask_url(remote_url))
            origin.set_url(remote_url)

    @staticmethod
    def _commit(repo: Repo, ref: str) -> Commit:
        full = lookup_commit(repo, ref)
        if full is None:
            raise InvalidReference(f"Commit {ref!r} does not resolve.")
        return repo.commit(full)

    @staticmethod
    def _blob(commit: Commit, path: str) -> Blob | None:
        try:
            item = commit.tree / path
        except KeyError:
            return None
        return item if isinstance(item, Blob) else None

    @staticmethod
    def _iter_blobs(commit: Commit) -> Iterator[Blob]:
        for item in commit.tree.traverse():
            if isinstance(item, Blob):
                yield item

    def _changes_for(self, diff, head_commit: Commit) -> list[FileChange]:  # type: ignore[no-untyped-def]
        change_type = (getattr(diff, "change_type", None) or "M").upper()
        patch = _decode_patch(getattr(diff, "diff", None))
        a_path = diff.a_path
        b_path = diff.b_path

        if change_type == "D" or getattr(diff, "deleted_file", False):
            return [FileChange(path=a_path or b_path, kind=ChangeKind.DELETED)]

        blob = self._blob(head_commit, b_path or a_path)
        if blob is None:
            raise InvalidReference(f"{b_path or a_path} is missing from commit {head_commit.hexsha[:12]}.")
        content = blob.data_stream.read()

        if _is_rename(diff):
            return [
                FileChange(path=a_path, kind=ChangeKind.DELETED),
                FileChange(path=b_path, kind=ChangeKind.ADDED, patch=patch, content=content),
            ]
        if change_type in {"A", "C"} or getattr(diff, "new_file", False):
            return [FileChange(path=b_path, kind=ChangeKind.ADDED, patch=patch, content=content)]
        return [FileChange(path=b_path or a_path, kind=ChangeKind.MODIFIED, patch=patch, content=content)]
