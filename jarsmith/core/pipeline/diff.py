from __future__ import annotations

"""Resolve the change set a job packages.

Three shapes of input are supported:
  - an explicit file list, validated against the head commit;
  - the ``full`` strategy, which packages the whole head tree;
  - the ``diff`` strategy, which compares base and head commits.
"""

from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from jarsmith.core.collaborators import DiffProvider, ProjectRef
from jarsmith.core.errors import DiffTooLarge, InvalidReference
from jarsmith.core.pipeline.changes import FileChange, RequestedFile
from jarsmith.core.types import JobStrategy

log = logger.bind(module="pipeline.diff")

__all__ = ["DiffRequest", "DiffResolver", "ResolvedChanges"]


@dataclass(slots=True, frozen=True)
class DiffRequest:
    project: ProjectRef
    branch: str
    strategy: JobStrategy
    base_commit: str | None = None
    head_commit: str | None = None
    files: tuple[RequestedFile, ...] = ()


@dataclass(slots=True, frozen=True)
class ResolvedChanges:
    """Resolver output plus the commits it was computed against."""

    changes: tuple[FileChange, ...]
    base_commit: str | None
    head_commit: str | None

    @property
    def is_empty(self) -> bool:
        return not self.changes


class DiffResolver:
    """Compute the ordered change set for a job."""

    def __init__(self, provider: DiffProvider, *, max_files: int) -> None:
        self.provider = provider
        self.max_files = max(1, int(max_files))

    def resolve(self, request: DiffRequest) -> ResolvedChanges:
        if request.files:
            return self._explicit(request)
        if request.strategy is JobStrategy.FULL:
            return self._full_tree(request)
        return self._commit_range(request)

    # Branches ---------------------------------------------------------------

    def _explicit(self, request: DiffRequest) -> ResolvedChanges:
        head = self.provider.resolve_commit(request.project, request.branch, request.head_commit)
        files = _dedupe(request.files)
        self._check_ceiling(len(files))
        changes = self.provider.read_files(request.project, request.branch, head, files)
        log.info("Using explicit file list of {} entries at {}", len(changes), head[:12])
        return ResolvedChanges(changes=tuple(changes), base_commit=request.base_commit, head_commit=head)

    def _full_tree(self, request: DiffRequest) -> ResolvedChanges:
        head = self.provider.resolve_commit(request.project, request.branch, request.head_commit)
        changes = self.provider.tree(request.project, request.branch, head)
        log.info("Full tree at {} has {} files", head[:12], len(changes))
        return ResolvedChanges(
            changes=tuple(_sorted(changes)),
            base_commit=request.base_commit,
            head_commit=head,
        )

    def _commit_range(self, request: DiffRequest) -> ResolvedChanges:
        base_ref = (request.base_commit or "").strip()
        head_ref = (request.head_commit or "").strip()
        if not base_ref:
            raise InvalidReference("A base commit is required for a diff build.")
        if base_ref == head_ref:
            log.info("Base and head are both {}; nothing changed", base_ref)
            return ResolvedChanges(changes=(), base_commit=base_ref, head_commit=head_ref)

        base = self.provider.resolve_commit(request.project, request.branch, base_ref)
        head = self.provider.resolve_commit(request.project, request.branch, head_ref or None)
        if base == head:
            log.info("Base {} and head {} resolve to the same commit", base_ref, head_ref or request.branch)
            return ResolvedChanges(changes=(), base_commit=base, head_commit=head)

        changes = self.provider.compare(request.project, request.branch, base, head, max_files=self.max_files)
        self._check_ceiling(len(changes))
        log.info("{} files changed between {} and {}", len(changes), base[:12], head[:12])
        return ResolvedChanges(changes=tuple(_sorted(changes)), base_commit=base, head_commit=head)

    def _check_ceiling(self, count: int) -> None:
        if count > self.max_files:
            raise DiffTooLarge(count, self.max_files)


def _sorted(changes: Sequence[FileChange]) -> list[FileChange]:
    return sorted(changes, key=lambda change: change.path)


def _dedupe(files: Sequence[RequestedFile]) -> tuple[RequestedFile, ...]:
    """Keep the first mention of each path, preserving caller order."""

    seen: set[str] = set()
    unique: list[RequestedFile] = []
    for entry in files:
        if entry.path in seen:
            continue
        seen.add(entry.path)
        unique.append(entry)
    return tuple(unique)
