from __future__ import annotations

"""Merge environment-scoped file overrides into a change set.

The override list is read once per job into an :class:`OverrideSnapshot`.
Everything downstream works from that snapshot, so edits made by environment
administrators while a job runs never reach it.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from loguru import logger

from jarsmith.core.collaborators import EnvironmentDirectory, OverrideRecord, OverrideStore
from jarsmith.core.errors import EnvironmentNotFound
from jarsmith.core.pipeline.changes import FileChange, normalize_path
from jarsmith.core.types import ChangeKind, ChangeSource, JobStrategy

log = logger.bind(module="pipeline.overrides")

__all__ = [
    "OverrideApplier",
    "OverrideSnapshot",
    "compute_override_digest",
]


def _sort_key(record: OverrideRecord) -> tuple[str, str, str]:
    stamp = record.updated_at or record.created_at
    return (normalize_path(record.file_path), stamp.isoformat() if stamp else "", str(record.override_id))


def _latest_per_path(records: Sequence[OverrideRecord]) -> tuple[OverrideRecord, ...]:
    """Collapse records whose paths normalise to the same value.

    The most recently updated record wins; the result is ordered by path.
    """

    chosen: dict[str, OverrideRecord] = {}
    for record in sorted(records, key=_sort_key):
        chosen[normalize_path(record.file_path)] = record
    return tuple(chosen[path] for path in sorted(chosen))


def compute_override_digest(records: Sequence[OverrideRecord]) -> str:
    """Return the sha256 digest operators confirm before a production deploy."""

    digest = hashlib.sha256()
    for record in _latest_per_path(records):
        digest.update(normalize_path(record.file_path).encode("utf-8"))
        digest.update(b"\0")
        digest.update(record.file_type.value.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(record.content).hexdigest().encode("ascii"))
        digest.update(b"\0")
        digest.update(b"1" if record.force_include else b"0")
        digest.update(b"\n")
    return digest.hexdigest()


@dataclass(slots=True, frozen=True)
class OverrideSnapshot:
    environment_id: str
    records: tuple[OverrideRecord, ...]
    digest: str

    @classmethod
    def capture(cls, environment_id: str, records: Sequence[OverrideRecord]) -> "OverrideSnapshot":
        ordered = _latest_per_path(records)
        return cls(environment_id=environment_id, records=ordered, digest=compute_override_digest(ordered))

    def by_path(self) -> dict[str, OverrideRecord]:
        return {normalize_path(record.file_path): record for record in self.records}

    def to_payload(self) -> dict[str, Any]:
        """JSON form persisted on the job (content is never stored twice)."""

        return {
            "environment_id": self.environment_id,
            "digest": self.digest,
            "entries": [
                {
                    "override_id": str(record.override_id),
                    "path": normalize_path(record.file_path),
                    "file_type": record.file_type.value,
                    "sha256": hashlib.sha256(record.content).hexdigest(),
                    "force_include": bool(record.force_include),
                    "created_by": record.created_by,
                }
                for record in self.records
            ],
        }


class OverrideApplier:
    """Take override snapshots and apply them to change sets."""

    def __init__(self, environments: EnvironmentDirectory, store: OverrideStore) -> None:
        self.environments = environments
        self.store = store

    def snapshot(self, environment_id: str) -> OverrideSnapshot:
        if self.environments.get_environment(environment_id) is None:
            raise EnvironmentNotFound(environment_id)
        records = list(self.store.list_overrides(environment_id))
        snapshot = OverrideSnapshot.capture(environment_id, records)
        log.info(
            "Captured {} overrides for environment {} (digest {})",
            len(snapshot.records),
            environment_id,
            snapshot.digest[:12],
        )
        return snapshot

    def apply(
        self,
        changes: Sequence[FileChange],
        snapshot: OverrideSnapshot,
        *,
        strategy: JobStrategy,
        emit: Callable[[str], None] | None = None,
    ) -> list[FileChange]:
        """Return a new change set with ``snapshot`` applied.

        Matching entries keep their position; force-included overrides for
        untouched paths are appended in path order under the diff strategy.
        """

        overrides = snapshot.by_path()
        matched: set[str] = set()
        result: list[FileChange] = []

        for change in changes:
            record = overrides.get(change.path)
            if record is None:
                result.append(change)
                continue
            matched.add(change.path)
            kind = ChangeKind.ADDED if change.kind is ChangeKind.ADDED else ChangeKind.MODIFIED
            result.append(_overridden(change.path, kind, record))
            _emit(emit, f"Override {record.file_type.value} applied to {change.path} ({change.kind.value} -> {kind.value})")

        for path, record in sorted(overrides.items()):
            if path in matched:
                continue
            if strategy is JobStrategy.DIFF and record.force_include:
                result.append(_overridden(path, ChangeKind.MODIFIED, record))
                _emit(emit, f"Override {record.file_type.value} force-included for {path}")
            else:
                log.debug("Override for {} ignored: path not in change set", path)
        return result


def _overridden(path: str, kind: ChangeKind, record: OverrideRecord) -> FileChange:
    return FileChange(
        path=path,
        kind=kind,
        patch=None,
        content=bytes(record.content),
        source=ChangeSource.OVERRIDE,
        override_id=str(record.override_id),
    )


def _emit(emit: Callable[[str], None] | None, message: str) -> None:
    log.info(message)
    if emit is not None:
        emit(message)
