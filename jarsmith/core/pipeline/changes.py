"""Change-set records passed between pipeline stages."""

from __future__ import annotations

import hashlib
import posixpath
from dataclasses import dataclass, field

from jarsmith.core.types import ChangeKind, ChangeSource

__all__ = [
    "FileChange",
    "RequestedFile",
    "change_kind_of",
    "normalize_path",
]

_KIND_ALIASES = {
    "a": "added",
    "new": "added",
    "m": "modified",
    "changed": "modified",
    "renamed": "modified",
    "d": "deleted",
    "removed": "deleted",
}


def normalize_path(path: str) -> str:
    """Return the repository-relative POSIX spelling of ``path``.

    Overrides are typed in by people, so ``./a/b.proxy``, ``/a/b.proxy`` and
    ``a\\b.proxy`` must all match the repository path ``a/b.proxy``.
    """
    text = str(path or "").strip().replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    text = text.lstrip("/")
    if not text:
        raise ValueError("File path must be non-empty.")
    normalized = posixpath.normpath(text)
    if normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"File path {path!r} escapes the repository root.")
    return normalized


def change_kind_of(value: str | ChangeKind) -> ChangeKind:
    """Parse the dashboard's spellings of a change status."""

    if isinstance(value, ChangeKind):
        return value
    text = str(value or "").strip().lower()
    return ChangeKind(_KIND_ALIASES.get(text, text))


@dataclass(slots=True, frozen=True)
class RequestedFile:
    """Entry of an explicit file list supplied with a job request."""

    path: str
    kind: ChangeKind = ChangeKind.MODIFIED

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))
        object.__setattr__(self, "kind", change_kind_of(self.kind))


@dataclass(slots=True, frozen=True)
class FileChange:
    """One path in a change set.

    ``content`` holds the bytes that will be packaged; it is ``None`` for
    deletions. ``patch`` is the unified diff for text files when known.
    """

    path: str
    kind: ChangeKind
    patch: str | None = None
    content: bytes | None = field(default=None, repr=False)
    source: ChangeSource = ChangeSource.REPOSITORY
    override_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))
        if self.kind is not ChangeKind.DELETED and self.content is None:
            raise ValueError(f"{self.path}: {self.kind.value} entries need content.")

    @property
    def sha256(self) -> str | None:
        if self.content is None:
            return None
        return hashlib.sha256(self.content).hexdigest()

    @property
    def size(self) -> int:
        return len(self.content) if self.content is not None else 0
