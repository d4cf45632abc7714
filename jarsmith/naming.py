"""Naming helpers for queues, repository caches and archive paths.

Project ids, environment ids and version strings arrive from callers and end up
in filesystem paths, queue names and lock keys. All such names are derived here
so that every component agrees on the same safe spelling.
"""

from __future__ import annotations

import hashlib
import re

DEFAULT_TASKS_QUEUE_PREFIX: str = "jarsmith.jobs"
DEFAULT_LOCK_PREFIX: str = "jarsmith.deploy-lock"
ARCHIVE_EXTENSION: str = ".jar"

_SAFE_NAMESPACE_RE = re.compile(r"[^A-Za-z0-9._-]+")
_DASH_COLLAPSE_RE = re.compile(r"-{2,}")
_VERSION_RE = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._+-]{0,127}$")


def _slugify(value: str) -> str:
    """Return a filesystem/queue-safe slug for the provided string."""
    text = (value or "").strip()
    if not text:
        return ""
    replaced = _SAFE_NAMESPACE_RE.sub("-", text)
    collapsed = _DASH_COLLAPSE_RE.sub("-", replaced).strip("-.")
    return collapsed.lower()


def _short_hash(value: str, *, length: int = 8) -> str:
    raw = (value or "").encode("utf-8", errors="ignore")
    return hashlib.sha256(raw).hexdigest()[: max(4, int(length))]


def safe_slug(value: str) -> str:
    """Return a stable slug; values that slugify lossily get a hash suffix.

    Two different ids must never map to the same directory, so whenever the
    slug differs from the raw value a short hash of the raw value is appended.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("Cannot derive a name from an empty value.")
    slug = _slugify(raw)
    if slug and slug == raw:
        return slug
    return f"{slug or 'x'}-{_short_hash(raw)}"


def is_valid_version(version: str) -> bool:
    """Return True when ``version`` is usable as an archive version label."""
    return bool(_VERSION_RE.match((version or "").strip()))


def tasks_queue_name(prefix: str | None = None) -> str:
    """Return the Dramatiq queue name used for deployment jobs."""
    base = _slugify(prefix or "") or DEFAULT_TASKS_QUEUE_PREFIX
    return base


def environment_lock_name(environment_id: str) -> str:
    """Return the lock key serialising deployments to one environment."""
    return f"{DEFAULT_LOCK_PREFIX}.{safe_slug(environment_id)}"


def archive_filename(project_id: str, version: str, digest: str) -> str:
    """Return the content-addressed archive file name."""
    if not is_valid_version(version):
        raise ValueError(f"Invalid archive version {version!r}.")
    return f"{safe_slug(project_id)}-{version}-{digest[:12]}{ARCHIVE_EXTENSION}"


__all__ = [
    "ARCHIVE_EXTENSION",
    "DEFAULT_LOCK_PREFIX",
    "DEFAULT_TASKS_QUEUE_PREFIX",
    "archive_filename",
    "environment_lock_name",
    "is_valid_version",
    "safe_slug",
    "tasks_queue_name",
]
