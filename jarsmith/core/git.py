from __future__ import annotations

"""Git plumbing for the per-project mirrors.

Every mirror tracks a single remote. Branches are fetched on demand into
``refs/remotes/<remote>/<branch>`` and commits missing from a shallow mirror
are recovered by unshallowing once. Failures surface as
:class:`RepositoryError`, whose message never carries credentials.
"""

import shlex
from typing import Sequence
from urllib.parse import urlsplit, urlunsplit

from git import Repo
from git.exc import GitCommandError
from loguru import logger

log = logger.bind(module="core.git")

__all__ = [
    "RepositoryError",
    "branch_refspec",
    "ensure_commit",
    "fetch_branch",
    "git_failure",
    "is_shallow",
    "lookup_commit",
    "mask_url",
]

DEFAULT_REMOTE = "origin"

# stderr fragments git prints when a ref or object does not exist.
_UNKNOWN_REF_HINTS = (
    "couldn't find remote ref",
    "could not find remote ref",
    "unknown revision",
    "bad revision",
    "not a valid object name",
    "invalid refspec",
)


class RepositoryError(RuntimeError):
    """A git command failed. ``missing_ref`` separates bad refs from outages."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
        stderr: str | None = None,
        missing_ref: bool = False,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.missing_ref = bool(missing_ref)


def mask_url(value: str) -> str:
    """Replace the userinfo part of a URL with ``***``."""

    parts = urlsplit(value)
    if not (parts.username or parts.password):
        return value
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


def _masked_command(command: object) -> str | None:
    if not command:
        return None
    if isinstance(command, str):
        return mask_url(command)
    return shlex.join(mask_url(str(part)) for part in command)  # type: ignore[union-attr]


def git_failure(exc: GitCommandError, context: str) -> RepositoryError:
    """Translate a GitPython failure, masking URLs in the recorded command."""

    command = _masked_command(getattr(exc, "command", None))
    status = getattr(exc, "status", None)
    stderr = str(getattr(exc, "stderr", "") or "")
    lowered = stderr.lower()
    message = context
    if command:
        message += f": {command}"
    message += f" (exit {status})"
    return RepositoryError(
        message,
        command=command,
        returncode=status if isinstance(status, int) else None,
        stderr=stderr or None,
        missing_ref=any(hint in lowered for hint in _UNKNOWN_REF_HINTS),
    )


def branch_refspec(branch: str, *, remote: str = DEFAULT_REMOTE) -> str:
    """Forced refspec copying ``branch`` into its remote-tracking ref."""

    name = (branch or "").strip()
    if not name:
        raise RepositoryError("Branch name must be provided.", missing_ref=True)
    return f"+refs/heads/{name}:refs/remotes/{remote}/{name}"


def lookup_commit(repo: Repo, ref: str) -> str | None:
    """Full hash of ``ref`` in the local object store, or None.

    ``repo.commit()`` accepts any 40-hex string without reading the object, so
    the ref is peeled through ``rev-parse --verify`` instead.
    """

    try:
        answer = repo.git.rev_parse("--verify", "--quiet", f"{ref}^{{commit}}")
    except GitCommandError:
        return None
    return answer.strip() or None


def is_shallow(repo: Repo) -> bool:
    try:
        answer = repo.git.rev_parse("--is-shallow-repository")
    except GitCommandError:
        return False
    return answer.strip().lower() == "true"


def fetch_branch(
    repo: Repo,
    branch: str,
    *,
    depth: int | None = None,
    remote: str = DEFAULT_REMOTE,
) -> None:
    """Fetch ``branch`` (and tags) from ``remote`` into the mirror."""

    try:
        repo.remote(remote)
    except ValueError as exc:
        raise RepositoryError(f"Mirror {repo.git_dir} has no remote named {remote!r}.") from exc

    args = ["--prune", "--tags"]
    if depth:
        args.append(f"--depth={int(depth)}")
    args += [remote, branch_refspec(branch, remote=remote)]
    try:
        repo.git.fetch(*args)
    except GitCommandError as exc:
        raise git_failure(exc, f"Failed to fetch {branch} from {remote}") from exc


def ensure_commit(
    repo: Repo,
    ref: str,
    *,
    branch: str,
    depth: int | None = None,
    remote: str = DEFAULT_REMOTE,
) -> str:
    """Return the full hash of ``ref``, fetching ``branch`` and unshallowing if needed."""

    wanted = (ref or "").strip()
    if not wanted:
        raise RepositoryError("Commit reference must be provided.", missing_ref=True)

    found = lookup_commit(repo, wanted)
    if found is not None:
        return found

    log.info("{} not in mirror; fetching {} from {}", wanted, branch, remote)
    fetch_branch(repo, branch, depth=depth, remote=remote)
    found = lookup_commit(repo, wanted)
    if found is not None:
        return found

    if is_shallow(repo):
        log.info("Mirror is shallow; unshallowing to find {}", wanted)
        try:
            repo.git.fetch("--unshallow", remote)
        except GitCommandError as exc:
            raise git_failure(exc, "Failed to unshallow mirror") from exc
        found = lookup_commit(repo, wanted)
        if found is not None:
            return found

    raise RepositoryError(f"{wanted} does not name a commit reachable from {remote}.", missing_ref=True)
