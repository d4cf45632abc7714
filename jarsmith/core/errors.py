"""Pipeline error kinds.

Every stage raises a subclass of :class:`PipelineError`. The orchestrator
records ``kind`` and ``str(exc)`` as the job's terminal error, so messages must
be safe to show to users (no credentials, no raw tracebacks).
"""

from __future__ import annotations

from typing import ClassVar

__all__ = [
    "BuildFailed",
    "ConnectionFailed",
    "DeployRejected",
    "DeployTimeout",
    "DiffTooLarge",
    "EmptyChangeSet",
    "EnvironmentNotFound",
    "InvalidReference",
    "JobCancelled",
    "PipelineError",
    "ProductionGuardViolation",
    "ProjectNotFound",
    "RepositoryUnavailable",
]


class PipelineError(RuntimeError):
    """Base class for failures raised by pipeline stages."""

    kind: ClassVar[str] = "PipelineError"
    retryable: ClassVar[bool] = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = str(message)


class RepositoryUnavailable(PipelineError):
    """The repository cannot be cloned or fetched."""

    kind = "RepositoryUnavailable"


class ProjectNotFound(RepositoryUnavailable):
    """No repository is registered under the project id."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id!r} is not registered.")
        self.project_id = project_id


class InvalidReference(PipelineError):
    """A commit id, branch or listed path does not resolve."""

    kind = "InvalidReference"


class DiffTooLarge(PipelineError):
    """More files changed than the configured ceiling allows."""

    kind = "DiffTooLarge"

    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"{count} files changed; the limit is {limit}.")
        self.count = int(count)
        self.limit = int(limit)


class EnvironmentNotFound(PipelineError):
    kind = "EnvironmentNotFound"

    def __init__(self, environment_id: str) -> None:
        super().__init__(f"Environment {environment_id!r} does not exist.")
        self.environment_id = environment_id


class BuildFailed(PipelineError):
    """Packaging the archive failed; wraps the underlying error."""

    kind = "BuildFailed"


class EmptyChangeSet(PipelineError):
    kind = "EmptyChangeSet"


class ConnectionFailed(PipelineError):
    """Network or authentication failure talking to the target server."""

    kind = "ConnectionFailed"
    retryable = True


class DeployRejected(PipelineError):
    """The target server refused the archive."""

    kind = "DeployRejected"


class DeployTimeout(PipelineError):
    kind = "DeployTimeout"


class ProductionGuardViolation(PipelineError):
    """A production deployment was not explicitly confirmed."""

    kind = "ProductionGuardViolation"


class JobCancelled(PipelineError):
    """Raised at a checkpoint after a cancellation request."""

    kind = "Cancelled"

    def __init__(self, message: str = "Job cancelled by request.") -> None:
        super().__init__(message)
