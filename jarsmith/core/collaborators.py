"""Contracts for the systems the pipeline reads from.

Projects, environments and file overrides are owned by the dashboard's CRUD
screens. The pipeline only ever reads them, through the small protocols below,
and always works on frozen snapshots so that edits made while a job runs
cannot leak into it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol, Sequence

from jarsmith.core.pipeline.changes import FileChange, RequestedFile
from jarsmith.core.types import DeploymentChannel, OverrideFileType

__all__ = [
    "ArchiveTransport",
    "DeployResult",
    "DiffProvider",
    "EnvironmentDirectory",
    "EnvironmentInfo",
    "OverrideRecord",
    "OverrideStore",
    "ProjectDirectory",
    "ProjectRef",
    "StatusSink",
]

StatusSink = Callable[[str], None]


@dataclass(slots=True, frozen=True)
class ProjectRef:
    project_id: str
    remote_url: str
    default_branch: str | None = None


@dataclass(slots=True, frozen=True)
class EnvironmentInfo:
    """Read-only view of a deployment target."""

    environment_id: str
    name: str
    host: str
    port: int | None = None
    username: str | None = None
    password: str | None = None
    deployment_channel: DeploymentChannel = DeploymentChannel.HTTP
    is_production: bool = False
    wlst_tool_path: str | None = None

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks.
        return (
            f"EnvironmentInfo(environment_id={self.environment_id!r}, host={self.host!r}, "
            f"port={self.port!r}, channel={self.deployment_channel.value!r}, "
            f"production={self.is_production})"
        )


@dataclass(slots=True, frozen=True)
class OverrideRecord:
    override_id: str
    environment_id: str
    file_path: str
    file_type: OverrideFileType
    content: bytes
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    force_include: bool = False


@dataclass(slots=True, frozen=True)
class DeployResult:
    ok: bool
    message: str
    lines: int = 0


class ProjectDirectory(Protocol):
    def get_project(self, project_id: str) -> ProjectRef | None: ...


class EnvironmentDirectory(Protocol):
    def get_environment(self, environment_id: str) -> EnvironmentInfo | None: ...


class OverrideStore(Protocol):
    def list_overrides(self, environment_id: str) -> Sequence[OverrideRecord]: ...


class DiffProvider(Protocol):
    """Repository access used by the diff resolver.

    Implementations raise :class:`~jarsmith.core.errors.RepositoryUnavailable`
    and :class:`~jarsmith.core.errors.InvalidReference`.
    """

    def resolve_commit(self, project: ProjectRef, branch: str, ref: str | None) -> str: ...

    def compare(
        self,
        project: ProjectRef,
        branch: str,
        base: str,
        head: str,
        *,
        max_files: int | None = None,
    ) -> list[FileChange]:
        """Changed paths; raise DiffTooLarge before reading content when over ``max_files``."""
        ...

    def tree(self, project: ProjectRef, branch: str, head: str) -> list[FileChange]: ...

    def read_files(
        self,
        project: ProjectRef,
        branch: str,
        head: str,
        files: Sequence[RequestedFile],
    ) -> list[FileChange]: ...


class ArchiveTransport(Protocol):
    """Pushes archive bytes to a server and activates them."""

    def deploy(
        self,
        *,
        archive_path: str,
        environment: EnvironmentInfo,
        version: str,
        on_status: StatusSink,
    ) -> DeployResult: ...

