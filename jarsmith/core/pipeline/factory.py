"""Default wiring of the orchestrator and its collaborators."""

from __future__ import annotations

from typing import Callable
from uuid import UUID

from jarsmith.config import Settings, get_settings
from jarsmith.core.job_store import JobStore
from jarsmith.core.locks import EnvironmentLocks, build_environment_locks
from jarsmith.core.pipeline.archive import ArchiveBuilder
from jarsmith.core.pipeline.deploy import Deployer
from jarsmith.core.pipeline.diff import DiffResolver
from jarsmith.core.pipeline.orchestrator import JobOrchestrator
from jarsmith.core.pipeline.overrides import OverrideApplier
from jarsmith.core.pipeline.transports import build_transports
from jarsmith.core.repository import GitDiffProvider
from jarsmith.db.collaborators import SqlEnvironmentDirectory, SqlOverrideStore, SqlProjectDirectory

__all__ = ["build_orchestrator"]


def build_orchestrator(
    *,
    settings: Settings | None = None,
    dispatch: Callable[[UUID], None] | None = None,
    locks: EnvironmentLocks | None = None,
) -> JobOrchestrator:
    """Return an orchestrator backed by git, the database and real transports."""

    settings = settings or get_settings()
    environments = SqlEnvironmentDirectory()
    return JobOrchestrator(
        store=JobStore(),
        projects=SqlProjectDirectory(),
        environments=environments,
        resolver=DiffResolver(GitDiffProvider(settings), max_files=settings.diff_max_files),
        overrides=OverrideApplier(environments, SqlOverrideStore()),
        builder=ArchiveBuilder(settings.archive_root, compression_level=settings.archive_compression_level),
        deployer=Deployer(build_transports(settings), settings=settings),
        locks=locks or build_environment_locks(settings),
        dispatch=dispatch,
        log_page_max=settings.log_page_max,
    )
