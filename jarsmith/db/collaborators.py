"""SQLAlchemy-backed read-only directories consumed by the pipeline."""

from __future__ import annotations

from typing import Sequence

from loguru import logger
from sqlalchemy import select

from jarsmith.core.collaborators import EnvironmentInfo, OverrideRecord, ProjectRef
from jarsmith.db.base import session_scope
from jarsmith.db.models import Environment, FileOverride, Project

log = logger.bind(module="db.collaborators")

__all__ = [
    "SqlEnvironmentDirectory",
    "SqlOverrideStore",
    "SqlProjectDirectory",
]


class SqlProjectDirectory:
    def get_project(self, project_id: str) -> ProjectRef | None:
        with session_scope() as session:
            row = session.get(Project, project_id)
            if row is None:
                return None
            return ProjectRef(
                project_id=row.id,
                remote_url=row.remote_url,
                default_branch=row.default_branch,
            )


class SqlEnvironmentDirectory:
    def get_environment(self, environment_id: str) -> EnvironmentInfo | None:
        with session_scope() as session:
            row = session.get(Environment, environment_id)
            if row is None:
                return None
            return EnvironmentInfo(
                environment_id=row.id,
                name=row.name,
                host=row.host,
                port=row.port,
                username=row.username,
                password=row.password,
                deployment_channel=row.deployment_channel,
                is_production=bool(row.is_production),
                wlst_tool_path=row.wlst_tool_path,
            )


class SqlOverrideStore:
    """Reads the override set of one environment in a single query."""

    def list_overrides(self, environment_id: str) -> Sequence[OverrideRecord]:
        with session_scope() as session:
            rows = session.execute(
                select(FileOverride)
                .where(FileOverride.environment_id == environment_id)
                .order_by(FileOverride.file_path, FileOverride.id),
            ).scalars()
            records = [
                OverrideRecord(
                    override_id=str(row.id),
                    environment_id=row.environment_id,
                    file_path=row.file_path,
                    file_type=row.file_type,
                    content=bytes(row.content),
                    created_by=row.created_by,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                    force_include=bool(row.force_include),
                )
                for row in rows
            ]
        log.debug("Loaded {} overrides for environment {}", len(records), environment_id)
        return records
