from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jarsmith.core.types import (
    DeploymentChannel,
    JobState,
    JobStrategy,
    LogStage,
    OverrideFileType,
)
from jarsmith.db.base import Base


def _json() -> JSON:
    """JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).

    Every column needs its own instance: mutable tracking is keyed by type.
    """
    return JSON().with_variant(JSONB(), "postgresql")


StrategyType = SAEnum(JobStrategy, name="job_strategy")


class TimestampMixin:
    """Shared timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Project(TimestampMixin, Base):
    """Source repository a job builds from. Managed outside the pipeline."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    remote_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    default_branch: Mapped[str | None] = mapped_column(String(255))

    environments: Mapped[list["Environment"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<Project id={self.id!r} name={self.name!r}>"


class Environment(TimestampMixin, Base):
    """Deployment target. Read-only to the pipeline."""

    __tablename__ = "environments"
    __table_args__ = (Index("ix_environments_project_id", "project_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int | None] = mapped_column(Integer)
    username: Mapped[str | None] = mapped_column(String(255))
    password: Mapped[str | None] = mapped_column(String(255))
    deployment_channel: Mapped[DeploymentChannel] = mapped_column(
        SAEnum(DeploymentChannel, name="deployment_channel"),
        default=DeploymentChannel.HTTP,
        nullable=False,
    )
    is_production: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    wlst_tool_path: Mapped[str | None] = mapped_column(String(1024))

    project: Mapped["Project | None"] = relationship(back_populates="environments")
    overrides: Mapped[list["FileOverride"]] = relationship(
        back_populates="environment",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<Environment id={self.id!r} host={self.host!r} production={self.is_production}>"


class FileOverride(TimestampMixin, Base):
    """Environment-specific replacement content for one file path."""

    __tablename__ = "file_overrides"
    __table_args__ = (
        UniqueConstraint("environment_id", "file_path", name="uq_file_overrides_env_path"),
        Index("ix_file_overrides_environment_id", "environment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    environment_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("environments.id", ondelete="CASCADE"),
        nullable=False,
    )
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_type: Mapped[OverrideFileType] = mapped_column(
        SAEnum(OverrideFileType, name="override_file_type"),
        nullable=False,
    )
    content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255))
    force_include: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    environment: Mapped["Environment"] = relationship(back_populates="overrides")

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<FileOverride env={self.environment_id!r} path={self.file_path!r}>"


class DeploymentJob(TimestampMixin, Base):
    """One run of the build-and-deploy pipeline."""

    __tablename__ = "deployment_jobs"
    __table_args__ = (
        Index("ix_deployment_jobs_state", "state"),
        Index("ix_deployment_jobs_project_id", "project_id"),
        Index("ix_deployment_jobs_environment_id", "environment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    branch: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(128), nullable=False)
    environment_id: Mapped[str | None] = mapped_column(String(64))
    strategy: Mapped[JobStrategy] = mapped_column(
        StrategyType,
        nullable=False,
    )
    base_commit: Mapped[str | None] = mapped_column(String(64))
    head_commit: Mapped[str | None] = mapped_column(String(64))
    apply_overrides: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requested_files: Mapped[list[dict[str, Any]] | None] = mapped_column(
        MutableList.as_mutable(_json()),
        nullable=True,
    )
    confirm_production: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    confirmed_strategy: Mapped[JobStrategy | None] = mapped_column(
        StrategyType,
        nullable=True,
    )
    confirmed_override_digest: Mapped[str | None] = mapped_column(String(64))

    state: Mapped[JobState] = mapped_column(
        SAEnum(JobState, name="job_state"),
        default=JobState.QUEUED,
        nullable=False,
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    archive_location: Mapped[str | None] = mapped_column(String(2048))
    partial_archive_location: Mapped[str | None] = mapped_column(String(2048))
    archive_sha256: Mapped[str | None] = mapped_column(String(64))
    file_count: Mapped[int | None] = mapped_column(Integer)

    error_kind: Mapped[str | None] = mapped_column(String(64))
    error_message: Mapped[str | None] = mapped_column(Text)
    error_stage: Mapped[str | None] = mapped_column(String(32))
    warning: Mapped[str | None] = mapped_column(String(255))

    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    override_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        MutableDict.as_mutable(_json()),
        nullable=True,
    )
    log_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    log_entries: Mapped[list["JobLogEntry"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="JobLogEntry.seq",
    )

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<DeploymentJob id={self.id} state={self.state} progress={self.progress}>"


class JobLogEntry(Base):
    """Append-only job log line keyed by (job_id, seq)."""

    __tablename__ = "job_log_entries"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deployment_jobs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    seq: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(String(16), nullable=False, default="INFO")
    stage: Mapped[LogStage] = mapped_column(SAEnum(LogStage, name="log_stage"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    job: Mapped["DeploymentJob"] = relationship(back_populates="log_entries")

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<JobLogEntry job={self.job_id} seq={self.seq}>"


class ConfigRecord(TimestampMixin, Base):
    """Versioned configuration document edited with optimistic concurrency."""

    __tablename__ = "config_records"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        MutableDict.as_mutable(_json()),
        default=dict,
        nullable=False,
    )
    updated_by: Mapped[str | None] = mapped_column(String(255))

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<ConfigRecord key={self.key!r} version={self.version}>"
