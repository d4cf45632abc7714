"""Deployment job schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from jarsmith.api.schemas import OrmOutModel
from jarsmith.core.job_store import CancelOutcome, JobSnapshot


class JobErrorOut(OrmOutModel):
    kind: str
    message: str
    stage: str | None = None


class RequestedFileOut(BaseModel):
    path: str
    status: str


class JobCreatedOut(BaseModel):
    job_id: UUID
    state: str
    created_at: datetime


class JobOut(BaseModel):
    job_id: UUID
    project_id: str
    branch: str
    version: str
    environment_id: str | None
    strategy: str
    state: str
    step: str
    progress: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    error: JobErrorOut | None = None
    warning: str | None = None
    cancel_requested: bool = False


class JobDetailOut(JobOut):
    base_commit: str | None
    head_commit: str | None
    apply_overrides: bool
    requested_files: list[RequestedFileOut]
    archive_location: str | None
    partial_archive_location: str | None
    archive_sha256: str | None
    file_count: int | None
    override_digest: str | None
    last_log_seq: int
    archive_url: str | None = None


class JobPageOut(BaseModel):
    items: list[JobOut]
    total: int
    limit: int
    offset: int
    next_offset: int | None = None


class CancelOut(BaseModel):
    job_id: UUID
    outcome: CancelOutcome
    accepted: bool
    state: str
    cancel_requested: bool


def job_out(job: JobSnapshot) -> JobOut:
    return JobOut(**_summary_fields(job))


def job_detail_out(job: JobSnapshot, *, archive_url: str | None = None) -> JobDetailOut:
    return JobDetailOut(
        **_summary_fields(job),
        base_commit=job.base_commit,
        head_commit=job.head_commit,
        apply_overrides=job.apply_overrides,
        requested_files=[RequestedFileOut(path=item.path, status=item.kind.value) for item in job.requested_files],
        archive_location=job.archive_location,
        partial_archive_location=job.partial_archive_location,
        archive_sha256=job.archive_sha256,
        file_count=job.file_count,
        override_digest=job.override_digest,
        last_log_seq=job.last_log_seq,
        archive_url=archive_url,
    )


def _summary_fields(job: JobSnapshot) -> dict:
    return {
        "job_id": job.job_id,
        "project_id": job.project_id,
        "branch": job.branch,
        "version": job.version,
        "environment_id": job.environment_id,
        "strategy": job.strategy.value,
        "state": job.state.value,
        "step": job.step,
        "progress": job.progress,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "error": JobErrorOut.model_validate(job.error) if job.error else None,
        "warning": job.warning,
        "cancel_requested": job.cancel_requested,
    }
