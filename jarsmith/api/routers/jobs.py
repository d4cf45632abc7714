"""Deployment job endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse

from jarsmith.api.pagination import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, next_offset, normalize_pagination
from jarsmith.api.schemas.jobs import (
    CancelOut,
    JobCreatedOut,
    JobDetailOut,
    JobPageOut,
    job_detail_out,
    job_out,
)
from jarsmith.api.services.jobs import archive_download_path, get_orchestrator
from jarsmith.core.job_store import JobNotFound, JobStoreError
from jarsmith.core.pipeline.orchestrator import JobOrchestrator
from jarsmith.core.requests import JobRequest
from jarsmith.core.types import JobState

router = APIRouter()


@router.post("/jobs", response_model=JobCreatedOut, status_code=201)
def submit_job(
    request: JobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobCreatedOut:
    try:
        job = orchestrator.submit(request)
    except JobStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return JobCreatedOut(job_id=job.job_id, state=job.state.value, created_at=job.created_at)


@router.get("/jobs", response_model=JobPageOut)
def get_jobs(
    project_id: str | None = None,
    environment_id: str | None = None,
    state: JobState | None = None,
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(default=0, ge=0),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobPageOut:
    limit, offset = normalize_pagination(limit, offset)
    try:
        jobs, total = orchestrator.list_jobs(
            project_id=project_id,
            environment_id=environment_id,
            state=state,
            limit=limit,
            offset=offset,
        )
    except JobStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return JobPageOut(
        items=[job_out(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
        next_offset=next_offset(offset=offset, returned=len(jobs), total=total),
    )


@router.get("/jobs/{job_id}", response_model=JobDetailOut)
def get_job_detail(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobDetailOut:
    try:
        job = orchestrator.status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found.") from exc
    has_archive = bool(job.archive_location or job.partial_archive_location)
    return job_detail_out(job, archive_url=archive_download_path(job_id) if has_archive else None)


@router.post("/jobs/{job_id}/cancel", response_model=CancelOut, status_code=202)
def cancel_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> CancelOut:
    try:
        outcome, job = orchestrator.cancel(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found.") from exc
    if not outcome.accepted:
        raise HTTPException(status_code=409, detail=f"Job is already {job.state.value}.")
    return CancelOut(
        job_id=job.job_id,
        outcome=outcome,
        accepted=outcome.accepted,
        state=job.state.value,
        cancel_requested=job.cancel_requested,
    )


@router.get("/jobs/{job_id}/archive")
def download_archive(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    try:
        path = orchestrator.archive_path(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found.") from exc
    if path is None:
        raise HTTPException(status_code=404, detail="Job has no stored archive.")
    return FileResponse(path, media_type="application/java-archive", filename=path.name)
