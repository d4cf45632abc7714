"""Project change preview endpoints.

These resolve a change set exactly as a job would, without creating one, so
callers can review a commit range before submitting a deployment.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from jarsmith.api.schemas.projects import ChangePreviewOut, CompareFilesIn, FileChangeOut, TreeOut
from jarsmith.api.services.jobs import get_orchestrator
from jarsmith.core.errors import (
    DiffTooLarge,
    InvalidReference,
    PipelineError,
    ProjectNotFound,
    RepositoryUnavailable,
)
from jarsmith.core.pipeline.diff import ResolvedChanges
from jarsmith.core.pipeline.orchestrator import JobOrchestrator
from jarsmith.core.types import JobStrategy

router = APIRouter()


def _http_error(exc: PipelineError) -> HTTPException:
    if isinstance(exc, ProjectNotFound):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, (InvalidReference, DiffTooLarge)):
        return HTTPException(status_code=422, detail=exc.message)
    if isinstance(exc, RepositoryUnavailable):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)


def _preview(project_id: str, resolved: ResolvedChanges) -> ChangePreviewOut:
    files = [
        FileChangeOut(
            path=change.path,
            kind=change.kind.value,
            source=change.source.value,
            patch=change.patch,
            size=change.size,
            sha256=change.sha256,
        )
        for change in resolved.changes
    ]
    return ChangePreviewOut(
        project_id=project_id,
        base_commit=resolved.base_commit,
        head_commit=resolved.head_commit,
        count=len(files),
        files=files,
    )


@router.get("/projects/{project_id}/compare", response_model=ChangePreviewOut)
def compare(
    project_id: str,
    base: str = Query(min_length=1),
    head: str | None = Query(default=None),
    branch: str | None = Query(default=None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ChangePreviewOut:
    """Files changed between ``base`` and ``head`` (the branch tip when omitted)."""

    try:
        resolved = orchestrator.preview_changes(project_id, branch=branch, base_commit=base, head_commit=head)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return _preview(project_id, resolved)


@router.post("/projects/{project_id}/compare-files", response_model=ChangePreviewOut)
def compare_files(
    project_id: str,
    payload: CompareFilesIn,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ChangePreviewOut:
    """Like ``compare`` but limited to the listed paths."""

    try:
        resolved = orchestrator.preview_changes(
            project_id,
            branch=payload.branch,
            base_commit=payload.base,
            head_commit=payload.head,
            paths=tuple(payload.files),
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return _preview(project_id, resolved)


@router.get("/projects/{project_id}/tree", response_model=TreeOut)
def tree(
    project_id: str,
    head: str | None = Query(default=None),
    branch: str | None = Query(default=None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> TreeOut:
    """Every path a full build at ``head`` would package."""

    try:
        resolved = orchestrator.preview_changes(
            project_id,
            branch=branch,
            head_commit=head,
            strategy=JobStrategy.FULL,
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return TreeOut(
        project_id=project_id,
        head_commit=resolved.head_commit,
        paths=[change.path for change in resolved.changes],
    )
