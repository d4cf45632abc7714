"""Job log pages and the server-sent-events tail."""

from __future__ import annotations

import json
import time
from typing import Iterator
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from loguru import logger

from jarsmith.api.schemas.logs import LogEntryOut, LogPageOut
from jarsmith.api.services.jobs import get_orchestrator
from jarsmith.core.job_store import JobNotFound, JobStoreError, LogEntry
from jarsmith.core.pipeline.orchestrator import JobOrchestrator

router = APIRouter()
log = logger.bind(module="api.routers.logs")

STREAM_POLL_SECONDS = 0.5


@router.get("/jobs/{job_id}/logs", response_model=LogPageOut)
def get_job_logs(
    job_id: UUID,
    since: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> LogPageOut:
    try:
        # Read the state first so a terminal job is never reported with a partial page.
        job = orchestrator.status(job_id)
        entries = orchestrator.logs(job_id, since=since, limit=limit)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found.") from exc
    next_since = entries[-1].seq if entries else since
    return LogPageOut(
        job_id=job_id,
        entries=[LogEntryOut.model_validate(entry) for entry in entries],
        next_since=next_since,
        state=job.state.value,
        terminal=job.is_terminal and next_since >= job.last_log_seq,
    )


def _sse(event: str, data: dict, *, event_id: int | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


def _entry_payload(entry: LogEntry) -> dict:
    return LogEntryOut.model_validate(entry).model_dump(mode="json")


def tail_job_logs(
    orchestrator: JobOrchestrator,
    job_id: UUID,
    *,
    since: int,
    poll_seconds: float = STREAM_POLL_SECONDS,
) -> Iterator[str]:
    """Yield SSE frames for new entries until the job is terminal and drained."""

    cursor = since
    while True:
        try:
            job = orchestrator.status(job_id)
            entries = orchestrator.logs(job_id, since=cursor)
        except JobStoreError as exc:
            log.warning("Log stream for job {} stopped: {}", job_id, exc)
            yield _sse("error", {"message": str(exc)})
            return
        for entry in entries:
            cursor = entry.seq
            yield _sse("log", _entry_payload(entry), event_id=entry.seq)
        if job.is_terminal and cursor >= job.last_log_seq:
            yield _sse("end", {"state": job.state.value, "progress": job.progress}, event_id=cursor)
            return
        if not entries:
            time.sleep(poll_seconds)


@router.get("/jobs/{job_id}/logs/stream")
def stream_job_logs(
    job_id: UUID,
    since: int = Query(default=0, ge=0),
    last_event_id: str | None = Header(default=None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    try:
        orchestrator.status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found.") from exc
    # Browsers resend the last delivered id when an EventSource reconnects.
    if last_event_id and last_event_id.strip().isdigit():
        since = max(since, int(last_event_id.strip()))
    return StreamingResponse(
        tail_job_logs(orchestrator, job_id, since=since),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
