"""Process-wide orchestrator used by the job endpoints."""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID

from loguru import logger

from jarsmith.config import get_settings
from jarsmith.core.pipeline.factory import build_orchestrator
from jarsmith.core.pipeline.orchestrator import JobOrchestrator
from jarsmith.tasks.broker import setup_broker
from jarsmith.tasks.workers import build_job_dispatcher, build_job_sender_actor

log = logger.bind(module="api.services.jobs")

__all__ = ["archive_download_path", "get_orchestrator"]


@lru_cache
def get_orchestrator() -> JobOrchestrator:
    """Return the API-side orchestrator; submissions are enqueued on Dramatiq."""

    settings = get_settings()
    setup_broker(settings=settings)
    sender = build_job_sender_actor(settings=settings)
    log.info("API orchestrator dispatching to queue {}", sender.queue_name)
    return build_orchestrator(settings=settings, dispatch=build_job_dispatcher(sender))


def archive_download_path(job_id: UUID) -> str:
    return f"/api/v1/jobs/{job_id}/archive"
