from __future__ import annotations

from typing import Callable
from uuid import UUID

import dramatiq
from loguru import logger
from rich.console import Console

from jarsmith.config import Settings
from jarsmith.core.job_store import JobNotFound, JobStoreError
from jarsmith.core.pipeline.orchestrator import JobOrchestrator
from jarsmith.naming import tasks_queue_name

console = Console()
log = logger.bind(module="tasks.workers")

__all__ = [
    "JOB_ACTOR_NAME",
    "UNLIMITED_TIME_LIMIT_MS",
    "build_job_dispatcher",
    "build_job_sender_actor",
    "build_job_worker_actor",
]

JOB_ACTOR_NAME = "run_deployment_job"


# Dramatiq has no "no limit" value and defaults to ten minutes, so zero maps
# to a week.
UNLIMITED_TIME_LIMIT_MS = 7 * 24 * 3600 * 1000


def _actor_options(settings: Settings) -> dict[str, int]:
    limit_ms = int(settings.tasks_worker_time_limit_seconds * 1000) or UNLIMITED_TIME_LIMIT_MS
    worst_deploy = settings.deploy_max_attempts * settings.deploy_timeout_seconds
    if limit_ms < worst_deploy * 1000:
        log.warning(
            "Worker time limit {}s is below the worst-case deploy time {:.0f}s; long deploys end as DeployTimeout",
            limit_ms // 1000,
            worst_deploy,
        )
    return {"max_retries": 0, "time_limit": limit_ms}


def build_job_sender_actor(
    *,
    settings: Settings,
) -> dramatiq.Actor:
    """Build an API-side actor used only for enqueueing messages.

    The callable body must not be executed in the API process; it exists so
    `.send(...)` can produce correctly-formed Dramatiq messages.
    """

    queue = tasks_queue_name(settings.tasks_queue_prefix)

    @dramatiq.actor(
        actor_name=JOB_ACTOR_NAME,
        queue_name=queue,
        **_actor_options(settings),
    )
    def run_deployment_job(job_id: str) -> None:  # pragma: no cover - sender stub
        raise RuntimeError(
            "run_deployment_job sender actor must not be executed. "
            "Start a Jarsmith worker process to consume deployment jobs.",
        )

    return run_deployment_job


def build_job_dispatcher(actor: dramatiq.Actor) -> Callable[[UUID], None]:
    """Return the ``dispatch`` callable the orchestrator uses on submit."""

    def _dispatch(job_id: UUID) -> None:
        actor.send(str(job_id))
        log.debug("Enqueued job {} on {}", job_id, actor.queue_name)

    return _dispatch


def build_job_worker_actor(
    *,
    settings: Settings,
    orchestrator: JobOrchestrator,
) -> dramatiq.Actor:
    """Build the worker actor that runs one deployment job per message.

    Retries are disabled at the queue level: the pipeline retries deploy
    connection failures itself and records every other failure on the job.
    """

    queue = tasks_queue_name(settings.tasks_queue_prefix)

    @dramatiq.actor(
        actor_name=JOB_ACTOR_NAME,
        queue_name=queue,
        **_actor_options(settings),
    )
    def run_deployment_job(job_id: str) -> None:
        """Dramatiq actor entry point dispatching the orchestrator."""

        job_id_str = str(job_id).strip()
        if not job_id_str:
            raise ValueError("job_id must be provided.")

        console.log(f"[bold cyan]Deployment job started[/] id={job_id_str} queue={queue}")
        log.info("Starting deployment job {} (queue={})", job_id_str, queue)
        try:
            snapshot = orchestrator.run(UUID(job_id_str))
        except JobNotFound:
            console.log(f"[yellow]Deployment job skipped[/] id={job_id_str} reason=missing")
            log.warning("Job {} does not exist; dropping message", job_id_str)
            return
        except JobStoreError as exc:
            console.log(f"[bold red]Deployment job crashed[/] id={job_id_str} reason={exc}")
            log.error("Job store failure for job {}: {}", job_id_str, exc)
            raise

        console.log(
            f"[bold green]Deployment job finished[/] id={snapshot.job_id} state={snapshot.state.value}",
        )
        log.info("Deployment job {} finished in state {}", snapshot.job_id, snapshot.state.value)

    return run_deployment_job
