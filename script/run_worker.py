from __future__ import annotations

"""Run a Jarsmith deployment worker.

The worker consumes the job queue with ``TASKS_WORKER_THREADS`` threads. Jobs
for different environments run side by side; jobs for the same environment
wait on its deploy lock. Dramatiq's stdlib logging is routed through loguru.

Usage:

    python script/run_worker.py
"""

import signal
import threading
from typing import Sequence

from dramatiq import Worker
from loguru import logger
from rich.console import Console

from jarsmith.config import Settings, get_settings
from jarsmith.core.pipeline.factory import build_orchestrator
from jarsmith.db.base import ensure_database_schema
from jarsmith.log_setup import configure_logging
from jarsmith.naming import tasks_queue_name
from jarsmith.tasks.broker import setup_broker
from jarsmith.tasks.workers import build_job_worker_actor

console = Console()
log = logger.bind(module="script.run_worker")

_STOP_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)) if sig is not None
)


def _build_worker(settings: Settings) -> tuple[Worker, str]:
    broker = setup_broker(settings=settings)
    build_job_worker_actor(settings=settings, orchestrator=build_orchestrator(settings=settings))
    queue = tasks_queue_name(settings.tasks_queue_prefix)
    return Worker(broker, queues={queue}, worker_threads=settings.tasks_worker_threads), queue


def main(_argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    configure_logging(settings, component="worker")
    ensure_database_schema()

    worker, queue = _build_worker(settings)
    stopping = threading.Event()

    def _on_signal(signum: int, _frame: object) -> None:
        log.info("Signal {} received; draining worker", signum)
        stopping.set()

    for sig in _STOP_SIGNALS:
        signal.signal(sig, _on_signal)

    console.log(
        f"[bold green]Jarsmith worker online[/] queue={queue!r} "
        f"threads={settings.tasks_worker_threads} locks={settings.deploy_lock_backend!r}",
    )
    log.info("Worker consuming {} with {} threads", queue, settings.tasks_worker_threads)

    worker.start()
    try:
        stopping.wait()
    except KeyboardInterrupt:
        log.info("Keyboard interrupt; draining worker")
    finally:
        worker.stop()
        worker.join()
        console.log("[bold yellow]Jarsmith worker stopped[/]")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
