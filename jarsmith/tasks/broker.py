"""Dramatiq broker setup.

Importing this module has no side effect; entry points call
:func:`setup_broker` once before any actor is declared.
"""

from __future__ import annotations

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from loguru import logger
from rich.console import Console

from jarsmith.config import Settings, get_settings
from jarsmith.core.git import mask_url

console = Console()
log = logger.bind(module="tasks.broker")

__all__ = ["broker", "setup_broker"]

broker: dramatiq.Broker | None = None


def setup_broker(*, settings: Settings | None = None) -> dramatiq.Broker:
    """Create the configured broker and install it as Dramatiq's global broker."""

    global broker
    settings = settings or get_settings()
    if settings.tasks_broker == "stub":
        configured: dramatiq.Broker = StubBroker()
        configured.emit_after("process_boot")
        label = "stub"
    else:
        configured = RedisBroker(url=settings.tasks_redis_url)
        label = mask_url(settings.tasks_redis_url)

    dramatiq.set_broker(configured)
    broker = configured
    console.log(f"[bold green]Dramatiq broker ready[/] {label}")
    log.info("Dramatiq broker configured: {}", label)
    return configured
