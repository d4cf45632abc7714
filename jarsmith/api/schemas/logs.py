"""Job log schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from jarsmith.api.schemas import OrmOutModel
from jarsmith.core.types import LogStage


class LogEntryOut(OrmOutModel):
    seq: int
    created_at: datetime
    level: str
    stage: LogStage
    message: str


class LogPageOut(BaseModel):
    job_id: UUID
    entries: list[LogEntryOut]
    # Pass back as ``since`` to continue tailing.
    next_since: int
    state: str
    terminal: bool
