from __future__ import annotations

from pydantic import BaseModel


class HealthOut(BaseModel):
    status: str
    app: str
    environment: str
    db_ok: bool
    db_error: str | None = None
    broker: str
