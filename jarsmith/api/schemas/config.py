"""Configuration record schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jarsmith.api.schemas import OrmOutModel


class ConfigDocumentOut(OrmOutModel):
    key: str
    version: int
    payload: dict[str, Any]
    updated_at: datetime | None = None
    updated_by: str | None = None


class ConfigUpdateIn(BaseModel):
    """Replacement payload plus the version the editor last read."""

    version: int = Field(ge=0)
    payload: dict[str, Any]
    updated_by: str | None = Field(default=None, max_length=255)
