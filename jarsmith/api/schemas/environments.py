"""Environment override digest schemas."""

from __future__ import annotations

from pydantic import BaseModel

from jarsmith.api.schemas import OrmOutModel


class OverrideEntryOut(OrmOutModel):
    override_id: str
    path: str
    file_type: str
    sha256: str
    force_include: bool
    created_by: str | None = None


class OverrideDigestOut(BaseModel):
    environment_id: str
    digest: str
    entries: list[OverrideEntryOut]
