"""Change preview schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from jarsmith.api.schemas import OrmOutModel
from jarsmith.core.pipeline.changes import normalize_path


class FileChangeOut(OrmOutModel):
    path: str
    kind: str
    source: str
    patch: str | None = None
    size: int
    sha256: str | None = None


class ChangePreviewOut(BaseModel):
    project_id: str
    base_commit: str | None = None
    head_commit: str | None = None
    count: int
    files: list[FileChangeOut]


class CompareFilesIn(BaseModel):
    base: str = Field(min_length=1)
    head: str | None = None
    branch: str | None = None
    files: list[str] = Field(min_length=1)

    @field_validator("files")
    @classmethod
    def _normalise(cls, value: list[str]) -> list[str]:
        return [normalize_path(path) for path in value]


class TreeOut(BaseModel):
    project_id: str
    head_commit: str | None = None
    paths: list[str]
