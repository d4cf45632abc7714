"""Validated job submission payloads."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jarsmith.core.pipeline.changes import RequestedFile, change_kind_of, normalize_path
from jarsmith.core.pipeline.deploy import DeployConfirmation
from jarsmith.core.types import ChangeKind, JobStrategy
from jarsmith.naming import is_valid_version

__all__ = ["JobRequest", "RequestedFileIn", "parse_strategy"]

# Spellings used by the dashboard's generation wizard.
_STRATEGY_ALIASES = {
    "commit": JobStrategy.DIFF,
    "manual": JobStrategy.DIFF,
    "diff": JobStrategy.DIFF,
    "full": JobStrategy.FULL,
    "full-build": JobStrategy.FULL,
}


def parse_strategy(value: Any) -> JobStrategy:
    if isinstance(value, JobStrategy):
        return value
    text = str(value or "").strip().lower()
    try:
        return _STRATEGY_ALIASES[text]
    except KeyError as exc:
        raise ValueError(f"Unknown strategy {value!r}.") from exc


class RequestedFileIn(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(min_length=1)
    status: ChangeKind = ChangeKind.MODIFIED

    @field_validator("path")
    @classmethod
    def _normalise_path(cls, value: str) -> str:
        return normalize_path(value)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> ChangeKind:
        return change_kind_of(value)


class JobRequest(BaseModel):
    """Everything needed to run one job, checked before it is persisted."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_id: str = Field(min_length=1, max_length=64)
    branch: str = Field(min_length=1, max_length=255)
    version: str = Field(min_length=1, max_length=128)
    environment_id: str | None = Field(default=None, max_length=64)
    strategy: JobStrategy
    base_commit: str | None = Field(default=None, max_length=255)
    head_commit: str | None = Field(default=None, max_length=255)
    apply_overrides: bool = False
    files: tuple[RequestedFileIn, ...] = ()
    confirm_production: bool = False
    confirmed_strategy: JobStrategy | None = None
    confirmed_override_digest: str | None = Field(default=None, max_length=64)

    @model_validator(mode="before")
    @classmethod
    def _manual_needs_files(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw = str(data.get("strategy") or "").strip().lower()
            if raw == "manual" and not data.get("files"):
                raise ValueError("The manual strategy requires an explicit file list.")
        return data

    @field_validator("strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, value: Any) -> JobStrategy:
        return parse_strategy(value)

    @field_validator("confirmed_strategy", mode="before")
    @classmethod
    def _parse_confirmed_strategy(cls, value: Any) -> JobStrategy | None:
        if value is None or value == "":
            return None
        return parse_strategy(value)

    @field_validator("project_id", "branch", "version", "environment_id", "base_commit", "head_commit")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def _check_consistency(self) -> "JobRequest":
        if not self.project_id or not self.branch:
            raise ValueError("project_id and branch must be non-empty.")
        if not self.version or not is_valid_version(self.version):
            raise ValueError(f"Version {self.version!r} is not a valid archive version.")
        if self.apply_overrides and not self.environment_id:
            raise ValueError("apply_overrides requires an environment_id.")
        if self.strategy is JobStrategy.DIFF and not self.files and not self.base_commit:
            raise ValueError("A diff build needs a base_commit or an explicit file list.")
        paths = [entry.path for entry in self.files]
        if len(paths) != len(set(paths)):
            raise ValueError("Each file may be listed only once.")
        return self

    @property
    def is_build_only(self) -> bool:
        return self.environment_id is None

    def requested_files(self) -> tuple[RequestedFile, ...]:
        return tuple(RequestedFile(path=entry.path, kind=entry.status) for entry in self.files)

    def confirmation(self) -> DeployConfirmation:
        return DeployConfirmation(
            confirm_production=self.confirm_production,
            confirmed_strategy=self.confirmed_strategy,
            confirmed_override_digest=(self.confirmed_override_digest or None),
        )
