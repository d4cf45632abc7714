"""Versioned configuration documents.

The dashboard used to fetch and overwrite one settings blob wholesale, which
loses concurrent edits. Each document now lives in its own ``config_records``
row with an integer version. Editors send back the version they read and the
update only applies while it still matches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from jarsmith.db.base import session_scope
from jarsmith.db.models import ConfigRecord

log = logger.bind(module="core.config_records")

__all__ = [
    "CONFIG_SCHEMAS",
    "ConfigDocument",
    "ConfigRecordError",
    "ConfigRecordStore",
    "ConfigValidationError",
    "ConfigVersionConflict",
    "DeploymentSettings",
    "EnvironmentDefinition",
    "UnknownConfigKey",
    "validate_payload",
]


class EnvironmentDefinition(BaseModel):
    """Per-environment deployment defaults."""

    model_config = ConfigDict(extra="forbid")

    environment_id: str = Field(min_length=1, max_length=64)
    artifacts_folder: str = ""
    wlst_tool_path: str | None = None
    notify_on_complete: bool = False
    smtp_host: str | None = None
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_username: str | None = None
    success_email_subject: str | None = None
    success_recipients: list[str] = Field(default_factory=list)
    failure_recipients: list[str] = Field(default_factory=list)

    @field_validator("success_recipients", "failure_recipients")
    @classmethod
    def _check_recipients(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        for address in cleaned:
            if "@" not in address:
                raise ValueError(f"{address!r} is not an e-mail address.")
        return cleaned


class DeploymentSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_name: str = ""
    project_version: str = ""
    environments: list[EnvironmentDefinition] = Field(default_factory=list)

    @field_validator("environments")
    @classmethod
    def _unique_environments(cls, value: list[EnvironmentDefinition]) -> list[EnvironmentDefinition]:
        ids = [item.environment_id for item in value]
        if len(ids) != len(set(ids)):
            raise ValueError("Environment ids must be unique.")
        return value


CONFIG_SCHEMAS: Mapping[str, type[BaseModel]] = {
    "deployment-settings": DeploymentSettings,
}


class ConfigRecordError(RuntimeError):
    """Base error for configuration record operations."""


class UnknownConfigKey(ConfigRecordError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Unknown configuration key {key!r}.")
        self.key = key


class ConfigValidationError(ConfigRecordError):
    def __init__(self, key: str, errors: list[dict[str, Any]]) -> None:
        super().__init__(f"Invalid payload for {key!r}.")
        self.key = key
        self.errors = errors


class ConfigVersionConflict(ConfigRecordError):
    """The document changed since the editor read it."""

    def __init__(self, key: str, *, expected: int, current: int) -> None:
        super().__init__(f"{key!r} is at version {current}, not {expected}; reload and retry.")
        self.key = key
        self.expected = expected
        self.current = current


@dataclass(slots=True, frozen=True)
class ConfigDocument:
    key: str
    version: int
    payload: dict[str, Any]
    updated_at: datetime | None = None
    updated_by: str | None = None


def _schema_for(key: str) -> type[BaseModel]:
    schema = CONFIG_SCHEMAS.get(key)
    if schema is None:
        raise UnknownConfigKey(key)
    return schema


def validate_payload(key: str, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Validate ``payload`` against the schema registered for ``key``."""

    schema = _schema_for(key)
    try:
        model = schema.model_validate(dict(payload))
    except ValidationError as exc:
        raise ConfigValidationError(key, exc.errors(include_url=False, include_context=False)) from exc
    return model.model_dump(mode="json")


class ConfigRecordStore:
    """Read and conditionally update configuration documents."""

    def get(self, key: str) -> ConfigDocument:
        """Return the current document; unseen keys read as version 0 defaults."""

        schema = _schema_for(key)
        with session_scope() as session:
            row = session.get(ConfigRecord, key)
            if row is None:
                return ConfigDocument(key=key, version=0, payload=schema().model_dump(mode="json"))
            return ConfigDocument(
                key=row.key,
                version=int(row.version),
                payload=dict(row.payload or {}),
                updated_at=row.updated_at,
                updated_by=row.updated_by,
            )

    def put(
        self,
        key: str,
        payload: Mapping[str, Any],
        *,
        expected_version: int,
        updated_by: str | None = None,
    ) -> ConfigDocument:
        """Replace the document if it is still at ``expected_version``."""

        clean = validate_payload(key, payload)
        now = datetime.now(timezone.utc)
        expected = int(expected_version)
        try:
            with session_scope() as session:
                if expected == 0:
                    session.add(
                        ConfigRecord(key=key, version=1, payload=clean, updated_by=updated_by, created_at=now, updated_at=now),
                    )
                    session.flush()
                else:
                    result = session.execute(
                        update(ConfigRecord)
                        .where(ConfigRecord.key == key, ConfigRecord.version == expected)
                        .values(version=expected + 1, payload=clean, updated_by=updated_by, updated_at=now),
                    )
                    if result.rowcount != 1:
                        row = session.get(ConfigRecord, key)
                        raise ConfigVersionConflict(key, expected=expected, current=int(row.version) if row else 0)
        except IntegrityError as exc:
            # Another editor created the record first.
            raise ConfigVersionConflict(key, expected=expected, current=self.get(key).version) from exc

        log.info("Config {} updated to version {} by {}", key, expected + 1, updated_by or "unknown")
        return self.get(key)
