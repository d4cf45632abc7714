"""Versioned configuration documents."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from jarsmith.api.schemas.config import ConfigDocumentOut, ConfigUpdateIn
from jarsmith.api.services.config import get_config_store
from jarsmith.core.config_records import (
    ConfigRecordStore,
    ConfigValidationError,
    ConfigVersionConflict,
    UnknownConfigKey,
)

router = APIRouter()


@router.get("/config/{key}", response_model=ConfigDocumentOut)
def get_config(key: str, store: ConfigRecordStore = Depends(get_config_store)) -> ConfigDocumentOut:
    try:
        document = store.get(key)
    except UnknownConfigKey as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ConfigDocumentOut.model_validate(document)


@router.put("/config/{key}", response_model=ConfigDocumentOut)
def put_config(
    key: str,
    body: ConfigUpdateIn,
    store: ConfigRecordStore = Depends(get_config_store),
) -> ConfigDocumentOut:
    try:
        document = store.put(key, body.payload, expected_version=body.version, updated_by=body.updated_by)
    except UnknownConfigKey as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConfigValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors) from exc
    except ConfigVersionConflict as exc:
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "expected": exc.expected, "current": exc.current},
        ) from exc
    return ConfigDocumentOut.model_validate(document)
