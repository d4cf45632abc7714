from __future__ import annotations

from fastapi import APIRouter

from jarsmith.api.schemas.health import HealthOut
from jarsmith.config import get_settings
from jarsmith.db.base import ping_database

router = APIRouter()


@router.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    settings = get_settings()
    db_error = ping_database()
    return HealthOut(
        status="degraded" if db_error else "ok",
        app=settings.app_name,
        environment=settings.environment,
        db_ok=db_error is None,
        db_error=db_error,
        broker=settings.tasks_broker,
    )
