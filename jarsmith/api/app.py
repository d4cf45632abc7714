"""FastAPI application factory for the Jarsmith job API."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from jarsmith import __version__
from jarsmith.api.routers.config import router as config_router
from jarsmith.api.routers.environments import router as environments_router
from jarsmith.api.routers.health import router as health_router
from jarsmith.api.routers.jobs import router as jobs_router
from jarsmith.api.routers.logs import router as logs_router
from jarsmith.api.routers.projects import router as projects_router
from jarsmith.db.base import ensure_database_schema

API_V1_PREFIX = "/api/v1"


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    """FastAPI lifespan that creates missing tables on startup."""
    ensure_database_schema()
    yield


def create_app() -> FastAPI:
    """Create the FastAPI application instance."""

    app = FastAPI(
        title="Jarsmith API",
        version=__version__,
        lifespan=_lifespan,
    )

    app.include_router(health_router, prefix=API_V1_PREFIX, tags=["health"])
    app.include_router(jobs_router, prefix=API_V1_PREFIX, tags=["jobs"])
    app.include_router(logs_router, prefix=API_V1_PREFIX, tags=["logs"])
    app.include_router(environments_router, prefix=API_V1_PREFIX, tags=["environments"])
    app.include_router(projects_router, prefix=API_V1_PREFIX, tags=["projects"])
    app.include_router(config_router, prefix=API_V1_PREFIX, tags=["config"])
    return app


# Uvicorn default import target: `uvicorn jarsmith.api.app:app`
app = create_app()
