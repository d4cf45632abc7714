"""Environment endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from jarsmith.api.schemas.environments import OverrideDigestOut, OverrideEntryOut
from jarsmith.api.services.jobs import get_orchestrator
from jarsmith.core.errors import EnvironmentNotFound
from jarsmith.core.pipeline.orchestrator import JobOrchestrator

router = APIRouter()


@router.get("/environments/{environment_id}/override-digest", response_model=OverrideDigestOut)
def get_override_digest(
    environment_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> OverrideDigestOut:
    """Digest of the environment's current override set, for production confirmation."""

    try:
        snapshot = orchestrator.override_digest(environment_id)
    except EnvironmentNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    payload = snapshot.to_payload()
    return OverrideDigestOut(
        environment_id=payload["environment_id"],
        digest=payload["digest"],
        entries=[OverrideEntryOut.model_validate(entry) for entry in payload["entries"]],
    )
