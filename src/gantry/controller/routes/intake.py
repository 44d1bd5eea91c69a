"""Intake route — accepts change events, creates runs and spawns workers."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from gantry.models.trigger import ChangeEvent

router = APIRouter(tags=["intake"])


@router.post("/pipeline/trigger")
async def trigger_pipeline(event: ChangeEvent, request: Request) -> dict:
    """Accept a pull-request or merge event and spawn a worker to run it."""
    orchestrator = request.app.state.orchestrator

    if event.external_id:
        existing = await orchestrator.services.runs.find_by_external_id(event.external_id)
        if existing is not None:
            raise HTTPException(
                status_code=409,
                detail=f"Run with external_id '{event.external_id}' already exists ({existing.run_id})",
            )

    run = await orchestrator.trigger(event)
    await request.app.state.job_spawner.spawn(run.run_id)

    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "environment": run.environment.value,
        "state_key": run.state_key,
    }
