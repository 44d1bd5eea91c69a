"""Pipeline status, approval and abort routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from gantry.errors import (
    ApprovalStateError,
    ApprovalTimeoutError,
    RunNotFoundError,
    UnauthorizedApproverError,
)
from gantry.models.approval import ApprovalDecision
from gantry.models.run import PipelineRun
from gantry.models.stages import RunStatus

logger = logging.getLogger(__name__)
router = APIRouter(tags=["pipeline"])


def _summary(run: PipelineRun) -> dict:
    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "stage": run.stage.value,
        "trigger": run.trigger.value,
        "environment": run.environment.value,
        "change_ref": run.change_ref,
        "state_key": run.state_key,
        "external_id": run.external_id,
        "error": run.error.model_dump() if run.error else None,
        "created_at": run.created_at.isoformat(),
        "updated_at": run.updated_at.isoformat(),
    }


def _detail(run: PipelineRun) -> dict:
    last = run.stages[-1] if run.stages else None
    return {
        **_summary(run),
        "linked_staging_run_id": run.linked_staging_run_id,
        "last_output": last.output if last else "",
        "stages": [s.model_dump(mode="json") for s in run.stages],
        "plans": [
            {
                "content_hash": p.content_hash,
                "changes": p.summary(),
                "source_commit": p.source_commit,
                "valid_until": p.valid_until.isoformat(),
            }
            for p in run.plans
        ],
        "approvals": [a.model_dump(mode="json") for a in run.approvals],
        "audit": [a.model_dump(mode="json") for a in run.audit],
    }


async def _load(request: Request, run_id: str) -> PipelineRun:
    try:
        return await request.app.state.orchestrator.get(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")


@router.get("/pipeline/list")
async def list_pipelines(
    request: Request, status: RunStatus | None = None, limit: int = 100
) -> list[dict]:
    """List pipeline runs, newest first."""
    runs = await request.app.state.orchestrator.services.runs.list_runs(status, limit)
    return [_summary(r) for r in runs]


@router.get("/pipeline/{run_id}")
async def get_pipeline_status(run_id: str, request: Request) -> dict:
    """Current status of a run plus its stages, plans, approvals and audit trail."""
    return _detail(await _load(request, run_id))


class ApprovalBody(BaseModel):
    approver: str = Field(..., min_length=1, max_length=128)
    decision: ApprovalDecision
    comment: str = ""


@router.post("/pipeline/{run_id}/approval")
async def decide_approval(run_id: str, body: ApprovalBody, request: Request) -> dict:
    """Record an approval decision and hand the run back to a worker."""
    if body.decision not in (ApprovalDecision.APPROVED, ApprovalDecision.REJECTED):
        raise HTTPException(status_code=422, detail="decision must be 'approved' or 'rejected'")

    orchestrator = request.app.state.orchestrator
    try:
        run = await orchestrator.decide(
            run_id, body.approver, body.decision, body.comment, resume=False
        )
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except UnauthorizedApproverError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ApprovalTimeoutError as e:
        raise HTTPException(status_code=410, detail=e.message)
    except ApprovalStateError as e:
        raise HTTPException(status_code=409, detail=e.message)

    await request.app.state.job_spawner.spawn(run_id)
    return {"run_id": run_id, "decision": body.decision.value, "status": run.status.value}


class AbortBody(BaseModel):
    actor: str = Field(..., min_length=1, max_length=128)
    reason: str = ""


@router.post("/pipeline/{run_id}/abort")
async def abort_pipeline(run_id: str, body: AbortBody, request: Request) -> dict:
    """Abort a run, releasing any lock it holds and cancelling pending approvals."""
    run = await _load(request, run_id)
    if run.is_terminal:
        raise HTTPException(
            status_code=409, detail=f"Run is already '{run.status.value}'",
        )
    run = await request.app.state.orchestrator.abort(run, body.actor, body.reason)
    return {"run_id": run_id, "status": run.status.value}
