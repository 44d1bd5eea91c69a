"""Approval node — parks the run until a decision arrives or the request expires.

First entry opens an approval request for the latest plan and sets the run to
AWAITING_APPROVAL. Every later entry (after a decision or a sweep tick)
reads the request's outcome.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any

from langchain_core.runnables import RunnableConfig

from gantry.config.defaults import APPROVAL_ROLES
from gantry.models.approval import ApprovalDecision
from gantry.models.events import EventType
from gantry.models.stages import RunStatus, Stage, StageKind
from gantry.pipeline.nodes import (
    emit,
    enter_stage,
    fail_stage,
    finish_stage,
    get_services,
    record,
)
from gantry.pipeline.state import PipelineState

logger = logging.getLogger(__name__)


async def approval_node(state: PipelineState, config: RunnableConfig) -> dict[str, Any]:
    services = get_services(config)
    run = state["run"]
    execution = run.open_execution(StageKind.APPROVAL)

    if execution is None:
        execution = await enter_stage(services, run, StageKind.APPROVAL)
        cfg = run.pipeline_cfg()
        roles = run.config_snapshot.get("approval_roles", APPROVAL_ROLES)
        request = services.gate.request_approval(
            execution,
            roles[run.environment.value],
            datetime.timedelta(seconds=cfg["approval_timeout_seconds"]),
            run_id=run.run_id,
            plan_hash=run.latest_plan.content_hash,
        )
        run.approvals.append(request)
        run.status = RunStatus.AWAITING_APPROVAL
        await record(
            services, run, stage="approval", action="approval_requested", outcome="pending",
            request_id=request.request_id, required_role=request.required_role,
            plan_hash=request.plan_hash, expires_at=request.expires_at.isoformat(),
        )
        await emit(
            services, run, EventType.APPROVAL_REQUESTED, "approval",
            request_id=request.request_id, required_role=request.required_role,
            expires_at=request.expires_at.isoformat(),
        )
        return {"run": run}

    request = run.latest_approval
    services.gate.check_expiry(request)

    if request.decision is ApprovalDecision.PENDING:
        run.status = RunStatus.AWAITING_APPROVAL
    elif request.decision is ApprovalDecision.APPROVED:
        await finish_stage(
            services, run, execution, Stage.APPLY,
            actor=request.approver or "system", request_id=request.request_id,
        )
    elif request.decision is ApprovalDecision.REJECTED:
        await fail_stage(
            services, run, execution,
            kind="ApprovalRejected",
            message=f"Approval {request.request_id} rejected by {request.approver}"
            + (f": {request.comment}" if request.comment else ""),
            status=RunStatus.ABORTED,
            exit_status="rejected",
            actor=request.approver or "system",
        )
    elif request.decision is ApprovalDecision.EXPIRED:
        await fail_stage(
            services, run, execution,
            kind="ApprovalTimeoutError",
            message=f"Approval {request.request_id} expired at {request.expires_at.isoformat()}",
            status=RunStatus.ABORTED,
            exit_status="expired",
        )
    else:
        await fail_stage(
            services, run, execution,
            kind="ApprovalAborted",
            message=f"Approval {request.request_id} was aborted",
            status=RunStatus.ABORTED,
            exit_status="aborted",
        )
    return {"run": run}
