"""Plan node — computes the plan artifact and decides whether sign-off is needed."""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.runnables import RunnableConfig

from gantry.errors import GantryError
from gantry.models.approval import ApprovalDecision
from gantry.models.plan import PlanArtifact
from gantry.models.run import PipelineRun
from gantry.models.stages import Stage, StageKind
from gantry.pipeline.nodes import (
    credential_ttl,
    enter_stage,
    ensure_workdir,
    fail_with,
    finish_stage,
    get_services,
    retry_counter,
)
from gantry.pipeline.state import PipelineState

logger = logging.getLogger(__name__)


def _already_approved(run: PipelineRun, artifact: PlanArtifact) -> bool:
    approval = run.latest_approval
    return (
        approval is not None
        and approval.decision is ApprovalDecision.APPROVED
        and approval.plan_hash == artifact.content_hash
    )


async def plan_node(state: PipelineState, config: RunnableConfig) -> dict[str, Any]:
    services = get_services(config)
    run = state["run"]
    execution = run.open_execution(StageKind.PLAN) or await enter_stage(
        services, run, StageKind.PLAN
    )

    try:
        workdir = await ensure_workdir(services, run)
        async with services.credentials.scoped(
            run.run_id, StageKind.PLAN, run.environment, credential_ttl(run, StageKind.PLAN)
        ) as credential:
            artifact = await services.executor.plan(
                run.change_ref,
                run.environment,
                run.use_backend,
                workdir=workdir,
                credential=credential,
                settings=run.pipeline_cfg(),
                on_retry=retry_counter(execution),
            )
    except GantryError as e:
        await fail_with(services, run, execution, e)
        return {"run": run}

    run.plans.append(artifact)
    replanned = run.replan_requested
    run.replan_requested = False
    details = {"plan_hash": artifact.content_hash, "changes": artifact.summary()}

    if not run.applies:
        next_stage = Stage.DONE
    elif replanned and _already_approved(run, artifact):
        # Same diff as the one already signed off: no second approval.
        logger.info("Re-plan for run %s reproduced approved hash %s", run.run_id, artifact.content_hash[:12])
        next_stage = Stage.APPLY
        details["reused_approval"] = run.latest_approval.request_id
    else:
        next_stage = Stage.APPROVAL

    await finish_stage(
        services, run, execution, next_stage,
        output=", ".join(f"{k}={v}" for k, v in artifact.summary().items()),
        **details,
    )
    return {"run": run}
