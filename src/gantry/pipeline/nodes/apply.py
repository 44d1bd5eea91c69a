"""Apply node — takes the state lock, applies the approved plan, releases the lock.

The lock is held only for the duration of the apply and renewed in the
background while the tool runs. A stale plan sends the run back to PLAN a
bounded number of times.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any

from langchain_core.runnables import RunnableConfig

from gantry.errors import ApprovalStateError, GantryError, StaleLockError, StalePlanError
from gantry.locks.manager import HeldLock
from gantry.models.approval import ApprovalDecision
from gantry.models.events import EventType
from gantry.models.locks import holder_id_for
from gantry.models.run import PipelineRun, StageExecution
from gantry.models.stages import Stage, StageKind
from gantry.pipeline.nodes import (
    check_promotion,
    credential_ttl,
    emit,
    enter_stage,
    ensure_workdir,
    fail_with,
    finish_stage,
    get_services,
    record,
)
from gantry.pipeline.services import StageServices
from gantry.pipeline.state import PipelineState

logger = logging.getLogger(__name__)


def _require_approved_plan(run: PipelineRun) -> None:
    plan = run.latest_plan
    approval = run.latest_approval
    if plan is None:
        raise ApprovalStateError("No plan artifact to apply")
    if (
        approval is None
        or approval.decision is not ApprovalDecision.APPROVED
        or approval.plan_hash != plan.content_hash
    ):
        raise ApprovalStateError(
            f"Plan {plan.content_hash[:12]} has no approval on record"
        )


async def _replan(
    services: StageServices, run: PipelineRun, execution: StageExecution, exc: StalePlanError
) -> None:
    max_replans = run.pipeline_cfg().get("max_replans", 2)
    if run.replan_count >= max_replans:
        logger.warning("Run %s exhausted %d re-plans", run.run_id, max_replans)
        await fail_with(services, run, execution, exc)
        return
    run.replan_count += 1
    run.replan_requested = True
    logger.info("Run %s plan is stale (%s); re-planning", run.run_id, exc.message)
    await finish_stage(
        services, run, execution, Stage.PLAN,
        exit_status="stale_plan", output=exc.message,
        reason=exc.message, replan=run.replan_count,
    )


async def apply_node(state: PipelineState, config: RunnableConfig) -> dict[str, Any]:
    services = get_services(config)
    run = state["run"]
    execution = run.open_execution(StageKind.APPLY) or await enter_stage(
        services, run, StageKind.APPLY
    )
    cfg = run.pipeline_cfg()
    holder_id = holder_id_for(run.run_id, StageKind.APPLY)
    lease = datetime.timedelta(seconds=cfg["lock_lease_seconds"])

    try:
        await check_promotion(services, run)
        _require_approved_plan(run)
        workdir = await ensure_workdir(services, run)

        lock, retries = await services.locks.acquire_with_retry(
            run.state_key, holder_id, lease,
            max_attempts=cfg["lock_max_attempts"],
            backoff_seconds=cfg["lock_backoff_seconds"],
            max_backoff_seconds=cfg["lock_backoff_max_seconds"],
        )
        execution.retry_count += retries
        run.held_lock = lock
        await record(services, run, stage="apply", action="lock_acquired", outcome="held",
                     resource_key=run.state_key, holder_id=holder_id, lock_id=lock.lock_id)
        await emit(services, run, EventType.LOCK_ACQUIRED, "apply",
                   resource_key=run.state_key, expires_at=lock.expires_at.isoformat())
        held: HeldLock | None = None
        try:
            async with services.locks.hold(
                lock, lease, datetime.timedelta(seconds=cfg["lock_renew_interval_seconds"])
            ) as held:
                async with services.credentials.scoped(
                    run.run_id, StageKind.APPLY, run.environment,
                    credential_ttl(run, StageKind.APPLY),
                ) as credential:
                    result = await services.executor.apply(
                        run.latest_plan,
                        holder_id,
                        resource_key=run.state_key,
                        workdir=workdir,
                        credential=credential,
                        settings=cfg,
                    )
        finally:
            run.held_lock = None
            released = held is not None and held.released
            await record(services, run, stage="apply", action="lock_released",
                         outcome="released" if released else "not_held",
                         severity="info" if released else "critical",
                         resource_key=run.state_key, holder_id=holder_id)
            if released:
                await emit(services, run, EventType.LOCK_RELEASED, "apply", resource_key=run.state_key)
        if held.lost:
            raise StaleLockError(
                f"Lease on '{run.state_key}' lapsed while {holder_id} was applying; "
                "state may have changed underneath the apply"
            )
    except StalePlanError as e:
        await _replan(services, run, execution, e)
        return {"run": run}
    except GantryError as e:
        await fail_with(services, run, execution, e)
        return {"run": run}

    await finish_stage(
        services, run, execution, Stage.DONE,
        output=result.output, plan_hash=result.plan_hash, exit_code=result.exit_code,
    )
    return {"run": run}
