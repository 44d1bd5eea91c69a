"""Pipeline node helpers — stage bookkeeping, audit records and events."""

from __future__ import annotations

import datetime
import logging
from pathlib import Path
from typing import Any, Callable

from langchain_core.runnables import RunnableConfig

from gantry.errors import (
    ApprovalTimeoutError,
    ExecutionError,
    GantryError,
    PromotionOrderError,
)
from gantry.models.events import EventType, PipelineEvent
from gantry.models.run import AuditRecord, PipelineRun, RunError, StageExecution
from gantry.models.stages import Environment, RunStatus, Stage, StageKind
from gantry.pipeline.services import StageServices

logger = logging.getLogger(__name__)

# Errors that end a run as ABORTED rather than FAILED.
_ABORTING_ERRORS = (ApprovalTimeoutError,)

# Tool subcommands each stage may run.
_STAGE_COMMANDS: dict[StageKind, tuple[str, ...]] = {
    StageKind.VALIDATE: ("init", "fmt", "validate"),
    StageKind.PLAN: ("init", "plan", "show"),
    StageKind.APPLY: ("apply",),
}


def get_services(config: RunnableConfig) -> StageServices:
    return config.get("configurable", {})["services"]


def retry_counter(execution: StageExecution) -> Callable[[], None]:
    def _bump() -> None:
        execution.retry_count += 1

    return _bump


def credential_ttl(run: PipelineRun, kind: StageKind) -> datetime.timedelta:
    """Lifetime covering every tool call the stage can make, retries and backoff included."""
    cfg = run.pipeline_cfg()
    attempts = 1 if kind is StageKind.APPLY else cfg["tool_max_attempts"]
    per_attempt = sum(cfg["tool_timeouts"].get(cmd, 600) for cmd in _STAGE_COMMANDS[kind])
    backoff = cfg["tool_retry_backoff_seconds"] * attempts * attempts
    return datetime.timedelta(seconds=per_attempt * attempts + backoff)


def _tail(run: PipelineRun, text: str) -> str:
    limit = run.pipeline_cfg().get("output_tail_chars", 4000)
    return text[-limit:]


async def record(
    services: StageServices,
    run: PipelineRun,
    *,
    stage: str,
    action: str,
    outcome: str,
    actor: str = "system",
    severity: str = "info",
    **details: Any,
) -> AuditRecord:
    """Append an audit record to the run and forward it to the audit sink."""
    entry = AuditRecord(
        run_id=run.run_id,
        stage=stage,
        actor=actor,
        action=action,
        outcome=outcome,
        severity=severity,
        timestamp=services.clock(),
        details=details,
    )
    run.audit.append(entry)
    run.updated_at = entry.timestamp
    if services.audit_sink:
        await services.audit_sink.record(entry)
    return entry


async def emit(
    services: StageServices,
    run: PipelineRun,
    event_type: EventType,
    stage: str = "",
    **data: Any,
) -> None:
    if services.event_bus:
        await services.event_bus.emit(PipelineEvent(
            run_id=run.run_id, event_type=event_type, stage=stage, data=data,
        ))


async def enter_stage(
    services: StageServices, run: PipelineRun, kind: StageKind
) -> StageExecution:
    execution = StageExecution(kind=kind, started_at=services.clock())
    run.stages.append(execution)
    run.stage = Stage(kind.value)
    logger.info("Run %s entering %s", run.run_id, kind.value)
    await record(services, run, stage=kind.value, action="stage_entered", outcome="started",
                 stage_id=execution.stage_id)
    await emit(services, run, EventType.STAGE_ENTERED, kind.value)
    return execution


async def finish_stage(
    services: StageServices,
    run: PipelineRun,
    execution: StageExecution,
    next_stage: Stage,
    *,
    exit_status: str = "succeeded",
    output: str = "",
    actor: str = "system",
    **details: Any,
) -> None:
    """Close a stage and move the run to next_stage. DONE completes the run."""
    execution.ended_at = services.clock()
    execution.exit_status = exit_status
    execution.output = _tail(run, output)
    run.stage = next_stage
    if next_stage is Stage.DONE:
        run.status = RunStatus.SUCCEEDED
    await record(services, run, stage=execution.kind.value, action="stage_completed",
                 outcome=exit_status, actor=actor, next_stage=next_stage.value, **details)
    await emit(services, run, EventType.STAGE_COMPLETED, execution.kind.value,
               exit_status=exit_status, next_stage=next_stage.value, **details)


async def fail_stage(
    services: StageServices,
    run: PipelineRun,
    execution: StageExecution,
    *,
    kind: str,
    message: str,
    output: str = "",
    status: RunStatus = RunStatus.FAILED,
    exit_status: str = "failed",
    actor: str = "system",
) -> None:
    """Close a stage unsuccessfully and end the run as FAILED or ABORTED."""
    execution.ended_at = services.clock()
    execution.exit_status = exit_status
    execution.error_kind = kind
    execution.output = _tail(run, output or message)
    run.status = status
    run.stage = Stage.ABORTED if status is RunStatus.ABORTED else Stage.FAILED
    run.error = RunError(kind=kind, message=message, stage=execution.kind.value)
    logger.warning("Run %s %s in %s: %s: %s", run.run_id, status.value, execution.kind.value, kind, message)
    await record(services, run, stage=execution.kind.value, action="stage_failed",
                 outcome=exit_status, actor=actor, severity="warning",
                 error_kind=kind, message=message)
    await emit(services, run, EventType.STAGE_FAILED, execution.kind.value,
               error_kind=kind, message=message)


async def fail_with(
    services: StageServices,
    run: PipelineRun,
    execution: StageExecution,
    exc: GantryError,
) -> None:
    output = exc.output
    if isinstance(exc, ExecutionError):
        output = "\n".join(part for part in (exc.stdout, exc.stderr) if part)
    aborting = isinstance(exc, _ABORTING_ERRORS)
    await fail_stage(
        services, run, execution,
        kind=exc.kind,
        message=exc.message,
        output=output,
        status=RunStatus.ABORTED if aborting else RunStatus.FAILED,
        exit_status="aborted" if aborting else "failed",
    )


async def ensure_workdir(services: StageServices, run: PipelineRun) -> Path:
    """Return the run's checkout, re-creating it when a new worker resumes the run."""
    if run.workdir and Path(run.workdir).is_dir():
        return Path(run.workdir)
    workdir = await services.checkout.prepare(
        run.repo_url, run.run_id, run.change_ref, run.working_dir
    )
    run.workdir = str(workdir)
    return workdir


async def check_promotion(services: StageServices, run: PipelineRun) -> None:
    """Production applies require a successful staging apply of the same change."""
    if run.environment is not Environment.PRODUCTION or not run.applies:
        return
    candidates = await services.runs.find_runs(
        change_ref=run.change_ref,
        environment=Environment.STAGING,
        status=RunStatus.SUCCEEDED,
    )
    applied = sorted(
        (c for c in candidates if c.applies and c.applied),
        key=lambda c: c.created_at,
        reverse=True,
    )
    if not applied:
        raise PromotionOrderError(
            f"No successful staging apply for {run.change_ref}; production promotion blocked"
        )
    run.linked_staging_run_id = applied[0].run_id
