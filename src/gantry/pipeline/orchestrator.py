"""Orchestrator — creates runs, drives them through the stage graph and handles
the external events that resume them (approval decisions, sweep ticks, aborts).

A run is only ever advanced from its persisted state. Between calls nothing is
held in memory: a run parked in AWAITING_APPROVAL consumes no task and
survives process restarts.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from gantry.config.defaults import get_config_snapshot
from gantry.errors import ApprovalStateError, ApprovalTimeoutError, GantryError, RunNotFoundError
from gantry.models.approval import ApprovalDecision
from gantry.models.events import EventType
from gantry.models.run import PipelineRun, RunError
from gantry.models.stages import RunStatus, Stage
from gantry.models.trigger import ChangeEvent
from gantry.pipeline.graph import build_pipeline_graph
from gantry.pipeline.nodes import emit, record
from gantry.pipeline.services import StageServices

logger = logging.getLogger(__name__)

_TERMINAL_EVENT: dict[RunStatus, EventType] = {
    RunStatus.SUCCEEDED: EventType.RUN_SUCCEEDED,
    RunStatus.FAILED: EventType.RUN_FAILED,
    RunStatus.ABORTED: EventType.RUN_ABORTED,
}


class Orchestrator:
    def __init__(self, services: StageServices) -> None:
        self._services = services
        self._graph = build_pipeline_graph().compile()

    @property
    def services(self) -> StageServices:
        return self._services

    async def trigger(self, event: ChangeEvent) -> PipelineRun:
        """Create and persist a PENDING run for a pull-request or merge event."""
        now = self._services.clock()
        run = PipelineRun(
            run_id=f"RUN-{uuid.uuid4().hex[:8]}",
            change_ref=event.change_ref,
            trigger=event.kind,
            environment=event.environment,
            repo_url=event.repo_url,
            working_dir=event.working_dir,
            state_key=event.resolved_state_key(),
            actor=event.actor,
            external_id=event.external_id,
            config_snapshot=get_config_snapshot(),
            created_at=now,
            updated_at=now,
        )
        await record(
            self._services, run, stage="trigger", action="run_triggered", outcome="pending",
            actor=event.actor, trigger=event.kind.value, event_action=event.action,
            environment=event.environment.value, change_ref=event.change_ref,
        )
        await self._services.runs.save(run)
        await emit(
            self._services, run, EventType.RUN_TRIGGERED, "trigger",
            change_ref=run.change_ref, environment=run.environment.value,
            trigger=run.trigger.value, state_key=run.state_key,
        )
        logger.info(
            "Run %s triggered by %s %s for %s -> %s",
            run.run_id, event.kind.value, event.action, run.change_ref, run.environment.value,
        )
        return run

    async def get(self, run_id: str) -> PipelineRun:
        run = await self._services.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    async def advance(self, run: PipelineRun) -> RunStatus:
        """Drive a run until it parks for approval or reaches a terminal status.

        Calling this on a terminal run returns its status and changes nothing.
        Pipeline errors end up on the run (status, error, audit trail) rather
        than being raised; anything unexpected marks the run FAILED and is
        re-raised.
        """
        if run.is_terminal:
            return run.status

        previous = run.status
        if run.status is RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            await record(self._services, run, stage=run.stage.value, action="run_started",
                         outcome="running")
            await emit(self._services, run, EventType.RUN_STARTED, run.stage.value)
        elif run.status is RunStatus.AWAITING_APPROVAL:
            run.status = RunStatus.RUNNING

        try:
            final_state = await self._graph.ainvoke(
                {"run": run}, config={"configurable": {"services": self._services}}
            )
        except Exception as e:
            logger.exception("Run %s crashed in %s", run.run_id, run.stage.value)
            await self._crash(run, e)
            raise
        run = final_state["run"]

        await self._services.runs.save(run)
        await self._announce(run, previous)
        await self._cleanup(run)
        return run.status

    async def advance_by_id(self, run_id: str) -> RunStatus:
        return await self.advance(await self.get(run_id))

    async def decide(
        self,
        run_id: str,
        approver: str,
        decision: ApprovalDecision,
        comment: str = "",
        *,
        resume: bool = True,
    ) -> PipelineRun:
        """Record an approval decision for a parked run.

        With ``resume`` the run is advanced immediately; otherwise the caller
        is responsible for resuming it (the controller hands it to a worker).
        Raises UnauthorizedApproverError, ApprovalStateError or
        ApprovalTimeoutError; an expired request aborts the run first.
        """
        run = await self.get(run_id)
        request = run.latest_approval
        if run.status is not RunStatus.AWAITING_APPROVAL or request is None:
            raise ApprovalStateError(f"Run {run_id} is not awaiting approval ({run.status.value})")

        try:
            self._services.gate.decide(request, approver, decision, comment)
        except ApprovalTimeoutError:
            await self.advance(run)
            raise
        except GantryError as e:
            await record(self._services, run, stage="approval", action="approval_decided",
                         outcome="denied", actor=approver, severity="warning",
                         request_id=request.request_id, error_kind=e.kind)
            await self._services.runs.save(run)
            raise

        run.status = RunStatus.RUNNING
        await record(self._services, run, stage="approval", action="approval_decided",
                     outcome=decision.value, actor=approver,
                     request_id=request.request_id, comment=comment)
        await self._services.runs.save(run)
        await emit(self._services, run, EventType.APPROVAL_DECIDED, "approval",
                   request_id=request.request_id, decision=decision.value, approver=approver)

        if resume:
            await self.advance(run)
        return run

    async def abort(self, run: PipelineRun, actor: str, reason: str = "") -> PipelineRun:
        """Abort a run: release its lock, cancel pending approvals, mark ABORTED."""
        if run.is_terminal:
            return run

        if run.held_lock is not None:
            released = await self._services.locks.release(run.held_lock)
            await record(self._services, run, stage=run.stage.value, action="lock_released",
                         outcome="released" if released else "not_held", actor=actor,
                         resource_key=run.held_lock.resource_key)
            run.held_lock = None

        for request in run.pending_approvals():
            self._services.gate.cancel(request)

        now = self._services.clock()
        message = reason or f"Aborted by {actor}"
        if run.stages and run.stages[-1].is_open:
            execution = run.stages[-1]
            execution.ended_at = now
            execution.exit_status = "aborted"
            execution.error_kind = "RunAborted"
        run.error = RunError(kind="RunAborted", message=message, stage=run.stage.value)
        run.status = RunStatus.ABORTED
        run.stage = Stage.ABORTED

        await record(self._services, run, stage="run", action="run_aborted", outcome="aborted",
                     actor=actor, severity="warning", reason=message)
        await self._services.runs.save(run)
        await emit(self._services, run, EventType.RUN_ABORTED, "run", actor=actor, reason=message)
        await self._cleanup(run)
        logger.warning("Run %s aborted by %s: %s", run.run_id, actor, message)
        return run

    async def sweep(self, limit: int = 500) -> list[str]:
        """Timeout tick: advance parked runs whose approval request has expired.

        At most ``limit`` runs per tick, earliest deadline first; the rest are
        picked up by following ticks.
        """
        expired = await self._services.runs.list_expired_approvals(self._services.clock(), limit)
        if not expired:
            return []

        results = await asyncio.gather(
            *(self.advance(run) for run in expired), return_exceptions=True
        )
        for run, result in zip(expired, results):
            if isinstance(result, BaseException):
                logger.error("Sweep failed to advance run %s: %s", run.run_id, result)
            else:
                logger.info("Sweep moved run %s to %s", run.run_id, result.value)
        return [run.run_id for run in expired]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _announce(self, run: PipelineRun, previous: RunStatus) -> None:
        data: dict[str, Any] = {"status": run.status.value, "run_stage": run.stage.value}
        if run.error:
            data["error"] = run.error.model_dump()

        if run.is_terminal:
            await emit(self._services, run, _TERMINAL_EVENT[run.status], "run", **data)
            logger.info("Run %s finished: %s", run.run_id, run.status.value)
        elif run.status is RunStatus.AWAITING_APPROVAL and previous is not RunStatus.AWAITING_APPROVAL:
            request = run.latest_approval
            await emit(self._services, run, EventType.RUN_AWAITING_APPROVAL, "approval",
                       request_id=request.request_id, expires_at=request.expires_at.isoformat(), **data)

    async def _cleanup(self, run: PipelineRun) -> None:
        # Failed runs keep their checkout and plan file for diagnosis.
        if run.status in (RunStatus.SUCCEEDED, RunStatus.ABORTED) and run.workdir:
            await self._services.checkout.remove(run.run_id, run.repo_url)

    async def _crash(self, run: PipelineRun, exc: Exception) -> None:
        kind = type(exc).__name__
        if run.stages and run.stages[-1].is_open:
            execution = run.stages[-1]
            execution.ended_at = self._services.clock()
            execution.exit_status = "failed"
            execution.error_kind = kind
        run.error = RunError(kind=kind, message=str(exc), stage=run.stage.value)
        run.status = RunStatus.FAILED
        run.stage = Stage.FAILED
        await record(self._services, run, stage="run", action="run_crashed", outcome="failed",
                     severity="critical", error_kind=kind, message=str(exc))
        await self._services.runs.save(run)
        await emit(self._services, run, EventType.RUN_FAILED, "run",
                   status=run.status.value, error=run.error.model_dump())
