"""PipelineRun — the persisted record the orchestrator drives through its stages.

A run is owned exclusively by the orchestrator. Once the status is terminal
(succeeded / failed / aborted) nothing on it changes again.
"""

from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from gantry.clock import utc_now
from gantry.models.approval import ApprovalDecision, ApprovalRequest
from gantry.models.locks import StateLock
from gantry.models.plan import PlanArtifact
from gantry.models.stages import Environment, RunStatus, Stage, StageKind, TriggerKind


class StageExecution(BaseModel):
    """One stage instance within a run."""

    stage_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    kind: StageKind
    started_at: datetime.datetime
    ended_at: datetime.datetime | None = None
    exit_status: str | None = None  # succeeded | failed | aborted | rejected | stale_plan
    output: str = ""  # tail of captured tool output / diagnostics
    retry_count: int = 0
    error_kind: str | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class AuditRecord(BaseModel):
    """Immutable audit entry appended on every transition."""

    model_config = ConfigDict(frozen=True)

    run_id: str | None
    stage: str
    actor: str
    action: str
    outcome: str
    severity: str = "info"  # info | warning | critical
    timestamp: datetime.datetime = Field(default_factory=utc_now)
    details: dict[str, Any] = Field(default_factory=dict)


class RunError(BaseModel):
    kind: str
    message: str
    stage: str


class PipelineRun(BaseModel):
    run_id: str
    change_ref: str
    trigger: TriggerKind
    environment: Environment
    repo_url: str
    working_dir: str = "."
    state_key: str
    actor: str = "system"
    external_id: str | None = None

    status: RunStatus = RunStatus.PENDING
    stage: Stage = Stage.VALIDATE
    stages: list[StageExecution] = Field(default_factory=list)
    plans: list[PlanArtifact] = Field(default_factory=list)
    approvals: list[ApprovalRequest] = Field(default_factory=list)
    audit: list[AuditRecord] = Field(default_factory=list)
    error: RunError | None = None

    held_lock: StateLock | None = None
    linked_staging_run_id: str | None = None
    workdir: str = ""
    replan_count: int = 0
    replan_requested: bool = False

    config_snapshot: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def applies(self) -> bool:
        """Apply-class run: a merge into staging or production."""
        return self.trigger is TriggerKind.MERGE and self.environment.apply_class

    @property
    def use_backend(self) -> bool:
        """PR validation plans never touch the remote state backend."""
        return self.trigger is TriggerKind.MERGE

    @property
    def latest_plan(self) -> PlanArtifact | None:
        return self.plans[-1] if self.plans else None

    @property
    def latest_approval(self) -> ApprovalRequest | None:
        return self.approvals[-1] if self.approvals else None

    @property
    def applied(self) -> bool:
        return any(
            s.kind is StageKind.APPLY and s.exit_status == "succeeded" for s in self.stages
        )

    def open_execution(self, kind: StageKind) -> StageExecution | None:
        if self.stages and self.stages[-1].kind is kind and self.stages[-1].is_open:
            return self.stages[-1]
        return None

    def pending_approvals(self) -> list[ApprovalRequest]:
        return [a for a in self.approvals if a.decision is ApprovalDecision.PENDING]

    def pipeline_cfg(self) -> dict[str, Any]:
        return self.config_snapshot.get("pipeline", {})
