"""In-memory storage backends for tests and local runs."""

from __future__ import annotations

import datetime

from gantry.models.run import AuditRecord, PipelineRun
from gantry.models.stages import Environment, RunStatus


class InMemoryRunStore:
    """Stores deep copies so callers observe persistence semantics."""

    def __init__(self) -> None:
        self._runs: dict[str, PipelineRun] = {}
        self.save_count = 0

    async def get(self, run_id: str) -> PipelineRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def save(self, run: PipelineRun) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)
        self.save_count += 1

    async def list_runs(
        self, status: RunStatus | None = None, limit: int = 100
    ) -> list[PipelineRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        if status is not None:
            runs = [r for r in runs if r.status is status]
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def list_expired_approvals(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[PipelineRun]:
        expired = [
            r for r in self._runs.values()
            if r.status is RunStatus.AWAITING_APPROVAL
            and r.latest_approval is not None
            and r.latest_approval.is_pending
            and r.latest_approval.expires_at <= now
        ]
        expired.sort(key=lambda r: r.latest_approval.expires_at)
        return [r.model_copy(deep=True) for r in expired[:limit]]

    async def find_runs(
        self,
        *,
        change_ref: str,
        environment: Environment,
        status: RunStatus | None = None,
    ) -> list[PipelineRun]:
        return [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if r.change_ref == change_ref
            and r.environment is environment
            and (status is None or r.status is status)
        ]

    async def find_by_external_id(self, external_id: str) -> PipelineRun | None:
        for run in self._runs.values():
            if run.external_id == external_id:
                return run.model_copy(deep=True)
        return None


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def record(self, record: AuditRecord) -> None:
        self.records.append(record)
