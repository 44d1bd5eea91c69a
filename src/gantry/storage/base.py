"""Storage interfaces for pipeline runs and the audit trail."""

from __future__ import annotations

import datetime
from typing import Protocol

from gantry.models.run import AuditRecord, PipelineRun
from gantry.models.stages import Environment, RunStatus


class RunStore(Protocol):
    """Durable home of PipelineRun state. Parked runs survive process restarts here."""

    async def get(self, run_id: str) -> PipelineRun | None: ...

    async def save(self, run: PipelineRun) -> None: ...

    async def list_runs(
        self, status: RunStatus | None = None, limit: int = 100
    ) -> list[PipelineRun]: ...

    async def list_expired_approvals(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[PipelineRun]:
        """Parked runs whose pending approval deadline is at or before now, earliest first."""
        ...

    async def find_runs(
        self,
        *,
        change_ref: str,
        environment: Environment,
        status: RunStatus | None = None,
    ) -> list[PipelineRun]: ...

    async def find_by_external_id(self, external_id: str) -> PipelineRun | None: ...


class AuditSink(Protocol):
    """Append-only audit log consumed by external observability."""

    async def record(self, record: AuditRecord) -> None: ...
