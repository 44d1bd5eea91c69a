"""SQLAlchemy-backed run store and audit sink."""

from __future__ import annotations

import datetime
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gantry.db.models import AuditLog, PipelineRunRecord
from gantry.models.run import AuditRecord, PipelineRun
from gantry.models.stages import Environment, RunStatus

logger = logging.getLogger(__name__)


def _to_run(record: PipelineRunRecord) -> PipelineRun:
    return PipelineRun.model_validate(record.run_json)


def _approval_deadline(run: PipelineRun) -> datetime.datetime | None:
    request = run.latest_approval
    if run.status is RunStatus.AWAITING_APPROVAL and request is not None and request.is_pending:
        return request.expires_at
    return None


class SqlRunStore:
    """Persists the whole run document as JSON plus indexed lookup columns."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, run_id: str) -> PipelineRun | None:
        async with self._session_factory() as session:
            record = await session.get(PipelineRunRecord, run_id)
            return _to_run(record) if record else None

    async def save(self, run: PipelineRun) -> None:
        record = PipelineRunRecord(
            run_id=run.run_id,
            status=run.status.value,
            environment=run.environment.value,
            change_ref=run.change_ref,
            state_key=run.state_key,
            external_id=run.external_id,
            approval_expires_at=_approval_deadline(run),
            run_json=run.model_dump(mode="json"),
            error=run.error.message if run.error else None,
        )
        async with self._session_factory() as session:
            await session.merge(record)
            await session.commit()
        logger.debug("Saved run %s (status=%s)", run.run_id, run.status.value)

    async def list_runs(
        self, status: RunStatus | None = None, limit: int = 100
    ) -> list[PipelineRun]:
        query = select(PipelineRunRecord).order_by(PipelineRunRecord.created_at.desc())
        if status is not None:
            query = query.where(PipelineRunRecord.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(query.limit(limit))
            return [_to_run(r) for r in result.scalars().all()]

    async def list_expired_approvals(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[PipelineRun]:
        query = (
            select(PipelineRunRecord)
            .where(
                PipelineRunRecord.status == RunStatus.AWAITING_APPROVAL.value,
                PipelineRunRecord.approval_expires_at <= now,
            )
            .order_by(PipelineRunRecord.approval_expires_at.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_to_run(r) for r in result.scalars().all()]

    async def find_runs(
        self,
        *,
        change_ref: str,
        environment: Environment,
        status: RunStatus | None = None,
    ) -> list[PipelineRun]:
        query = select(PipelineRunRecord).where(
            PipelineRunRecord.change_ref == change_ref,
            PipelineRunRecord.environment == environment.value,
        )
        if status is not None:
            query = query.where(PipelineRunRecord.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_to_run(r) for r in result.scalars().all()]

    async def find_by_external_id(self, external_id: str) -> PipelineRun | None:
        query = select(PipelineRunRecord).where(PipelineRunRecord.external_id == external_id)
        async with self._session_factory() as session:
            result = await session.execute(query.limit(1))
            record = result.scalar_one_or_none()
            return _to_run(record) if record else None


class SqlAuditSink:
    """Writes audit records to the append-only audit_log table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            session.add(AuditLog(
                run_id=record.run_id,
                stage=record.stage,
                actor=record.actor,
                action=record.action,
                outcome=record.outcome,
                severity=record.severity,
                details=record.details,
                timestamp=record.timestamp,
            ))
            await session.commit()
