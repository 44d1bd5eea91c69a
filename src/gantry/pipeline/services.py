"""Collaborators handed to every stage node through ``config["configurable"]``."""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import redis.asyncio as aioredis

from gantry.approval.gate import ApprovalGate
from gantry.auth.roles import RoleDirectory
from gantry.clock import Clock, utc_now
from gantry.config.defaults import PIPELINE_DEFAULTS
from gantry.credentials.broker import CredentialBroker, EnvironmentCredentialIssuer
from gantry.events.bus import EventBus, RedisEventBus
from gantry.executor.plan import PlanExecutor
from gantry.git.checkout import SourceCheckout
from gantry.locks.manager import StateLockManager
from gantry.models.config import BootstrapConfig
from gantry.storage.base import AuditSink, RunStore
from gantry.storage.sql import SqlAuditSink, SqlRunStore


class Checkout(Protocol):
    async def prepare(
        self, repo_url: str, run_id: str, change_ref: str, working_dir: str = "."
    ) -> Path: ...

    async def remove(self, run_id: str, repo_url: str) -> None: ...


@dataclass
class StageServices:
    runs: RunStore
    locks: StateLockManager
    executor: PlanExecutor
    gate: ApprovalGate
    credentials: CredentialBroker
    checkout: Checkout
    clock: Clock = utc_now
    audit_sink: AuditSink | None = None
    event_bus: EventBus | None = None


def build_services(
    cfg: BootstrapConfig,
    redis_client: aioredis.Redis,
    session_factory: Any,
) -> StageServices:
    """Wire production collaborators: Redis lock table + events, SQL runs + audit."""
    roles = RoleDirectory(cfg.role_assignments)
    audit_sink = SqlAuditSink(session_factory)
    event_bus = RedisEventBus(redis_client)
    locks = StateLockManager(
        redis_client,
        roles=roles,
        admin_role=cfg.lock_admin_role,
        audit_sink=audit_sink,
        event_bus=event_bus,
    )
    return StageServices(
        runs=SqlRunStore(session_factory),
        locks=locks,
        executor=PlanExecutor(locks, binary=cfg.tool_binary),
        gate=ApprovalGate(roles),
        credentials=CredentialBroker(
            EnvironmentCredentialIssuer(prefix=cfg.credential_env_prefix),
            ttl=datetime.timedelta(seconds=PIPELINE_DEFAULTS["credential_ttl_seconds"]),
        ),
        checkout=SourceCheckout(cfg.workspace_dir),
        audit_sink=audit_sink,
        event_bus=event_bus,
    )
