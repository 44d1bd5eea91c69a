"""State lock manager — lease-based mutual exclusion over the Redis lock table.

Each lock record carries its own expiry deadline, compared against the
injected clock. Read-check-write sequences run inside WATCH/MULTI optimistic
transactions so two holders can never both observe a free key. A Redis TTL
is also set on the key so abandoned records are eventually garbage collected.

Layout:
    gantry:lock:{resource_key}  ← JSON-encoded StateLock
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from gantry.auth.roles import RoleDirectory
from gantry.clock import Clock, utc_now
from gantry.errors import LockConflictError, StaleLockError, UnauthorizedOperatorError
from gantry.events.bus import EventBus
from gantry.models.events import EventType, PipelineEvent
from gantry.models.locks import StateLock
from gantry.models.run import AuditRecord
from gantry.storage.base import AuditSink

logger = logging.getLogger(__name__)

# Extra Redis TTL beyond the lease so a record outlives its deadline long
# enough to be reported as stale.
_TTL_GRACE = datetime.timedelta(hours=1)


def _lock_key(resource_key: str) -> str:
    return f"gantry:lock:{resource_key}"


def _decode(raw: Any) -> StateLock | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    return StateLock.model_validate_json(raw)


def _ttl_ms(lease: datetime.timedelta) -> int:
    return int((lease + _TTL_GRACE).total_seconds() * 1000)


@dataclass
class HeldLock:
    """Handle yielded by hold(); ``lock`` tracks the latest renewed lease.

    ``lost`` is set once the lease lapsed or passed to another holder while
    the body ran. ``released`` is filled in on exit.
    """

    lock: StateLock
    lost: bool = False
    released: bool = False


class StateLockManager:
    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        clock: Clock = utc_now,
        roles: RoleDirectory | None = None,
        admin_role: str = "lock-admin",
        audit_sink: AuditSink | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._redis = redis
        self._clock = clock
        self._roles = roles or RoleDirectory()
        self._admin_role = admin_role
        self._audit_sink = audit_sink
        self._event_bus = event_bus

    async def get(self, resource_key: str) -> StateLock | None:
        """Return the current non-expired lock, or None if the resource is free."""
        lock = _decode(await self._redis.get(_lock_key(resource_key)))
        if lock is None or lock.expired(self._clock()):
            return None
        return lock

    async def inspect(self, resource_key: str) -> tuple[StateLock | None, bool]:
        """Return the raw lock record and whether it is stale (expired, not yet reclaimed)."""
        lock = _decode(await self._redis.get(_lock_key(resource_key)))
        return lock, bool(lock and lock.expired(self._clock()))

    async def acquire(
        self, resource_key: str, holder_id: str, lease: datetime.timedelta
    ) -> StateLock:
        """Acquire or re-enter the lock on resource_key.

        Raises LockConflictError if a different holder has an unexpired lease.
        The same holder retrying gets its existing lock back with a fresh lease.
        """
        key = _lock_key(resource_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = _decode(await pipe.get(key))
                    now = self._clock()
                    live = current is not None and not current.expired(now)

                    if live and current.holder_id != holder_id:
                        raise LockConflictError(resource_key, current.holder_id, current.expires_at)

                    if live:
                        lock = current.model_copy(update={"expires_at": now + lease})
                    else:
                        if current is not None:
                            logger.warning(
                                "Reclaiming stale lock on %s (held by %s, expired %s)",
                                resource_key, current.holder_id, current.expires_at.isoformat(),
                            )
                        lock = StateLock(
                            resource_key=resource_key,
                            holder_id=holder_id,
                            lock_id=uuid.uuid4().hex,
                            acquired_at=now,
                            expires_at=now + lease,
                        )

                    pipe.multi()
                    pipe.set(key, lock.model_dump_json(), px=_ttl_ms(lease))
                    await pipe.execute()
                except WatchError:
                    continue

                logger.info(
                    "Lock on %s held by %s until %s",
                    resource_key, holder_id, lock.expires_at.isoformat(),
                )
                return lock

    async def acquire_with_retry(
        self,
        resource_key: str,
        holder_id: str,
        lease: datetime.timedelta,
        *,
        max_attempts: int,
        backoff_seconds: float,
        max_backoff_seconds: float,
    ) -> tuple[StateLock, int]:
        """Acquire with bounded exponential backoff. Returns (lock, retries used)."""
        attempt = 0
        while True:
            try:
                return await self.acquire(resource_key, holder_id, lease), attempt
            except LockConflictError as exc:
                attempt += 1
                if not exc.retryable or attempt >= max_attempts:
                    raise
                delay = min(backoff_seconds * (2 ** (attempt - 1)), max_backoff_seconds)
                logger.info(
                    "Lock on %s busy (%s); retry %d/%d in %.1fs",
                    resource_key, exc.holder_id, attempt, max_attempts - 1, delay,
                )
                await asyncio.sleep(delay)

    async def renew(self, lock: StateLock, lease: datetime.timedelta) -> StateLock:
        """Extend a held lease. Raises StaleLockError if the lock was lost."""
        key = _lock_key(lock.resource_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = _decode(await pipe.get(key))
                    now = self._clock()
                    if current is None or current.lock_id != lock.lock_id or current.expired(now):
                        raise StaleLockError(
                            f"Lock on '{lock.resource_key}' held by {lock.holder_id} is no longer held"
                        )
                    renewed = current.model_copy(update={"expires_at": now + lease})
                    pipe.multi()
                    pipe.set(key, renewed.model_dump_json(), px=_ttl_ms(lease))
                    await pipe.execute()
                    return renewed
                except WatchError:
                    continue

    async def release(self, lock: StateLock) -> bool:
        """Release a lock. No-op (returns False) if already released, expired-and-taken, or foreign."""
        key = _lock_key(lock.resource_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = _decode(await pipe.get(key))
                    if current is None or current.lock_id != lock.lock_id:
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                except WatchError:
                    continue
                logger.info("Released lock on %s (holder %s)", lock.resource_key, lock.holder_id)
                return True

    @contextlib.asynccontextmanager
    async def hold(
        self,
        lock: StateLock,
        lease: datetime.timedelta,
        renew_every: datetime.timedelta,
    ) -> AsyncIterator[HeldLock]:
        """Keep a lock alive while the body runs; always release on exit.

        Check ``lost`` after the body: a lease that lapsed or changed hands
        mid-body means the protected work ran without exclusivity.
        """
        held = HeldLock(lock=lock)

        async def _heartbeat() -> None:
            while True:
                await asyncio.sleep(renew_every.total_seconds())
                try:
                    held.lock = await self.renew(held.lock, lease)
                except StaleLockError:
                    logger.error("Lost lease on %s while holding it", lock.resource_key)
                    held.lost = True
                    return
                except Exception as e:
                    # Lease may still be live; the next tick or the exit check decides.
                    logger.warning("Failed to renew lease on %s: %s", lock.resource_key, e)

        task = asyncio.create_task(_heartbeat())
        try:
            yield held
        finally:
            task.cancel()
            try:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            finally:
                if held.lock.expired(self._clock()):
                    held.lost = True
                held.released = await self.release(held.lock)
                if not held.released:
                    held.lost = True
                if held.lost:
                    logger.error(
                        "Lease on %s lapsed while %s held it",
                        lock.resource_key, lock.holder_id,
                    )

    async def force_unlock(self, resource_key: str, operator_id: str) -> StateLock | None:
        """Unconditionally clear a lock. Last resort; requires the lock-admin role.

        This can race with a holder that is still running. The caller must have
        confirmed no operation is active. Always audited at critical severity.
        """
        if not self._roles.has_role(operator_id, self._admin_role):
            logger.warning(
                "Force-unlock of %s denied for %s (missing role %s)",
                resource_key, operator_id, self._admin_role,
            )
            await self._audit_force_unlock(resource_key, operator_id, None, outcome="denied")
            raise UnauthorizedOperatorError(
                f"{operator_id} lacks role '{self._admin_role}' required to force-unlock"
            )

        key = _lock_key(resource_key)
        pipe = self._redis.pipeline()
        pipe.get(key)
        pipe.delete(key)
        results = await pipe.execute()
        cleared = _decode(results[0])

        logger.warning(
            "FORCE-UNLOCK of %s by %s (previous holder: %s)",
            resource_key, operator_id, cleared.holder_id if cleared else "none",
        )
        await self._audit_force_unlock(
            resource_key, operator_id, cleared, outcome="cleared" if cleared else "no_lock"
        )
        return cleared

    async def _audit_force_unlock(
        self,
        resource_key: str,
        operator_id: str,
        cleared: StateLock | None,
        *,
        outcome: str,
    ) -> None:
        details: dict[str, Any] = {"resource_key": resource_key}
        run_id = None
        if cleared is not None:
            details["previous_holder"] = cleared.holder_id
            details["previous_expires_at"] = cleared.expires_at.isoformat()
            run_id = cleared.holder_id.split(":", 1)[0]

        if self._audit_sink:
            await self._audit_sink.record(AuditRecord(
                run_id=run_id,
                stage="lock",
                actor=operator_id,
                action="force_unlock",
                outcome=outcome,
                severity="critical",
                timestamp=self._clock(),
                details=details,
            ))
        if self._event_bus and run_id:
            await self._event_bus.emit(PipelineEvent(
                run_id=run_id,
                event_type=EventType.LOCK_FORCE_UNLOCKED,
                stage="lock",
                data={"operator": operator_id, "outcome": outcome, **details},
            ))
