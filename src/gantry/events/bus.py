"""Event bus — Redis Streams implementation for pipeline run events."""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

import redis.asyncio as aioredis

from gantry.models.events import PipelineEvent


class EventBus(Protocol):
    """Protocol for event distribution."""

    async def emit(self, event: PipelineEvent) -> None: ...

    def subscribe(self, run_id: str, last_id: str = "0") -> AsyncIterator[PipelineEvent]: ...

    async def replay(self, run_id: str, from_id: str = "0") -> tuple[list[PipelineEvent], str]: ...


def _stream_key(run_id: str) -> str:
    return f"gantry:run:{run_id}:events"


def _as_str(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value


def _decode_event(fields: dict[Any, Any]) -> PipelineEvent | None:
    raw = fields.get(b"data") or fields.get("data")
    if not raw:
        return None
    return PipelineEvent.model_validate_json(_as_str(raw))


class RedisEventBus:
    """Event bus backed by Redis Streams (XADD/XREAD/XRANGE) + Pub/Sub for wakeups."""

    def __init__(self, redis: aioredis.Redis, *, maxlen: int = 10_000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    async def emit(self, event: PipelineEvent) -> None:
        """Append event to the run's stream and notify subscribers via pub/sub."""
        key = _stream_key(event.run_id)
        await self._redis.xadd(key, {"data": event.model_dump_json()}, maxlen=self._maxlen)
        await self._redis.publish(f"{key}:notify", "1")

    async def subscribe(
        self, run_id: str, last_id: str = "0"
    ) -> AsyncIterator[PipelineEvent]:
        """Yield events after last_id (exclusive), blocking on new entries."""
        key = _stream_key(run_id)
        current_id = last_id
        while True:
            entries = await self._redis.xread({key: current_id}, block=5000, count=50)
            for _stream_name, messages in entries or []:
                for msg_id, fields in messages:
                    current_id = _as_str(msg_id)
                    event = _decode_event(fields)
                    if event is not None:
                        yield event

    async def replay(self, run_id: str, from_id: str = "0") -> tuple[list[PipelineEvent], str]:
        """Return all events from from_id (inclusive) and the last stream ID.

        last_stream_id is "0" for an empty stream, suitable for subscribe().
        """
        entries = await self._redis.xrange(_stream_key(run_id), min=from_id)
        events = []
        last_id = "0"
        for msg_id, fields in entries:
            last_id = _as_str(msg_id)
            event = _decode_event(fields)
            if event is not None:
                events.append(event)
        return events, last_id
