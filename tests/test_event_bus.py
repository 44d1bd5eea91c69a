"""Tests for RedisEventBus — replay returns cursor, subscribe uses it."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from gantry.controller.routes.events import _event_generator
from gantry.events.bus import RedisEventBus
from gantry.models.events import EventType, PipelineEvent


# ---------------------------------------------------------------------------
# Fake Redis implementation for unit tests (no real Redis required)
# ---------------------------------------------------------------------------

class _FakeRedis:
    """Minimal Redis Streams fake for testing EventBus logic."""

    def __init__(self) -> None:
        self._streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self._counter = 0
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self.published: list[str] = []
        self.maxlens: list[int | None] = []

    async def xadd(self, key: str, fields: dict[str, str], maxlen: int | None = None) -> str:
        self._counter += 1
        msg_id = f"0-{self._counter}"
        self.maxlens.append(maxlen)
        entries = self._streams.setdefault(key, [])
        entries.append((msg_id, fields))
        if maxlen is not None and len(entries) > maxlen:
            del entries[: len(entries) - maxlen]
        for q in self._subscribers.get(key, []):
            q.put_nowait(True)
        return msg_id

    async def publish(self, channel: str, message: str) -> int:
        self.published.append(channel)
        return 0

    async def xrange(
        self, key: str, min: str = "-", max: str = "+"
    ) -> list[tuple[str, dict[str, str]]]:
        entries = self._streams.get(key, [])
        if min == "0" or min == "-":
            return entries[:]
        return [(mid, f) for mid, f in entries if mid >= min]

    async def xread(
        self,
        streams: dict[str, str],
        block: int = 0,
        count: int | None = None,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        resolved: dict[str, str] = {}
        for key, last_id in streams.items():
            if last_id == "$":
                entries = self._streams.get(key, [])
                resolved[key] = entries[-1][0] if entries else "0"
            else:
                resolved[key] = last_id

        result = []
        for key, last_id in resolved.items():
            entries = self._streams.get(key, [])
            if last_id == "0":
                new = entries[:]
            else:
                new = [(mid, f) for mid, f in entries if mid > last_id]
            if new:
                result.append((key, new[:count] if count else new))

        if result:
            return result

        if block > 0:
            key = next(iter(resolved))
            q: asyncio.Queue = asyncio.Queue()
            self._subscribers.setdefault(key, []).append(q)
            try:
                await asyncio.wait_for(q.get(), timeout=block / 1000)
            except asyncio.TimeoutError:
                return []
            finally:
                self._subscribers[key].remove(q)
            return await self.xread(resolved, block=0, count=count)

        return []


def _make_event(
    run_id: str = "RUN-1", event_type: EventType = EventType.STAGE_ENTERED, **kwargs: Any
) -> PipelineEvent:
    return PipelineEvent(run_id=run_id, event_type=event_type, **kwargs)


@pytest.fixture
def fake() -> _FakeRedis:
    return _FakeRedis()


@pytest.fixture
def bus(fake: _FakeRedis) -> RedisEventBus:
    return RedisEventBus(redis=fake)  # type: ignore[arg-type]


class TestEmit:
    @pytest.mark.asyncio
    async def test_emit_notifies_and_caps_stream(self, fake: _FakeRedis) -> None:
        bus = RedisEventBus(redis=fake, maxlen=3)  # type: ignore[arg-type]
        for i in range(5):
            await bus.emit(_make_event(stage=f"s{i}"))

        events, _ = await bus.replay("RUN-1")
        assert [e.stage for e in events] == ["s2", "s3", "s4"]
        assert fake.maxlens == [3] * 5
        assert fake.published == ["gantry:run:RUN-1:events:notify"] * 5

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self, bus: RedisEventBus) -> None:
        await bus.emit(_make_event(run_id="RUN-a"))
        await bus.emit(_make_event(run_id="RUN-b", event_type=EventType.RUN_FAILED))

        events, _ = await bus.replay("RUN-a")
        assert [e.event_type for e in events] == [EventType.STAGE_ENTERED]


class TestReplay:
    @pytest.mark.asyncio
    async def test_empty_stream_returns_empty_and_zero(self, bus: RedisEventBus) -> None:
        events, last_id = await bus.replay("RUN-none")
        assert events == []
        assert last_id == "0"

    @pytest.mark.asyncio
    async def test_emit_then_replay_returns_events_and_last_id(self, bus: RedisEventBus) -> None:
        await bus.emit(_make_event(stage="validate"))
        await bus.emit(_make_event(stage="plan", data={"plan_hash": "abc"}))

        events, last_id = await bus.replay("RUN-1")
        assert [e.stage for e in events] == ["validate", "plan"]
        assert events[1].data == {"plan_hash": "abc"}
        assert last_id == "0-2"


class TestSubscribeFromCursor:
    @pytest.mark.asyncio
    async def test_roundtrip_no_gaps(self, bus: RedisEventBus) -> None:
        await bus.emit(_make_event(stage="1"))
        await bus.emit(_make_event(stage="2"))

        replayed, cursor = await bus.replay("RUN-1")
        assert len(replayed) == 2

        await bus.emit(_make_event(stage="3"))
        await bus.emit(_make_event(stage="4"))

        live: list[PipelineEvent] = []
        async for event in bus.subscribe("RUN-1", last_id=cursor):
            live.append(event)
            if len(live) >= 2:
                break

        all_stages = [e.stage for e in replayed] + [e.stage for e in live]
        assert all_stages == ["1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_subscribe_wakes_on_new_event(self, bus: RedisEventBus) -> None:
        _, cursor = await bus.replay("RUN-1")

        async def _delayed_emit() -> None:
            await asyncio.sleep(0.05)
            await bus.emit(_make_event(event_type=EventType.RUN_SUCCEEDED))

        collected: list[PipelineEvent] = []

        async def _consume() -> None:
            async for event in bus.subscribe("RUN-1", last_id=cursor):
                collected.append(event)
                break

        await asyncio.gather(_consume(), _delayed_emit())
        assert [e.event_type for e in collected] == [EventType.RUN_SUCCEEDED]


class _StubRequest:
    """Just enough of a Starlette request for the SSE generator."""

    def __init__(self, bus: RedisEventBus) -> None:
        self.app = SimpleNamespace(state=SimpleNamespace(event_bus=bus))

    async def is_disconnected(self) -> bool:
        return False


class TestEventStream:
    @pytest.mark.asyncio
    async def test_replay_stops_at_terminal_event(self, bus: RedisEventBus) -> None:
        await bus.emit(_make_event(event_type=EventType.RUN_STARTED))
        await bus.emit(_make_event(event_type=EventType.RUN_SUCCEEDED))

        frames = [f async for f in _event_generator(_StubRequest(bus), "RUN-1")]
        assert [f["event"] for f in frames] == ["run_started", "run_succeeded"]

    @pytest.mark.asyncio
    async def test_follows_live_until_terminal(self, bus: RedisEventBus) -> None:
        await bus.emit(_make_event(event_type=EventType.RUN_STARTED))

        async def _finish() -> None:
            await asyncio.sleep(0.05)
            await bus.emit(_make_event(event_type=EventType.APPROVAL_REQUESTED))
            await bus.emit(_make_event(event_type=EventType.RUN_ABORTED))

        async def _collect() -> list[str]:
            return [f["event"] async for f in _event_generator(_StubRequest(bus), "RUN-1")]

        frames, _ = await asyncio.gather(_collect(), _finish())
        assert frames == ["run_started", "approval_requested", "run_aborted"]
