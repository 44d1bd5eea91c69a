"""SSE event streaming endpoint."""

from __future__ import annotations

from typing import AsyncIterator

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from gantry.models.events import TERMINAL_EVENTS

router = APIRouter(tags=["events"])


async def _event_generator(request: Request, run_id: str) -> AsyncIterator[dict]:
    """Replay a run's stream, then follow it live until the run finishes."""
    event_bus = request.app.state.event_bus

    events, last_id = await event_bus.replay(run_id)
    for event in events:
        yield {"event": event.event_type.value, "data": event.model_dump_json()}
        if event.event_type in TERMINAL_EVENTS:
            return

    # Subscribe from the last replayed ID so events emitted during replay aren't lost
    async for event in event_bus.subscribe(run_id, last_id=last_id):
        if await request.is_disconnected():
            break
        yield {"event": event.event_type.value, "data": event.model_dump_json()}
        if event.event_type in TERMINAL_EVENTS:
            break


@router.get("/events/stream")
async def event_stream(run_id: str, request: Request) -> EventSourceResponse:
    """SSE endpoint for real-time pipeline events."""
    return EventSourceResponse(_event_generator(request, run_id))
