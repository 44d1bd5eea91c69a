"""Event models emitted by the orchestrator and lock manager to the event bus."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    RUN_TRIGGERED = "run_triggered"
    RUN_STARTED = "run_started"
    RUN_AWAITING_APPROVAL = "run_awaiting_approval"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_FAILED = "run_failed"
    RUN_ABORTED = "run_aborted"
    STAGE_ENTERED = "stage_entered"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    LOCK_FORCE_UNLOCKED = "lock_force_unlocked"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.RUN_SUCCEEDED, EventType.RUN_FAILED, EventType.RUN_ABORTED})


class PipelineEvent(BaseModel):
    """Base event emitted to the event bus."""

    run_id: str
    event_type: EventType
    stage: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
