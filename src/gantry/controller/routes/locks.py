"""State lock inspection and force-unlock routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from gantry.errors import UnauthorizedOperatorError

logger = logging.getLogger(__name__)
router = APIRouter(tags=["locks"])


@router.get("/locks/{resource_key:path}")
async def get_lock(resource_key: str, request: Request) -> dict:
    """Current lock record for a state resource, flagged when its lease has expired."""
    locks = request.app.state.orchestrator.services.locks
    lock, stale = await locks.inspect(resource_key)
    return {
        "resource_key": resource_key,
        "locked": lock is not None and not stale,
        "stale": stale,
        "lock": lock.model_dump(mode="json") if lock else None,
    }


class ForceUnlockBody(BaseModel):
    operator: str = Field(..., min_length=1, max_length=128)


@router.post("/locks/{resource_key:path}/force-unlock")
async def force_unlock(resource_key: str, body: ForceUnlockBody, request: Request) -> dict:
    """Clear a lock unconditionally. The operator must hold the lock-admin role.

    The response always carries a warning: the previous holder may still be
    running.
    """
    locks = request.app.state.orchestrator.services.locks
    try:
        cleared = await locks.force_unlock(resource_key, body.operator)
    except UnauthorizedOperatorError as e:
        raise HTTPException(status_code=403, detail=e.message)

    return {
        "resource_key": resource_key,
        "cleared": cleared is not None,
        "previous_holder": cleared.holder_id if cleared else None,
        "warning": (
            "Force-unlock bypasses lease ownership. Confirm the previous holder "
            "is no longer running before applying again."
        ),
    }
