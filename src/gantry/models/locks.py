"""State lock record stored in the external lock table."""

from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict

from gantry.models.stages import StageKind


def holder_id_for(run_id: str, stage: StageKind) -> str:
    """Lock holder identity: the run plus the stage that owns the lock."""
    return f"{run_id}:{stage.value}"


class StateLock(BaseModel):
    """Exclusive, lease-bounded claim over a named state resource."""

    model_config = ConfigDict(frozen=True)

    resource_key: str
    holder_id: str
    lock_id: str
    acquired_at: datetime.datetime
    expires_at: datetime.datetime

    def expired(self, now: datetime.datetime) -> bool:
        return now >= self.expires_at
