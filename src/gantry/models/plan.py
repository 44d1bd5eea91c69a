"""Plan and apply artifacts produced by the provisioning tool."""

from __future__ import annotations

import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from gantry.models.stages import Environment


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


class ResourceChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    action: ChangeAction


class PlanArtifact(BaseModel):
    """Immutable diff output of one plan invocation.

    ``source_commit`` and ``versions`` are only recorded for backend plans;
    apply refuses an artifact whose recorded inputs have drifted.
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    plan_file: str
    change_ref: str
    environment: Environment
    use_backend: bool
    changes: list[ResourceChange] = Field(default_factory=list)
    source_commit: str | None = None
    versions: dict[str, str] = Field(default_factory=dict)
    created_at: datetime.datetime
    valid_until: datetime.datetime

    def is_valid(self, now: datetime.datetime) -> bool:
        return now < self.valid_until

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts


class ApplyResult(BaseModel):
    plan_hash: str
    exit_code: int
    output: str = ""
    started_at: datetime.datetime
    finished_at: datetime.datetime
