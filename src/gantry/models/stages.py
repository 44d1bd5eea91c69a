"""Closed enumerations for run status, stage kinds and environment tiers."""

from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageKind(str, Enum):
    VALIDATE = "validate"
    PLAN = "plan"
    APPROVAL = "approval"
    APPLY = "apply"


class Stage(str, Enum):
    """Position of a run in the orchestrator state machine."""

    VALIDATE = "validate"
    PLAN = "plan"
    APPROVAL = "approval"
    APPLY = "apply"
    DONE = "done"
    FAILED = "failed"
    ABORTED = "aborted"


class Environment(str, Enum):
    FEATURE = "feature"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def apply_class(self) -> bool:
        return self in (Environment.STAGING, Environment.PRODUCTION)


class TriggerKind(str, Enum):
    PULL_REQUEST = "pull_request"
    MERGE = "merge"
